"""
AIF Test Suite

Tests for affine-invariant feature detection and reference matching.

Structure:
- unit/: Unit tests for individual components
- integration/: End-to-end detection + matching on synthetic imagery
- conftest.py: Synthetic image and feature-set fixtures
"""
