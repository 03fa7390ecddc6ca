"""
Affine-invariant features (AIF)

This package provides:
- An affine sampling grid (tilt x rotation) approximating viewpoint changes
- AffineInvariantDetector: runs a base OpenCV extractor on every synthetic
  view in parallel and merges the keypoints back into the input frame
- ResultMatcher: FLANN index over a reference feature set, Lowe ratio test
  and RANSAC homography verification, single or many references at once
- Named parameter sets (AKAZE/BRISK/ORB/SIFT, AIF wrapper) with YAML I/O

Entry point:
    python -m aif.pipeline --config config/params.yaml --source src.png --reference ref.png
"""
from .detector import AffineInvariantDetector
from .matcher import ResultMatcher

__all__ = ["AffineInvariantDetector", "ResultMatcher"]
