import os
import sys

import cv2
import numpy as np
import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tests.synthetic import apply_homography, make_feature_set, patch_on_canvas, textured_patch


@pytest.fixture
def textured_image() -> np.ndarray:
    return patch_on_canvas(textured_patch())


@pytest.fixture
def true_homography() -> np.ndarray:
    """Source -> reference: rotate 30 deg, scale 0.8, shift, mild perspective."""
    M = cv2.getRotationMatrix2D((250.0, 250.0), 30.0, 0.8)
    H = np.vstack([M, [0.0, 0.0, 1.0]])
    H[2, 0] = 1e-5
    return H


@pytest.fixture
def reference_and_source(true_homography):
    """
    Reference: 200 random points with random float descriptors.
    Source: the first 120 reference points mapped through H^-1 (small noise),
    same descriptors plus tiny noise, followed by 40 unrelated outliers.
    """
    rng = np.random.default_rng(7)
    ref_pts = rng.uniform(20, 480, size=(200, 2))
    ref_des = rng.random((200, 32), dtype=np.float32)
    reference = make_feature_set(ref_pts, ref_des)

    Hinv = np.linalg.inv(true_homography)
    src_in = apply_homography(Hinv, ref_pts[:120]) + rng.normal(0, 0.3, size=(120, 2))
    src_in_des = ref_des[:120] + rng.normal(0, 0.01, size=(120, 32)).astype(np.float32)
    src_out = rng.uniform(20, 480, size=(40, 2))
    src_out_des = rng.random((40, 32), dtype=np.float32)
    source = make_feature_set(
        np.vstack([src_in, src_out]),
        np.vstack([src_in_des, src_out_des]).astype(np.float32),
    )
    return reference, source
