"""
Unit tests for affine-invariant detection
"""

import os
import sys

import cv2
import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from aif.detector import AffineInvariantDetector, keypoints_to_source, warp_for_sample
from aif.features import FeatureExtractor, create_extractor
from aif.sampler import AffineSample, AffineSampler, affine_samples
from common.types import FeatureSet
from tests.synthetic import gaussian_blob


class BlobCentroidExtractor:
    """
    Test extractor: one keypoint at the intensity centroid of the masked view,
    with a constant 4-float descriptor. Nothing is reported on an empty view.
    """
    name = "BlobCentroid"
    norm_type = cv2.NORM_L2
    descriptor_size = 4
    descriptor_dtype = np.dtype(np.float32)

    def detect_and_compute(self, image, mask=None, use_provided_keypoints=False):
        img = image.astype(np.float32)
        if mask is not None:
            img = img * (mask > 0)
        m = cv2.moments(img)
        if m["m00"] < 1e-6:
            return [], np.zeros((0, 4), dtype=np.float32)
        kp = cv2.KeyPoint(float(m["m10"] / m["m00"]), float(m["m01"] / m["m00"]), 8.0)
        return [kp], np.float32([[1.0, 2.0, 3.0, 4.0]])


class NothingExtractor(BlobCentroidExtractor):
    def detect_and_compute(self, image, mask=None, use_provided_keypoints=False):
        return [], np.zeros((0, 4), dtype=np.float32)


class TestWarpForSample:
    """Test cases for building one skewed view"""

    def test_identity_is_a_copy(self):
        img = np.arange(20 * 30, dtype=np.uint8).reshape(20, 30)
        warped, mask, affine = warp_for_sample(img, None, AffineSample(1.0, 0.0))
        assert np.array_equal(warped, img)
        assert warped is not img
        assert mask.shape == img.shape and mask.dtype == np.uint8 and (mask == 255).all()
        assert np.allclose(affine, np.eye(2, 3))

    def test_tilt_shrinks_width_only(self):
        img = np.zeros((50, 80), dtype=np.uint8)
        warped, mask, affine = warp_for_sample(img, None, AffineSample(2.0, 0.0))
        assert warped.shape == (50, 40)
        assert mask.shape == warped.shape
        assert affine[0, 0] == pytest.approx(0.5)
        assert affine[1, 1] == pytest.approx(1.0)

    def test_rotation_keeps_all_content(self):
        """The rotated frame is shifted so every input corner lands inside it"""
        h, w = 40, 60
        img = np.zeros((h, w), dtype=np.uint8)
        warped, _, affine = warp_for_sample(img, None, AffineSample(1.0, 45.0))
        corners = np.float64([[0, 0], [w, 0], [w, h], [0, h]]).reshape(-1, 1, 2)
        mapped = cv2.transform(corners, affine).reshape(-1, 2)
        assert mapped.min() >= -1e-6
        assert (mapped[:, 0] <= warped.shape[1] + 1e-6).all()
        assert (mapped[:, 1] <= warped.shape[0] + 1e-6).all()

    @pytest.mark.parametrize("width", [1, 2])
    def test_narrow_image_keeps_one_column(self, width):
        img = np.full((30, width), 90, dtype=np.uint8)
        warped, mask, affine = warp_for_sample(img, None, AffineSample(4.0, 0.0))
        assert warped.shape == (30, 1)
        assert mask.shape == warped.shape
        assert affine[0, 0] == pytest.approx(0.25)

    def test_mask_out_of_frame_is_invalid(self):
        img = np.full((40, 40), 200, dtype=np.uint8)
        _, mask, _ = warp_for_sample(img, None, AffineSample(1.0, 45.0))
        assert mask[0, 0] == 0
        assert mask[mask.shape[0] // 2, mask.shape[1] // 2] == 255

    def test_inputs_not_modified(self):
        img = np.random.default_rng(1).integers(0, 255, (60, 70), dtype=np.uint8)
        mask = np.full((60, 70), 255, dtype=np.uint8)
        mask[:10] = 0
        img0, mask0 = img.copy(), mask.copy()
        for s in list(affine_samples())[:6]:
            warp_for_sample(img, mask, s)
        assert np.array_equal(img, img0)
        assert np.array_equal(mask, mask0)


class TestKeypointsToSource:
    def test_inverse_mapping(self):
        affine = np.float64([[0.5, 0.0, 3.0], [0.0, 1.0, -2.0]])
        kp = cv2.KeyPoint(8.0, 10.0, 5.0)
        out = keypoints_to_source([kp], affine)
        assert out[0].pt == pytest.approx((10.0, 12.0))

    def test_empty(self):
        assert keypoints_to_source([], np.eye(2, 3)) == []


class TestAffineInvariantDetector:
    """Test cases for sampling + aggregation"""

    @pytest.mark.parametrize("cx,cy", [(70.3, 55.7), (40.0, 80.5)])
    def test_single_feature_position_recovered(self, cx, cy):
        """Every affine view reports the blob at its original position (<= 1 px)"""
        img = gaussian_blob(160, 120, cx, cy, sigma=4.0)
        extractor = BlobCentroidExtractor()
        det = AffineInvariantDetector(extractor)
        kps, des = det.detect_and_compute(img)

        assert len(kps) == len(det.samples) == 43
        assert des.shape == (43, 4) and des.dtype == np.float32
        for kp in kps:
            assert np.hypot(kp.pt[0] - cx, kp.pt[1] - cy) <= 1.0

    def test_sequential_and_parallel_are_identical(self, textured_image):
        """Dispatch strategy must not change order or values"""
        det = AffineInvariantDetector(create_extractor("orb", nfeatures=200))
        kps_seq, des_seq = det.detect_and_compute(textured_image, nstripes=1)
        kps_par, des_par = det.detect_and_compute(textured_image, nstripes=8)

        assert len(kps_seq) == len(kps_par) > 0
        for a, b in zip(kps_seq, kps_par):
            assert a.pt == b.pt
            assert a.size == b.size and a.angle == b.angle and a.response == b.response
        assert des_seq.dtype == des_par.dtype
        assert des_seq.tobytes() == des_par.tobytes()

    def test_descriptor_rows_follow_keypoints(self, textured_image):
        det = AffineInvariantDetector(create_extractor("orb", nfeatures=100))
        kps, des = det.detect_and_compute(textured_image)
        assert des.shape == (len(kps), 32)
        assert des.dtype == np.uint8

    def test_keypoints_in_source_frame(self, textured_image):
        det = AffineInvariantDetector(create_extractor("orb", nfeatures=100))
        kps, _ = det.detect_and_compute(textured_image)
        h, w = textured_image.shape
        pts = np.float32([kp.pt for kp in kps])
        # back-projected keypoints stay within the image, up to one shrunk pixel (max tilt < 6)
        assert pts[:, 0].min() > -6 and pts[:, 0].max() < w + 6
        assert pts[:, 1].min() > -6 and pts[:, 1].max() < h + 6

    def test_no_features_is_valid_empty(self):
        det = AffineInvariantDetector(NothingExtractor())
        kps, des = det.detect_and_compute(np.zeros((50, 50), dtype=np.float32))
        assert kps == []
        assert des.shape == (0, 4)
        fs = det.compute_features(np.zeros((50, 50), dtype=np.float32))
        assert len(fs) == 0

    def test_blank_image_with_orb(self):
        det = AffineInvariantDetector(create_extractor("orb"))
        fs = det.compute_features(np.zeros((80, 80), dtype=np.uint8))
        assert isinstance(fs, FeatureSet)
        assert len(fs) == 0
        assert fs.descriptors.shape == (0, 32)
        assert fs.norm_type == cv2.NORM_HAMMING

    def test_mask_limits_detection(self):
        img = gaussian_blob(120, 100, 30.0, 50.0) + gaussian_blob(120, 100, 90.0, 50.0)
        mask = np.zeros((100, 120), dtype=np.uint8)
        mask[:, 60:] = 255
        kps, _ = AffineInvariantDetector(BlobCentroidExtractor()).detect_and_compute(img, mask)
        assert len(kps) > 0
        assert all(kp.pt[0] > 60 for kp in kps)

    def test_narrow_image_does_not_fail(self):
        det = AffineInvariantDetector(BlobCentroidExtractor())
        kps, des = det.detect_and_compute(gaussian_blob(2, 40, 0.5, 20.0))
        assert des.shape == (len(kps), 4)
        assert len(kps) <= len(det.samples)

    def test_mask_shape_checked(self):
        det = AffineInvariantDetector(BlobCentroidExtractor())
        with pytest.raises(ValueError):
            det.detect_and_compute(np.zeros((10, 10), np.float32), np.zeros((5, 5), np.uint8))

    def test_inputs_not_modified(self, textured_image):
        img0 = textured_image.copy()
        AffineInvariantDetector(create_extractor("orb", nfeatures=50)).detect_and_compute(textured_image)
        assert np.array_equal(textured_image, img0)

    def test_detector_extractor_pair(self, textured_image):
        """A separate descriptor extractor describes the detector's keypoints"""
        det = AffineInvariantDetector(create_extractor("orb", nfeatures=100), create_extractor("brisk"))
        kps, des = det.detect_and_compute(textured_image)
        assert len(kps) == des.shape[0]
        assert des.shape[1] == 64  # BRISK rows
        assert det.norm_type == cv2.NORM_HAMMING
        assert "ORB" in det.name and "BRISK" in det.name

    def test_use_provided_keypoints_hint_accepted(self, textured_image):
        det = AffineInvariantDetector(create_extractor("orb", nfeatures=50))
        kps_a, _ = det.detect_and_compute(textured_image, use_provided_keypoints=True)
        kps_b, _ = det.detect_and_compute(textured_image)
        assert [k.pt for k in kps_a] == [k.pt for k in kps_b]

    def test_capability_surface(self):
        det = AffineInvariantDetector(FeatureExtractor(cv2.SIFT_create(), "SIFT"))
        assert det.norm_type == cv2.NORM_L2
        assert det.descriptor_kind == "real"
        assert det.descriptor_size == 128
        assert det.descriptor_dtype == np.float32

    def test_samples_follow_sampler_order(self):
        det = AffineInvariantDetector(BlobCentroidExtractor())
        assert det.samples == list(AffineSampler())

    def test_requires_base(self):
        with pytest.raises(ValueError):
            AffineInvariantDetector(None)
