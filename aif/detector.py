from __future__ import annotations
"""
Affine-invariant feature detection.

Runs a base extractor on synthetic affine views of the input image (see
aif.sampler) and maps every detected keypoint back into the input frame.
Each view is an independent unit dispatched through aif.parallel; the
results are concatenated in sample order after the join, so the output does
not depend on how the units were scheduled.
"""

import math
from functools import partial
from typing import Any, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from common.logging_setup import get_logger
from common.types import FeatureSet
from aif.parallel import ParallelTasks, parallel_for
from aif.sampler import AffineSample, AffineSampler


log = get_logger("aif.detector")


def warp_for_sample(
    image: np.ndarray,
    mask: Optional[np.ndarray],
    sample: AffineSample,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Build the skewed view of `image` for one sample.

    Returns (warped_image, warped_mask, affine) where `affine` is the 2x3 map
    from input coordinates to warped coordinates. Inputs are not modified.
    """
    tilt, phi = float(sample.tilt), float(sample.phi)
    affine = np.eye(2, 3, dtype=np.float64)
    warped = image.copy()

    if phi != 0.0:
        # rotate about the origin, then shift so the rotated frame starts at (0,0)
        affine = cv2.getRotationMatrix2D((0.0, 0.0), phi, 1.0)
        h, w = image.shape[:2]
        corners = np.float32([[0, 0], [w, 0], [w, h], [0, h]]).reshape(-1, 1, 2)
        rotated = cv2.transform(corners, affine)
        x, y, rw, rh = cv2.boundingRect(rotated.reshape(-1, 2))
        affine[0, 2] = -x
        affine[1, 2] = -y
        warped = cv2.warpAffine(
            warped, affine, (rw, rh), flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_REPLICATE
        )

    if tilt != 1.0:
        # anti-aliasing blur along x, then shrink the width by `tilt`
        sigma = 0.8 * math.sqrt(tilt * tilt - 1.0)
        warped = cv2.GaussianBlur(warped, (0, 0), sigmaX=sigma, sigmaY=0.01)
        if round(warped.shape[1] / tilt) >= 1:
            warped = cv2.resize(warped, (0, 0), fx=1.0 / tilt, fy=1.0, interpolation=cv2.INTER_NEAREST)
        else:
            # a 1-2 px wide view would shrink to zero columns; keep one
            warped = cv2.resize(warped, (1, warped.shape[0]), interpolation=cv2.INTER_NEAREST)
        affine[0, :] /= tilt

    if mask is None:
        warped_mask = np.full(image.shape[:2], 255, dtype=np.uint8)
    else:
        warped_mask = mask.copy()
    if phi != 0.0 or tilt != 1.0:
        wh = (warped.shape[1], warped.shape[0])
        warped_mask = cv2.warpAffine(warped_mask, affine, wh, flags=cv2.INTER_NEAREST)

    return warped, warped_mask, affine


def keypoints_to_source(keypoints: Sequence[cv2.KeyPoint], affine: np.ndarray) -> List[cv2.KeyPoint]:
    """Move keypoints detected in a warped view back through the inverse of `affine`."""
    if not keypoints:
        return []
    inv = cv2.invertAffineTransform(affine)
    pts = np.float64([kp.pt for kp in keypoints]).reshape(-1, 1, 2)
    src = cv2.transform(pts, inv).reshape(-1, 2)
    out: List[cv2.KeyPoint] = []
    for kp, (x, y) in zip(keypoints, src):
        kp.pt = (float(x), float(y))
        out.append(kp)
    return out


class AffineInvariantDetector:
    """
    Samples `detector` over the affine grid. When `extractor` is given, the
    keypoints found by `detector` are described by `extractor`; otherwise
    `detector` does both.

    `nstripes` is the default parallelism hint for detect_and_compute()
    (non-positive lets aif.parallel choose).
    """

    def __init__(self, detector: Any, extractor: Optional[Any] = None, *, nstripes: float = -1.0):
        if detector is None:
            raise ValueError("AffineInvariantDetector requires a base detector")
        self.detector = detector
        self.extractor = extractor
        self.nstripes = nstripes
        self.samples: List[AffineSample] = AffineSampler().as_list()

    # --- capability attributes (same surface as aif.features.FeatureExtractor) ---

    @property
    def _describer(self) -> Any:
        return self.extractor if self.extractor is not None else self.detector

    @property
    def name(self) -> str:
        base = getattr(self.detector, "name", type(self.detector).__name__)
        if self.extractor is not None:
            base += "+" + getattr(self.extractor, "name", type(self.extractor).__name__)
        return f"AffineInvariant({base})"

    @property
    def norm_type(self) -> int:
        return int(self._describer.norm_type)

    @property
    def descriptor_kind(self) -> str:
        return "binary" if self.norm_type in (cv2.NORM_HAMMING, cv2.NORM_HAMMING2) else "real"

    @property
    def descriptor_size(self) -> int:
        return int(getattr(self._describer, "descriptor_size", 0))

    @property
    def descriptor_dtype(self) -> np.dtype:
        return np.dtype(getattr(self._describer, "descriptor_dtype", np.uint8))

    # --- detection ---

    def _detect_sample(
        self,
        image: np.ndarray,
        mask: Optional[np.ndarray],
        sample: AffineSample,
        use_provided_keypoints: bool,
        keypoints_out: List[Any],
        descriptors_out: List[Any],
        slot: int,
    ) -> None:
        warped, warped_mask, affine = warp_for_sample(image, mask, sample)
        if self.extractor is None:
            kps, des = self.detector.detect_and_compute(warped, warped_mask, use_provided_keypoints)
        else:
            kps, des = self.extractor.compute(warped, self.detector.detect(warped, warped_mask))
        keypoints_out[slot] = keypoints_to_source(kps, affine)
        descriptors_out[slot] = des

    def detect_and_compute(
        self,
        image: np.ndarray,
        mask: Optional[np.ndarray] = None,
        use_provided_keypoints: bool = False,
        nstripes: Optional[float] = None,
    ) -> Tuple[List[cv2.KeyPoint], np.ndarray]:
        """
        Detect and describe features over all affine samples.

        Returns (keypoints, descriptors) with keypoint positions in the frame
        of `image`. Neither `image` nor `mask` is modified.
        """
        # TODO: use_provided_keypoints is forwarded to the base extractor only;
        # provided keypoints are not yet mapped into each affine view.
        if mask is not None and mask.shape[:2] != image.shape[:2]:
            raise ValueError("mask must have the same height/width as image")

        ntasks = len(self.samples)
        keypoints_array: List[Any] = [None] * ntasks
        descriptors_array: List[Any] = [None] * ntasks

        tasks = ParallelTasks(ntasks)
        for i, sample in enumerate(self.samples):
            tasks[i] = partial(
                self._detect_sample, image, mask, sample, use_provided_keypoints,
                keypoints_array, descriptors_array, i,
            )
        parallel_for(ntasks, tasks, self.nstripes if nstripes is None else nstripes)

        keypoints: List[cv2.KeyPoint] = []
        for kps in keypoints_array:
            keypoints.extend(kps)

        template = None
        for des in descriptors_array:
            if des is not None and des.shape[0] > 0:
                template = des
                break
        if template is None:
            descriptors = self._empty_descriptors(descriptors_array)
        else:
            descriptors = np.empty((len(keypoints), template.shape[1]), dtype=template.dtype)
            rows = 0
            for des in descriptors_array:
                if des is None or des.shape[0] == 0:
                    continue
                descriptors[rows:rows + des.shape[0]] = des
                rows += des.shape[0]

        log.debug(
            "affine detection done",
            extra={"extra": {"name": self.name, "samples": ntasks, "keypoints": len(keypoints)}},
        )
        return keypoints, descriptors

    def _empty_descriptors(self, descriptors_array: Sequence[Any]) -> np.ndarray:
        for des in descriptors_array:
            if des is not None and des.ndim == 2:
                return des[:0].copy()
        return np.zeros((0, self.descriptor_size), dtype=self.descriptor_dtype)

    def compute_features(self, image: np.ndarray, mask: Optional[np.ndarray] = None) -> FeatureSet:
        kps, des = self.detect_and_compute(image, mask)
        return FeatureSet(keypoints=kps, descriptors=des, norm_type=self.norm_type)
