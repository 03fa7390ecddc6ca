from __future__ import annotations
"""
Base feature extractors.

- FeatureExtractor wraps any cv2.Feature2D and exposes the descriptor metric
  (cv2.NORM_L2 / cv2.NORM_HAMMING) together with the descriptor row layout
- detect_and_compute() never returns None descriptors: an empty detection
  yields a (0, D) array of the extractor's descriptor type
- create_extractor(method) for quick construction by name
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from common.types import FeatureSet


# OpenCV element type -> numpy dtype for descriptor rows
_CV_DEPTH_TO_DTYPE = {
    cv2.CV_8U: np.uint8,
    cv2.CV_8S: np.int8,
    cv2.CV_16U: np.uint16,
    cv2.CV_16S: np.int16,
    cv2.CV_32S: np.int32,
    cv2.CV_32F: np.float32,
    cv2.CV_64F: np.float64,
}

BINARY_NORMS = (cv2.NORM_HAMMING, cv2.NORM_HAMMING2)


def descriptor_kind_of(norm_type: int) -> str:
    return "binary" if int(norm_type) in BINARY_NORMS else "real"


@dataclass
class FeatureExtractor:
    feature: cv2.Feature2D = field(repr=False)
    name: str = "Feature2D"

    @property
    def norm_type(self) -> int:
        return int(self.feature.defaultNorm())

    @property
    def descriptor_kind(self) -> str:
        return descriptor_kind_of(self.norm_type)

    @property
    def descriptor_size(self) -> int:
        return int(self.feature.descriptorSize())

    @property
    def descriptor_dtype(self) -> np.dtype:
        return np.dtype(_CV_DEPTH_TO_DTYPE.get(int(self.feature.descriptorType()), np.uint8))

    def empty_descriptors(self) -> np.ndarray:
        return np.zeros((0, self.descriptor_size), dtype=self.descriptor_dtype)

    def detect(self, image: np.ndarray, mask: Optional[np.ndarray] = None) -> List[cv2.KeyPoint]:
        return list(self.feature.detect(image, mask))

    def compute(
        self, image: np.ndarray, keypoints: Sequence[cv2.KeyPoint]
    ) -> Tuple[List[cv2.KeyPoint], np.ndarray]:
        if not keypoints:
            return [], self.empty_descriptors()
        kps, des = self.feature.compute(image, list(keypoints))
        if des is None:
            des = self.empty_descriptors()
        return list(kps), des

    def detect_and_compute(
        self,
        image: np.ndarray,
        mask: Optional[np.ndarray] = None,
        use_provided_keypoints: bool = False,
        keypoints: Optional[Sequence[cv2.KeyPoint]] = None,
    ) -> Tuple[List[cv2.KeyPoint], np.ndarray]:
        """
        Detect keypoints and compute their descriptors. With
        use_provided_keypoints and a keypoint list, only descriptors are computed.
        """
        if use_provided_keypoints and keypoints is not None:
            return self.compute(image, keypoints)
        kps, des = self.feature.detectAndCompute(image, mask)
        if des is None:
            des = self.empty_descriptors()
        return list(kps), des


def create_extractor(method: str = "orb", **kwargs) -> FeatureExtractor:
    """
    Build an extractor by name with default tuning ('orb' | 'akaze' | 'brisk' | 'sift').
    Keyword arguments are forwarded to the OpenCV factory.
    """
    m = method.lower()
    if m == "orb":
        return FeatureExtractor(cv2.ORB_create(**kwargs), "ORB")
    if m == "akaze":
        return FeatureExtractor(cv2.AKAZE_create(**kwargs), "AKAZE")
    if m == "brisk":
        return FeatureExtractor(cv2.BRISK_create(**kwargs), "BRISK")
    if m == "sift":
        return FeatureExtractor(cv2.SIFT_create(**kwargs), "SIFT")
    raise ValueError(f"Unsupported method: {method}")


def compute_feature_set(extractor, image: np.ndarray, mask: Optional[np.ndarray] = None) -> FeatureSet:
    """Run any extractor-like object and wrap the output as a FeatureSet."""
    kps, des = extractor.detect_and_compute(image, mask)
    return FeatureSet(keypoints=kps, descriptors=des, norm_type=extractor.norm_type)
