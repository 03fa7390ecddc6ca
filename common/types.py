from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple, Union

import cv2
import numpy as np


PathLike = Union[str, Path]

# column layout used when a FeatureSet is written to disk
_KP_FIELDS = ("x", "y", "size", "angle", "response", "octave", "class_id")


def norm_name(norm_type: int) -> str:
    """Human-readable name of an OpenCV norm tag (for logs and errors)."""
    names = {
        cv2.NORM_L1: "L1",
        cv2.NORM_L2: "L2",
        cv2.NORM_HAMMING: "HAMMING",
        cv2.NORM_HAMMING2: "HAMMING2",
    }
    return names.get(int(norm_type), f"NORM_{int(norm_type)}")


def keypoints_to_array(kps: Sequence[cv2.KeyPoint]) -> np.ndarray:
    """Pack keypoints into an (N,7) float64 array (see _KP_FIELDS)."""
    if not kps:
        return np.zeros((0, len(_KP_FIELDS)), dtype=np.float64)
    return np.array(
        [[kp.pt[0], kp.pt[1], kp.size, kp.angle, kp.response, kp.octave, kp.class_id] for kp in kps],
        dtype=np.float64,
    )


def keypoints_from_array(arr: np.ndarray) -> List[cv2.KeyPoint]:
    arr = np.asarray(arr, dtype=np.float64).reshape(-1, len(_KP_FIELDS))
    return [
        cv2.KeyPoint(float(r[0]), float(r[1]), float(r[2]), float(r[3]), float(r[4]), int(r[5]), int(r[6]))
        for r in arr
    ]


@dataclass(frozen=True, slots=True)
class FeatureSet:
    """
    Keypoints and their descriptors, tagged with the distance metric.

    Attributes:
        keypoints: tuple of cv2.KeyPoint, positions in the source image frame.
        descriptors: (N, D) array, one row per keypoint. uint8 for binary
            descriptors, float32 for real-valued ones.
        norm_type: OpenCV norm tag (cv2.NORM_L2 for real-valued,
            cv2.NORM_HAMMING for binary).
    """
    keypoints: Tuple[cv2.KeyPoint, ...]
    descriptors: np.ndarray = field(repr=False)
    norm_type: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "keypoints", tuple(self.keypoints))
        if not isinstance(self.descriptors, np.ndarray):
            raise TypeError("descriptors must be a numpy ndarray")
        if self.descriptors.ndim != 2:
            raise ValueError("descriptors must be 2D (N, D)")
        if self.descriptors.shape[0] != len(self.keypoints):
            raise ValueError(
                f"descriptor count ({self.descriptors.shape[0]}) != keypoint count ({len(self.keypoints)})"
            )
        object.__setattr__(self, "norm_type", int(self.norm_type))

    def __len__(self) -> int:
        return len(self.keypoints)

    @classmethod
    def empty(cls, norm_type: int, cols: int = 0, dtype: Any = np.uint8) -> "FeatureSet":
        return cls(keypoints=(), descriptors=np.zeros((0, int(cols)), dtype=dtype), norm_type=norm_type)

    def points(self) -> np.ndarray:
        """Keypoint positions as an (N,2) float32 array."""
        if not self.keypoints:
            return np.zeros((0, 2), dtype=np.float32)
        return np.float32([kp.pt for kp in self.keypoints])

    def to_meta(self) -> Dict[str, Any]:
        """Summary without the arrays (safe to log/serialize)."""
        return {
            "keypoints": len(self.keypoints),
            "descriptor_cols": int(self.descriptors.shape[1]),
            "descriptor_dtype": str(self.descriptors.dtype),
            "norm": norm_name(self.norm_type),
        }

    def save(self, path: PathLike) -> Path:
        """Write to a compressed .npz archive; returns the path actually written."""
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        with p.open("wb") as f:
            np.savez_compressed(
                f,
                keypoints=keypoints_to_array(self.keypoints),
                descriptors=self.descriptors,
                norm_type=np.int32(self.norm_type),
            )
        return p

    @classmethod
    def load(cls, path: PathLike) -> "FeatureSet":
        with np.load(Path(path), allow_pickle=False) as z:
            return cls(
                keypoints=keypoints_from_array(z["keypoints"]),
                descriptors=np.array(z["descriptors"]),
                norm_type=int(z["norm_type"]),
            )


@dataclass(slots=True)
class MatchResult:
    """
    Outcome of matching one source FeatureSet against one reference.

    Attributes:
        transform: 3x3 homography source -> reference (identity on failure).
        matches: verified cv2.DMatch list (queryIdx into source,
            trainIdx into reference), in ratio-test candidate order.
        total_candidates: number of matches that survived the ratio test.
        rmse_px: reprojection RMSE over the verified matches (inf if none).
    """
    transform: np.ndarray = field(default_factory=lambda: np.eye(3, dtype=np.float64))
    matches: List[cv2.DMatch] = field(default_factory=list)
    total_candidates: int = 0
    rmse_px: float = float("inf")

    def __post_init__(self) -> None:
        self.transform = np.asarray(self.transform, dtype=np.float64)
        if self.transform.shape != (3, 3):
            raise ValueError("transform must be 3x3")

    @property
    def inliers(self) -> int:
        return len(self.matches)

    @property
    def ok(self) -> bool:
        return len(self.matches) > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "inliers": self.inliers,
            "total_candidates": self.total_candidates,
            "rmse_px": None if not np.isfinite(self.rmse_px) else float(self.rmse_px),
            "H": self.transform.tolist(),
        }
