from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from common.logging_setup import get_logger
from common.types import FeatureSet, MatchResult, norm_name
from aif.parallel import ParallelTasks, parallel_for


log = get_logger("aif.matcher")

FLANN_INDEX_KDTREE = 1
FLANN_INDEX_LSH = 6

MIN_HOMOGRAPHY_PAIRS = 4  # cv2.findHomography needs at least 4 point pairs


@dataclass(slots=True)
class HomographyFit:
    H: np.ndarray
    inlier_mask: np.ndarray  # bool, aligned with the input pairs


def index_params_for(norm_type: int) -> dict:
    """
    FLANN index parameters for a descriptor metric: KD-tree for real-valued
    (L2) descriptors, LSH for binary (Hamming) descriptors.
    """
    if norm_type == cv2.NORM_L2:
        return dict(algorithm=FLANN_INDEX_KDTREE, trees=4)
    if norm_type == cv2.NORM_HAMMING:
        return dict(algorithm=FLANN_INDEX_LSH, table_number=6, key_size=12, multi_probe_level=1)
    raise ValueError(f"No nearest-neighbor index for descriptor norm {norm_name(norm_type)}")


def ratio_test(knn: Sequence[Sequence[cv2.DMatch]], ratio: float = 0.75) -> List[cv2.DMatch]:
    """
    Lowe ratio on 2-nearest neighbors: keep the nearest match when it is at
    most `ratio` times the second-nearest distance. Entries with fewer than
    two neighbors are dropped.
    """
    good: List[cv2.DMatch] = []
    for pair in knn:
        if len(pair) < 2:
            continue
        m, n = pair[0], pair[1]
        if m.distance > ratio * n.distance:
            continue
        good.append(m)
    return good


def fit_homography(
    src_pts: np.ndarray,
    ref_pts: np.ndarray,
    ransac_px: float = 5.0,
) -> Optional[HomographyFit]:
    """
    RANSAC homography src -> ref. Returns None when OpenCV finds no solution,
    whether it reports that by raising cv2.error or by returning no matrix.
    """
    try:
        H, mask = cv2.findHomography(
            src_pts.reshape(-1, 1, 2), ref_pts.reshape(-1, 1, 2), cv2.RANSAC, float(ransac_px)
        )
    except cv2.error as exc:
        log.info(
            "findHomography failed; treating as no solution",
            extra={"extra": {"pairs": int(len(src_pts)), "error": (str(exc).strip().splitlines() or [""])[-1]}},
        )
        return None
    if H is None or mask is None or np.asarray(H).shape != (3, 3):
        return None
    return HomographyFit(H=np.asarray(H, dtype=np.float64), inlier_mask=mask.ravel().astype(bool))


def reprojection_errors(src_pts: np.ndarray, ref_pts: np.ndarray, H: np.ndarray) -> np.ndarray:
    """Euclidean distance between H(src) and ref for each pair (pixels)."""
    if len(src_pts) == 0:
        return np.zeros((0,), dtype=np.float64)
    proj = cv2.perspectiveTransform(np.float64(src_pts).reshape(-1, 1, 2), np.float64(H)).reshape(-1, 2)
    return np.linalg.norm(proj - np.float64(ref_pts).reshape(-1, 2), axis=1)


class ResultMatcher:
    """
    Nearest-neighbor index over one reference FeatureSet, trained once at
    construction and read-only afterwards. match() can be called from many
    threads at once.
    """

    def __init__(self, reference: FeatureSet, *, ratio: float = 0.75, ransac_px: float = 5.0):
        if reference is None:
            raise ValueError("ResultMatcher requires a reference FeatureSet")
        self._reference = reference
        self.ratio = float(ratio)
        self.ransac_px = float(ransac_px)

        index_params = index_params_for(reference.norm_type)
        self._matcher = cv2.FlannBasedMatcher(index_params, dict(checks=32))
        if len(reference) > 0:
            self._matcher.add([self._as_index_dtype(reference.descriptors)])
            self._matcher.train()
        log.debug("reference index trained", extra={"extra": reference.to_meta()})

    @property
    def reference(self) -> FeatureSet:
        return self._reference

    def _as_index_dtype(self, descriptors: np.ndarray) -> np.ndarray:
        # FLANN's KD-tree works on float32 rows, LSH on uint8 rows
        want = np.float32 if self._reference.norm_type == cv2.NORM_L2 else np.uint8
        if descriptors.dtype != want:
            descriptors = descriptors.astype(want)
        return descriptors

    def match(self, source: FeatureSet) -> MatchResult:
        """
        Match `source` against the reference. The returned transform maps
        source keypoint coordinates to reference keypoint coordinates.
        """
        if len(source) == 0 or len(self._reference) == 0:
            return MatchResult()
        if source.norm_type != self._reference.norm_type:
            raise ValueError(
                f"source norm {norm_name(source.norm_type)} does not match "
                f"reference norm {norm_name(self._reference.norm_type)}"
            )

        knn = self._matcher.knnMatch(self._as_index_dtype(source.descriptors), k=2)
        candidates = ratio_test(knn, self.ratio)
        if len(candidates) < MIN_HOMOGRAPHY_PAIRS:
            return MatchResult(total_candidates=len(candidates))

        src_pts = np.float32([source.keypoints[m.queryIdx].pt for m in candidates])
        ref_pts = np.float32([self._reference.keypoints[m.trainIdx].pt for m in candidates])

        fit = fit_homography(src_pts, ref_pts, self.ransac_px)
        if fit is None:
            return MatchResult(total_candidates=len(candidates))

        matches = [m for m, keep in zip(candidates, fit.inlier_mask) if keep]
        rmse = float("inf")
        if matches:
            err = reprojection_errors(src_pts[fit.inlier_mask], ref_pts[fit.inlier_mask], fit.H)
            rmse = float(np.sqrt(np.mean(err ** 2)))

        log.debug(
            "matched",
            extra={"extra": {"candidates": len(candidates), "inliers": len(matches), "rmse_px": rmse}},
        )
        return MatchResult(transform=fit.H, matches=matches, total_candidates=len(candidates), rmse_px=rmse)

    def _match_into(self, source: FeatureSet, results: List[MatchResult], slot: int) -> None:
        results[slot] = self.match(source)

    @staticmethod
    def parallel_match(
        matchers: Sequence[Optional["ResultMatcher"]],
        source: FeatureSet,
        nstripes: float = -1.0,
    ) -> List[MatchResult]:
        """
        Match one source against many references concurrently. Result i
        belongs to matchers[i]; a None matcher yields an identity result.
        """
        ntasks = len(matchers)
        results: List[MatchResult] = [MatchResult() for _ in range(ntasks)]
        tasks = ParallelTasks(ntasks)
        for i, matcher in enumerate(matchers):
            if matcher is not None:
                tasks[i] = partial(matcher._match_into, source, results, i)
        parallel_for(ntasks, tasks, nstripes)
        return results


def draw_matches(
    source_image: np.ndarray,
    source: FeatureSet,
    reference_image: np.ndarray,
    reference: FeatureSet,
    result: MatchResult,
    max_draw: int = 200,
) -> np.ndarray:
    """
    Side-by-side rendering of verified matches with the reference outline
    projected into the source image when a transform was found.
    """
    canvas_src = source_image
    if canvas_src.ndim == 2:
        canvas_src = cv2.cvtColor(canvas_src, cv2.COLOR_GRAY2BGR)
    else:
        canvas_src = canvas_src.copy()
    if result.ok:
        h, w = reference_image.shape[:2]
        outline = np.float64([[0, 0], [w, 0], [w, h], [0, h]]).reshape(-1, 1, 2)
        try:
            proj = cv2.perspectiveTransform(outline, np.linalg.inv(result.transform))
            cv2.polylines(canvas_src, [np.int32(proj)], True, (0, 255, 255), 2, cv2.LINE_AA)
        except np.linalg.LinAlgError:
            log.debug("singular transform; outline skipped")
    return cv2.drawMatches(
        canvas_src, list(source.keypoints), reference_image, list(reference.keypoints),
        result.matches[:max_draw], None,
        matchColor=(0, 255, 0),
        singlePointColor=(255, 0, 0),
        flags=cv2.DrawMatchesFlags_NOT_DRAW_SINGLE_POINTS,
    )


def match_features(
    source: FeatureSet,
    reference: FeatureSet,
    *,
    ratio: float = 0.75,
    ransac_px: float = 5.0,
) -> MatchResult:
    """One-shot helper: build a matcher for `reference` and match `source`."""
    return ResultMatcher(reference, ratio=ratio, ransac_px=ransac_px).match(source)


def points_for(result: MatchResult, source: FeatureSet, reference: FeatureSet) -> Tuple[np.ndarray, np.ndarray]:
    """(source_pts, reference_pts) of the verified matches, each (N,2) float32."""
    if not result.matches:
        empty = np.zeros((0, 2), dtype=np.float32)
        return empty, empty.copy()
    src = np.float32([source.keypoints[m.queryIdx].pt for m in result.matches])
    ref = np.float32([reference.keypoints[m.trainIdx].pt for m in result.matches])
    return src, ref
