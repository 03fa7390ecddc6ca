from __future__ import annotations

import argparse
import json
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import cv2
import numpy as np
import requests
import yaml

from common.logging_setup import get_logger, setup_logging
from common.types import FeatureSet
from common.utils import similarity_from_homography, timer_ms
from aif.features import compute_feature_set
from aif.matcher import ResultMatcher, draw_matches
from aif.parameters import AIFParameters, ORBParameters, dump_parameters, load_parameters


log = get_logger("aif.pipeline")

DEFAULTS: Dict[str, Any] = {
    "logging": {"level": "INFO", "metrics_file": "logs/matches.jsonl"},
    "feature": dump_parameters(AIFParameters(entries=[ORBParameters()])),
    "matching": {"ratio": 0.75, "ransac_reproj_px": 5.0},
    "parallel": {"nstripes": -1},
    "http": {"timeout_s": 5.0},
}


def _load_yaml(path: Optional[str]) -> Dict:
    """Config file merged over DEFAULTS (one level deep). Missing path -> defaults."""
    P = {k: dict(v) if isinstance(v, dict) else v for k, v in DEFAULTS.items()}
    if path and Path(path).exists():
        with open(path, "r") as f:
            user = yaml.safe_load(f) or {}
        for k, v in user.items():
            if isinstance(v, dict) and isinstance(P.get(k), dict) and k != "feature":
                P[k].update(v)
            else:
                P[k] = v
    return P


def _is_url(src: str) -> bool:
    return src.startswith("http://") or src.startswith("https://")


def _load_image(src: str, timeout: float = 5.0) -> np.ndarray:
    """
    Read an image from a local path or an HTTP(S) URL as grayscale uint8.
    """
    if _is_url(src):
        r = requests.get(src, timeout=timeout)
        if r.status_code != 200:
            raise RuntimeError(f"Image fetch error {r.status_code}: {src}")
        arr = np.frombuffer(r.content, dtype=np.uint8)
        img = cv2.imdecode(arr, cv2.IMREAD_GRAYSCALE)
    else:
        img = cv2.imread(src, cv2.IMREAD_GRAYSCALE)
    if img is None:
        raise RuntimeError(f"Failed to read image: {src}")
    return img


def _write_metrics_row(path: Path, row: Dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", buffering=1) as f:
        f.write(json.dumps(row) + "\n")


@timer_ms
def _extract(extractor, image: np.ndarray) -> FeatureSet:
    return compute_feature_set(extractor, image)


def _load_reference(
    src: str, extractor, timeout: float
) -> Tuple[FeatureSet, Optional[np.ndarray], int]:
    """
    A reference is either a saved FeatureSet (.npz) or an image to run the
    extractor on. Returns (features, image or None, latency_ms).
    """
    if src.endswith(".npz") and not _is_url(src):
        return FeatureSet.load(src), None, 0
    img = _load_image(src, timeout)
    fs, dt_ms = _extract(extractor, img)
    return fs, img, int(dt_ms)


def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="Affine-invariant feature matching")
    ap.add_argument("--config", default="config/params.yaml")
    ap.add_argument("--source", required=True, help="Source image path or URL")
    ap.add_argument("--reference", nargs="+", required=True,
                    help="Reference image paths/URLs or saved feature sets (.npz)")
    ap.add_argument("--nstripes", type=float, default=None, help="Override parallelism hint")
    ap.add_argument("--save-features", default=None, help="Directory to write .npz feature sets")
    ap.add_argument("--draw", default=None, help="Directory to write match visualizations")
    args = ap.parse_args(argv)

    P = _load_yaml(args.config)
    setup_logging(P.get("logging", {}).get("level", "INFO"), force=True)

    nstripes = float(args.nstripes if args.nstripes is not None else P["parallel"].get("nstripes", -1))
    ratio = float(P["matching"].get("ratio", 0.75))
    ransac_px = float(P["matching"].get("ransac_reproj_px", 5.0))
    timeout = float(P["http"].get("timeout_s", 5.0))
    metrics_path = Path(P["logging"]["metrics_file"])

    params = load_parameters(P["feature"])
    if isinstance(params, AIFParameters) and args.nstripes is not None:
        params.nstripes = nstripes
    extractor = params.create_feature()
    if extractor is None:
        raise ValueError("feature configuration produced no extractor")
    log.info("extractor ready", extra={"extra": {"name": extractor.name, "kind": extractor.descriptor_kind}})

    src_img = _load_image(args.source, timeout)
    source, src_ms = _extract(extractor, src_img)
    log.info("source features", extra={"extra": {**source.to_meta(), "latency_ms": int(src_ms)}})

    references: List[FeatureSet] = []
    ref_images: List[Optional[np.ndarray]] = []
    for src in args.reference:
        fs, img, dt_ms = _load_reference(src, extractor, timeout)
        references.append(fs)
        ref_images.append(img)
        log.info("reference features", extra={"extra": {"src": src, **fs.to_meta(), "latency_ms": dt_ms}})

    if args.save_features:
        out_dir = Path(args.save_features)
        source.save(out_dir / (Path(args.source).stem + ".npz"))
        for src, fs in zip(args.reference, references):
            if not src.endswith(".npz"):
                fs.save(out_dir / (Path(src).stem + ".npz"))

    matchers = [ResultMatcher(fs, ratio=ratio, ransac_px=ransac_px) for fs in references]

    t0 = time.perf_counter()
    results = ResultMatcher.parallel_match(matchers, source, nstripes)
    dt_ms = int(1000.0 * (time.perf_counter() - t0))

    for src, fs, img, res in zip(args.reference, references, ref_images, results):
        scale, angle = similarity_from_homography(res.transform)
        row = {
            "source": args.source,
            "reference": src,
            "latency_ms": dt_ms,
            "scale": scale,
            "angle_deg": angle,
            **res.to_dict(),
        }
        _write_metrics_row(metrics_path, row)
        log.info("match", extra={"extra": {k: v for k, v in row.items() if k != "H"}})

        if args.draw and img is not None:
            out = Path(args.draw) / f"{Path(args.source).stem}__{Path(src).stem}.png"
            out.parent.mkdir(parents=True, exist_ok=True)
            cv2.imwrite(str(out), draw_matches(src_img, source, img, fs, res))


if __name__ == "__main__":
    main()
