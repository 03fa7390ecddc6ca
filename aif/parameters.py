from __future__ import annotations
"""
Tuning parameter sets for feature extractors.

Each variant is a small dataclass holding OpenCV's defaults, tagged by
default_name(). A YAML mapping selects a variant by that tag:

    AIFParameters:
      ORBParameters:
        nfeatures: 500

create_feature() turns a parameter set into a ready extractor; AIFParameters
wraps its nested entries in an AffineInvariantDetector.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, Union

import cv2
import yaml

from aif.detector import AffineInvariantDetector
from aif.features import FeatureExtractor


class FeatureParameters(ABC):
    """Base for all parameter variants (scalar dataclass fields only)."""

    @abstractmethod
    def create_feature(self) -> Any:
        """Build the extractor these parameters describe."""

    @classmethod
    def default_name(cls) -> str:
        return cls.__name__

    def read(self, node: Optional[Dict[str, Any]]) -> None:
        """Overwrite fields present in `node`; unknown keys are ignored."""
        if not node:
            return
        for f in fields(self):  # type: ignore[arg-type]
            if f.name in node and node[f.name] is not None:
                cur = getattr(self, f.name)
                setattr(self, f.name, type(cur)(node[f.name]))

    def write(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}  # type: ignore[arg-type]


@dataclass
class AKAZEParameters(FeatureParameters):
    descriptor_type: int = cv2.AKAZE_DESCRIPTOR_MLDB
    descriptor_size: int = 0
    descriptor_channels: int = 3
    threshold: float = 0.001
    nOctaves: int = 4
    nOctaveLayers: int = 4
    diffusivity: int = cv2.KAZE_DIFF_PM_G2

    def create_feature(self) -> FeatureExtractor:
        return FeatureExtractor(
            cv2.AKAZE_create(
                descriptor_type=int(self.descriptor_type),
                descriptor_size=int(self.descriptor_size),
                descriptor_channels=int(self.descriptor_channels),
                threshold=float(self.threshold),
                nOctaves=int(self.nOctaves),
                nOctaveLayers=int(self.nOctaveLayers),
                diffusivity=int(self.diffusivity),
            ),
            "AKAZE",
        )


@dataclass
class BRISKParameters(FeatureParameters):
    threshold: int = 30
    nOctaves: int = 3
    patternScale: float = 1.0

    def create_feature(self) -> FeatureExtractor:
        return FeatureExtractor(
            cv2.BRISK_create(int(self.threshold), int(self.nOctaves), float(self.patternScale)),
            "BRISK",
        )


@dataclass
class ORBParameters(FeatureParameters):
    nfeatures: int = 500
    scaleFactor: float = 1.2
    nlevels: int = 8
    edgeThreshold: int = 31
    firstLevel: int = 0
    WTA_K: int = 2
    scoreType: int = cv2.ORB_HARRIS_SCORE
    patchSize: int = 31
    fastThreshold: int = 20

    def create_feature(self) -> FeatureExtractor:
        return FeatureExtractor(
            cv2.ORB_create(
                nfeatures=int(self.nfeatures),
                scaleFactor=float(self.scaleFactor),
                nlevels=int(self.nlevels),
                edgeThreshold=int(self.edgeThreshold),
                firstLevel=int(self.firstLevel),
                WTA_K=int(self.WTA_K),
                scoreType=int(self.scoreType),
                patchSize=int(self.patchSize),
                fastThreshold=int(self.fastThreshold),
            ),
            "ORB",
        )


@dataclass
class SIFTParameters(FeatureParameters):
    # OpenCV does not expose SIFT defaults; these match its documentation
    nfeatures: int = 0
    nOctaveLayers: int = 3
    contrastThreshold: float = 0.04
    edgeThreshold: float = 10.0
    sigma: float = 1.6

    def create_feature(self) -> FeatureExtractor:
        return FeatureExtractor(
            cv2.SIFT_create(
                nfeatures=int(self.nfeatures),
                nOctaveLayers=int(self.nOctaveLayers),
                contrastThreshold=float(self.contrastThreshold),
                edgeThreshold=float(self.edgeThreshold),
                sigma=float(self.sigma),
            ),
            "SIFT",
        )


@dataclass
class AIFParameters(FeatureParameters):
    """
    Ordered nested parameter sets. One entry: detector+descriptor. Two entries:
    the first detects, the second describes. Further entries are ignored by
    create_feature() but kept for round-tripping.
    """
    entries: List[FeatureParameters] = field(default_factory=list)
    nstripes: float = -1.0

    def create_feature(self) -> Optional[AffineInvariantDetector]:
        if not self.entries:
            return None
        detector = self.entries[0].create_feature()
        extractor = self.entries[1].create_feature() if len(self.entries) > 1 else None
        return AffineInvariantDetector(detector, extractor, nstripes=self.nstripes)

    def read(self, node: Optional[Dict[str, Any]]) -> None:
        self.entries = []
        for name, sub in (node or {}).items():
            if name == "nstripes":
                self.nstripes = float(sub)
                continue
            p = create_feature_parameters(name)
            if p is None:
                continue
            p.read(sub)
            self.entries.append(p)

    def write(self) -> Dict[str, Any]:
        # YAML mappings keep one entry per tag; a repeated tag is written once
        out: Dict[str, Any] = {}
        for p in self.entries:
            out[p.default_name()] = p.write()
        if self.nstripes != -1.0:
            out["nstripes"] = self.nstripes
        return out


_VARIANTS: Dict[str, Type[FeatureParameters]] = {
    cls.default_name(): cls
    for cls in (AIFParameters, AKAZEParameters, BRISKParameters, ORBParameters, SIFTParameters)
}


def create_feature_parameters(name: str) -> Optional[FeatureParameters]:
    """New default parameter set for tag `name`, or None if the tag is unknown."""
    cls = _VARIANTS.get(name)
    return cls() if cls is not None else None


def load_parameters(node: Dict[str, Any]) -> FeatureParameters:
    """
    Build the parameter set described by a one-key mapping {Tag: {...}}.
    Raises ValueError for anything else.
    """
    if not isinstance(node, dict) or len(node) != 1:
        raise ValueError("parameter node must be a mapping with exactly one variant tag")
    name, sub = next(iter(node.items()))
    params = create_feature_parameters(name)
    if params is None:
        raise ValueError(f"Unsupported parameter set: {name} (known: {sorted(_VARIANTS)})")
    params.read(sub)
    return params


def dump_parameters(params: FeatureParameters) -> Dict[str, Any]:
    return {params.default_name(): params.write()}


def read_yaml(path: Union[str, Path]) -> FeatureParameters:
    with open(path, "r") as f:
        return load_parameters(yaml.safe_load(f))


def write_yaml(params: FeatureParameters, path: Union[str, Path]) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("w") as f:
        yaml.safe_dump(dump_parameters(params), f, sort_keys=False)
