from __future__ import annotations
"""
Affine sampling grid.

The grid follows the ASIFT scheme: tilts t = 2^(i/2) for i = 1..5 and, for
each tilt, in-plane rotations phi in [0, 180) with step 72/t degrees. The
identity (t=1, phi=0) is always the first sample.
"""

import math
from typing import Iterator, List, NamedTuple


MAX_TILT_INDEX = 5
PHI_STEP_DEG = 72.0


class AffineSample(NamedTuple):
    tilt: float  # horizontal shrink factor, >= 1
    phi: float   # in-plane rotation, degrees

    @property
    def is_identity(self) -> bool:
        return self.tilt == 1.0 and self.phi == 0.0


IDENTITY = AffineSample(1.0, 0.0)


def affine_samples() -> Iterator[AffineSample]:
    """Yield the sampling grid in its fixed order."""
    yield IDENTITY
    for i in range(1, MAX_TILT_INDEX + 1):
        tilt = math.pow(2.0, 0.5 * i)
        phi = 0.0
        while phi < 180.0:
            yield AffineSample(tilt, phi)
            phi += PHI_STEP_DEG / tilt


class AffineSampler:
    """Restartable view over affine_samples(); every iteration starts over."""

    def __iter__(self) -> Iterator[AffineSample]:
        return affine_samples()

    def __len__(self) -> int:
        return sum(1 for _ in affine_samples())

    def as_list(self) -> List[AffineSample]:
        return list(affine_samples())
