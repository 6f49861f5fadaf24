"""Shared primitives for ORB feature matching.

This module provides the keypoint record, the binary descriptor distance,
the rotation-consistency histogram and the small geometric checks used by
the matching routines.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Sequence, Sized

import numpy as np

TH_HIGH = 100
TH_LOW = 50
HISTO_LENGTH = 30
DESCRIPTOR_BYTES = 32

_FACTOR = np.float32(1.0) / np.float32(HISTO_LENGTH)
_TENTH = np.float32(0.1)


@dataclass(frozen=True)
class KeyPoint:
    """An undistorted keypoint with its pyramid level and orientation."""

    x: float
    y: float
    octave: int = 0
    angle: float = 0.0
    movable: bool = False


def _as_bytes(descriptor) -> np.ndarray:
    array = np.frombuffer(bytes(descriptor), dtype=np.uint8) if isinstance(
        descriptor, (bytes, bytearray, memoryview)
    ) else np.asarray(descriptor, dtype=np.uint8).ravel()
    if array.size < DESCRIPTOR_BYTES:
        raise ValueError(
            f"descriptor must hold at least {DESCRIPTOR_BYTES} bytes, got {array.size}"
        )
    return array[:DESCRIPTOR_BYTES]


def descriptor_distance(a, b) -> int:
    """Hamming distance between the first 256 bits of two ORB descriptors."""
    xor = np.bitwise_xor(_as_bytes(a), _as_bytes(b))
    return int(np.unpackbits(xor).sum())


def compute_three_maxima(histogram: Sequence[Sized]) -> tuple[int, int, int]:
    """Indices of the three fullest bins; -1 where a bin is absent or too small.

    The second and third bins are dropped when they hold fewer than a tenth
    of the entries of the fullest one.
    """
    max1 = max2 = max3 = 0
    ind1 = ind2 = ind3 = -1
    for i, bin_ in enumerate(histogram):
        size = len(bin_)
        if size > max1:
            max3, max2, max1 = max2, max1, size
            ind3, ind2, ind1 = ind2, ind1, i
        elif size > max2:
            max3, max2 = max2, size
            ind3, ind2 = ind2, i
        elif size > max3:
            max3 = size
            ind3 = i

    limit = _TENTH * np.float32(max1)
    if max2 < limit:
        ind2 = ind3 = -1
    elif max3 < limit:
        ind3 = -1
    return ind1, ind2, ind3


def radius_by_viewing_cos(view_cos: float) -> float:
    """Search window radius factor for a given viewing-angle cosine."""
    return 2.5 if view_cos > 0.998 else 4.0


def check_dist_epipolar_line(kp1: KeyPoint, kp2: KeyPoint, f12, sigma2: Sequence[float]) -> bool:
    """Whether kp2 lies close enough to the epipolar line of kp1.

    ``f12`` is the 3x3 fundamental matrix from image 1 to image 2 and
    ``sigma2`` the per-level squared scale sigmas of the second image.
    """
    f = np.asarray(f12, dtype=float)
    if f.shape != (3, 3):
        raise ValueError("fundamental matrix must be 3x3")
    a = kp1.x * f[0, 0] + kp1.y * f[1, 0] + f[2, 0]
    b = kp1.x * f[0, 1] + kp1.y * f[1, 1] + f[2, 1]
    c = kp1.x * f[0, 2] + kp1.y * f[1, 2] + f[2, 2]

    num = a * kp2.x + b * kp2.y + c
    den = a * a + b * b
    if den == 0:
        return False
    return num * num / den < 3.84 * sigma2[kp2.octave]


def rotation_bin(angle1: float, angle2: float) -> int:
    """Histogram bin of the orientation difference between two keypoints."""
    rot = np.float32(angle1) - np.float32(angle2)
    if rot < 0.0:
        rot = rot + np.float32(360.0)
    bin_ = math.floor(float(rot * _FACTOR) + 0.5)
    if bin_ == HISTO_LENGTH:
        bin_ = 0
    if not 0 <= bin_ < HISTO_LENGTH:
        raise ValueError(f"orientation difference {float(rot)} is out of range")
    return bin_


@dataclass
class RotationHistogram:
    """Collects match indices by orientation difference to reject outliers."""

    bins: list[list[int]] = field(
        default_factory=lambda: [[] for _ in range(HISTO_LENGTH)]
    )

    def add(self, angle1: float, angle2: float, index: int) -> int:
        """Record a match and return the bin it fell into."""
        bin_ = rotation_bin(angle1, angle2)
        self.bins[bin_].append(index)
        return bin_

    def inconsistent(self) -> list[int]:
        """Indices of matches outside the three dominant rotation bins."""
        keep = set(compute_three_maxima(self.bins))
        return [
            index
            for i, bin_ in enumerate(self.bins)
            if i not in keep
            for index in bin_
        ]