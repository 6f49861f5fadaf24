"""Feature matching by projecting map points into an image.

Candidates with known 3D positions are projected with a pinhole camera and
compared with the keypoints found in a window around the projection.
"""

from __future__ import annotations

from bisect import bisect_left
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

from slamgeom.matching import (
    TH_HIGH,
    KeyPoint,
    descriptor_distance,
    radius_by_viewing_cos,
)

_INT_MAX = 2**31 - 1


@dataclass
class Camera:
    """A calibrated pinhole camera with a world-to-camera pose.

    Image bounds are inclusive: a projection lying exactly on ``max_x`` or
    ``max_y`` is still inside the image.
    """

    fx: float
    fy: float
    cx: float
    cy: float
    max_x: float
    max_y: float
    min_x: float = 0.0
    min_y: float = 0.0
    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self) -> None:
        self.rotation = np.asarray(self.rotation, dtype=float)
        self.translation = np.asarray(self.translation, dtype=float).reshape(3)
        if self.rotation.shape != (3, 3):
            raise ValueError("rotation must be 3x3")

    def is_in_image(self, u: float, v: float) -> bool:
        """Whether image coordinates fall inside the image bounds."""
        return self.min_x <= u <= self.max_x and self.min_y <= v <= self.max_y

    def to_camera(self, point) -> np.ndarray:
        """Transform a world point into camera coordinates."""
        return self.rotation @ np.asarray(point, dtype=float).reshape(3) + self.translation

    def _image_coords(self, point_c: np.ndarray) -> tuple[float, float] | None:
        z = point_c[2]
        if z <= 0.0:
            return None
        inv_z = 1.0 / z
        return (
            float(self.fx * point_c[0] * inv_z + self.cx),
            float(self.fy * point_c[1] * inv_z + self.cy),
        )

    def project(self, point) -> tuple[float, float] | None:
        """Image coordinates of a world point, or None if behind or outside."""
        coords = self._image_coords(self.to_camera(point))
        if coords is None or not self.is_in_image(*coords):
            return None
        return coords


@dataclass(eq=False)
class Candidate:
    """A map point offered for matching.

    ``predicted_level`` and ``view_cos`` describe how the point is expected
    to appear in the image being searched; ``min_distance`` and
    ``max_distance`` bound the depths at which it can be recognised.
    """

    position: np.ndarray
    descriptor: bytes
    predicted_level: int = 0
    view_cos: float = 1.0
    min_distance: float = 0.0
    max_distance: float = float("inf")
    bad: bool = False

    def __post_init__(self) -> None:
        self.position = np.asarray(self.position, dtype=float).reshape(3)


def features_in_area(
    keypoints: Sequence[KeyPoint],
    x: float,
    y: float,
    radius: float,
    min_level: int = -1,
    max_level: int = -1,
) -> list[int]:
    """Indices of keypoints in the square window of half-size ``radius``.

    Levels are only checked when ``min_level`` is positive or ``max_level``
    is non-negative; a negative ``max_level`` leaves the top unbounded.
    """
    check_levels = min_level > 0 or max_level >= 0
    found = []
    for i, kp in enumerate(keypoints):
        if check_levels:
            if kp.octave < min_level:
                continue
            if max_level >= 0 and kp.octave > max_level:
                continue
        if abs(kp.x - x) < radius and abs(kp.y - y) < radius:
            found.append(i)
    return found


def search_by_projection(
    camera: Camera,
    keypoints: Sequence[KeyPoint],
    descriptors: Sequence,
    matched: Sequence[object | None] | None,
    candidates: Sequence[Candidate],
    th: float,
    scale_factors: Sequence[float],
    nn_ratio: float,
) -> tuple[list[object | None], int]:
    """Match candidates to free keypoints around their projections.

    Returns the updated per-keypoint matches and the number of new matches.
    The ratio test against the second-best keypoint only applies when both
    lie on the same pyramid level.
    """
    if len(descriptors) != len(keypoints):
        raise ValueError("descriptors and keypoints differ in length")
    matches = [None] * len(keypoints) if matched is None else list(matched)
    if len(matches) != len(keypoints):
        raise ValueError("matched and keypoints differ in length")

    ratio = np.float32(nn_ratio)
    n_matches = 0
    for candidate in candidates:
        if candidate.bad:
            continue
        coords = camera.project(candidate.position)
        if coords is None:
            continue
        u, v = coords
        level = candidate.predicted_level

        r = radius_by_viewing_cos(candidate.view_cos)
        if th != 1.0:
            r *= th
        indices = features_in_area(
            keypoints, u, v, r * scale_factors[level], level - 1, level
        )
        if not indices:
            continue

        best, second = 256, 256
        best_level, second_level = -1, -1
        best_idx = -1
        for idx in indices:
            if matches[idx] is not None:
                continue
            dist = descriptor_distance(candidate.descriptor, descriptors[idx])
            if dist < best:
                second, best = best, dist
                second_level, best_level = best_level, keypoints[idx].octave
                best_idx = idx
            elif dist < second:
                second_level = keypoints[idx].octave
                second = dist

        if best <= TH_HIGH:
            if best_level == second_level and np.float32(best) > ratio * np.float32(second):
                continue
            matches[best_idx] = candidate
            n_matches += 1

    return matches, n_matches


def _predict_level(distance: float, max_distance: float, scale_factors: Sequence[float]) -> int:
    ratio = max_distance / distance if distance > 0 else float("inf")
    level = bisect_left(list(scale_factors), ratio)
    return min(max(level, 0), len(scale_factors) - 1)


def _best_in_window(
    camera_intrinsics: Camera,
    target: Camera,
    point_c: np.ndarray,
    candidate: Candidate,
    keypoints: Sequence[KeyPoint],
    descriptors: Sequence,
    th: float,
    scale_factors: Sequence[float],
) -> int:
    coords = camera_intrinsics._image_coords(point_c)
    if coords is None or not target.is_in_image(*coords):
        return -1
    u, v = coords
    dist3d = float(np.linalg.norm(point_c))
    if dist3d < candidate.min_distance or dist3d > candidate.max_distance:
        return -1
    level = _predict_level(dist3d, candidate.max_distance, scale_factors)
    radius = th * scale_factors[level]

    best, best_idx = _INT_MAX, -1
    for idx in features_in_area(keypoints, u, v, radius):
        octave = keypoints[idx].octave
        if octave < level - 1 or octave > level:
            continue
        dist = descriptor_distance(candidate.descriptor, descriptors[idx])
        if dist < best:
            best, best_idx = dist, idx
    return best_idx if best <= TH_HIGH else -1


def search_by_sim3(
    camera1: Camera,
    camera2: Camera,
    keypoints1: Sequence[KeyPoint],
    keypoints2: Sequence[KeyPoint],
    descriptors1: Sequence,
    descriptors2: Sequence,
    candidates1: Sequence[Candidate | None],
    candidates2: Sequence[Candidate | None],
    s12: float,
    r12,
    t12,
    th: float,
    scale_factors: Sequence[float],
) -> tuple[list[Candidate | None], int]:
    """Find mutual matches between two keyframes related by a similarity.

    ``candidates1`` and ``candidates2`` give the map point at each keypoint
    of the two keyframes. Points of each keyframe are carried into the other
    with the similarity (s12, r12, t12) and matched there; only pairs that
    agree in both directions are kept. Projection uses the intrinsics of
    ``camera1`` for both images. Returns, per keypoint of keyframe 1, the
    matched candidate of keyframe 2 or None, and the number of matches.
    """
    if len(candidates1) != len(keypoints1) or len(candidates2) != len(keypoints2):
        raise ValueError("candidates and keypoints differ in length")
    if len(descriptors1) != len(keypoints1) or len(descriptors2) != len(keypoints2):
        raise ValueError("descriptors and keypoints differ in length")
    if s12 == 0:
        raise ValueError("scale must be non-zero")

    r12 = np.asarray(r12, dtype=float).reshape(3, 3)
    t12 = np.asarray(t12, dtype=float).reshape(3)
    sr12 = s12 * r12
    sr21 = (1.0 / s12) * r12.T
    t21 = -sr21 @ t12

    match1 = [-1] * len(keypoints1)
    for i1, candidate in enumerate(candidates1):
        if candidate is None or candidate.bad:
            continue
        p_c2 = sr21 @ camera1.to_camera(candidate.position) + t21
        match1[i1] = _best_in_window(
            camera1, camera2, p_c2, candidate, keypoints2, descriptors2, th, scale_factors
        )

    match2 = [-1] * len(keypoints2)
    for i2, candidate in enumerate(candidates2):
        if candidate is None or candidate.bad:
            continue
        p_c1 = sr12 @ camera2.to_camera(candidate.position) + t12
        match2[i2] = _best_in_window(
            camera1, camera1, p_c1, candidate, keypoints1, descriptors1, th, scale_factors
        )

    result: list[Candidate | None] = [None] * len(keypoints1)
    found = 0
    for i1, idx2 in enumerate(match1):
        if idx2 >= 0 and match2[idx2] == i1:
            result[i1] = candidates2[idx2]
            found += 1
    return result, found