"""Feature matching guided by a bag-of-words vocabulary.

Keypoints are only compared when they fall in the same vocabulary node.
This covers matching between two keyframes, the search that seeds map
initialisation, and the search for new points to triangulate.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterator, Mapping, Sequence

import numpy as np

from slamgeom.matching import (
    TH_LOW,
    KeyPoint,
    RotationHistogram,
    check_dist_epipolar_line,
    descriptor_distance,
)

_INT_MAX = 2**31 - 1


def _never_bad(_point: object) -> bool:
    return False


@dataclass
class BowView:
    """The features of one image as seen by the bag-of-words matcher.

    ``feature_vector`` maps a vocabulary node id to the indices of the
    keypoints that fall in it. ``map_points`` holds the map point observed
    at each keypoint, or None. ``u_right`` holds the right-image coordinate
    of stereo keypoints and a negative value for monocular ones.
    """

    keypoints: Sequence[KeyPoint]
    descriptors: Sequence
    feature_vector: Mapping[int, Sequence[int]]
    map_points: Sequence[object | None] | None = None
    u_right: Sequence[float] | None = None
    is_bad: Callable[[object], bool] = field(default=_never_bad)

    def __post_init__(self) -> None:
        self.keypoints = list(self.keypoints)
        count = len(self.keypoints)
        if len(self.descriptors) != count:
            raise ValueError("descriptors and keypoints differ in length")
        self.map_points = (
            [None] * count if self.map_points is None else list(self.map_points)
        )
        if len(self.map_points) != count:
            raise ValueError("map_points and keypoints differ in length")
        self.u_right = (
            [-1.0] * count if self.u_right is None else list(self.u_right)
        )
        if len(self.u_right) != count:
            raise ValueError("u_right and keypoints differ in length")
        for indices in self.feature_vector.values():
            for index in indices:
                if not 0 <= index < count:
                    raise ValueError(f"feature index {index} is out of range")

    def __len__(self) -> int:
        return len(self.keypoints)

    def usable_point(self, index: int) -> object | None:
        """The map point at ``index`` if there is one and it is not bad."""
        point = self.map_points[index]
        if point is None or self.is_bad(point):
            return None
        return point


def _shared_nodes(
    fv1: Mapping[int, Sequence[int]], fv2: Mapping[int, Sequence[int]]
) -> Iterator[tuple[Sequence[int], Sequence[int]]]:
    for node in sorted(fv1.keys() & fv2.keys()):
        yield fv1[node], fv2[node]


def _passes_ratio(best: int, second: int, nn_ratio: float) -> bool:
    return bool(np.float32(best) < np.float32(nn_ratio) * np.float32(second))


def match_by_bow(
    view1: BowView, view2: BowView, nn_ratio: float, check_orientation: bool
) -> list[object | None]:
    """Match the map points of two views that share vocabulary nodes.

    Returns, for every keypoint of ``view1``, the map point of ``view2``
    matched to it, or None.
    """
    matches: list[object | None] = [None] * len(view1)
    matched2 = [False] * len(view2)
    histogram = RotationHistogram()

    for indices1, indices2 in _shared_nodes(view1.feature_vector, view2.feature_vector):
        for idx1 in indices1:
            if view1.usable_point(idx1) is None:
                continue
            d1 = view1.descriptors[idx1]

            best1, best2, best_idx2 = 256, 256, -1
            for idx2 in indices2:
                if matched2[idx2] or view2.usable_point(idx2) is None:
                    continue
                dist = descriptor_distance(d1, view2.descriptors[idx2])
                if dist < best1:
                    best2, best1, best_idx2 = best1, dist, idx2
                elif dist < best2:
                    best2 = dist

            if best1 < TH_LOW and _passes_ratio(best1, best2, nn_ratio):
                matches[idx1] = view2.map_points[best_idx2]
                matched2[best_idx2] = True
                if check_orientation:
                    histogram.add(
                        view1.keypoints[idx1].angle,
                        view2.keypoints[best_idx2].angle,
                        idx1,
                    )

    if check_orientation:
        for idx1 in histogram.inconsistent():
            matches[idx1] = None
    return matches


def _features_in_window(
    keypoints: Sequence[KeyPoint], x: float, y: float, radius: float, level: int
) -> list[int]:
    return [
        i
        for i, kp in enumerate(keypoints)
        if abs(kp.x - x) < radius
        and abs(kp.y - y) < radius
        and (level <= 0 or kp.octave >= level)
        and (level < 0 or kp.octave <= level)
    ]


def search_for_initialization(
    keypoints1: Sequence[KeyPoint],
    keypoints2: Sequence[KeyPoint],
    descriptors1: Sequence,
    descriptors2: Sequence,
    prev_matched: Sequence[tuple[float, float]],
    window_size: float,
    nn_ratio: float,
    check_orientation: bool,
) -> tuple[list[int], list[tuple[float, float]]]:
    """Match finest-level keypoints of two frames around their previous positions.

    Returns the index in frame 2 matched to each keypoint of frame 1 (-1
    where none) and the updated previous positions.
    """
    if len(descriptors1) != len(keypoints1) or len(descriptors2) != len(keypoints2):
        raise ValueError("descriptors and keypoints differ in length")
    if len(prev_matched) != len(keypoints1):
        raise ValueError("prev_matched must hold one position per keypoint of frame 1")

    matches12 = [-1] * len(keypoints1)
    matches21 = [-1] * len(keypoints2)
    matched_distance = [_INT_MAX] * len(keypoints2)
    histogram = RotationHistogram()

    for i1, kp1 in enumerate(keypoints1):
        level1 = kp1.octave
        if level1 > 0:
            continue
        px, py = prev_matched[i1]
        candidates = _features_in_window(keypoints2, px, py, window_size, level1)
        if not candidates:
            continue
        d1 = descriptors1[i1]

        best, second, best_idx2 = _INT_MAX, _INT_MAX, -1
        for i2 in candidates:
            dist = descriptor_distance(d1, descriptors2[i2])
            if matched_distance[i2] <= dist:
                continue
            if dist < best:
                second, best, best_idx2 = best, dist, i2
            elif dist < second:
                second = dist

        if best <= TH_LOW and _passes_ratio(best, second, nn_ratio):
            previous = matches21[best_idx2]
            if previous >= 0:
                matches12[previous] = -1
            matches12[i1] = best_idx2
            matches21[best_idx2] = i1
            matched_distance[best_idx2] = best
            if check_orientation:
                histogram.add(kp1.angle, keypoints2[best_idx2].angle, i1)

    if check_orientation:
        for i1 in histogram.inconsistent():
            matches12[i1] = -1

    updated = [
        (keypoints2[i2].x, keypoints2[i2].y) if i2 >= 0 else tuple(prev)
        for i2, prev in zip(matches12, prev_matched)
    ]
    return matches12, updated


def search_for_triangulation(
    view1: BowView,
    view2: BowView,
    f12,
    epipole: tuple[float, float],
    scale_factors: Sequence[float],
    level_sigma2: Sequence[float],
    only_stereo: bool,
    check_orientation: bool,
) -> list[tuple[int, int]]:
    """Pair keypoints without map points that satisfy the epipolar constraint.

    ``epipole`` is the projection of the first camera centre in the second
    image; ``scale_factors`` and ``level_sigma2`` belong to the second view.
    Returns (index in view 1, index in view 2) pairs ordered by the first.
    """
    ex, ey = epipole
    matches12 = [-1] * len(view1)
    histogram = RotationHistogram()

    for indices1, indices2 in _shared_nodes(view1.feature_vector, view2.feature_vector):
        for idx1 in indices1:
            if view1.map_points[idx1] is not None:
                continue
            stereo1 = view1.u_right[idx1] >= 0
            if only_stereo and not stereo1:
                continue
            kp1 = view1.keypoints[idx1]
            d1 = view1.descriptors[idx1]

            best_dist, best_idx2 = TH_LOW, -1
            for idx2 in indices2:
                if view2.map_points[idx2] is not None:
                    continue
                stereo2 = view2.u_right[idx2] >= 0
                if only_stereo and not stereo2:
                    continue
                dist = descriptor_distance(d1, view2.descriptors[idx2])
                if dist > TH_LOW or dist > best_dist:
                    continue
                kp2 = view2.keypoints[idx2]
                if not stereo1 and not stereo2:
                    dx = ex - kp2.x
                    dy = ey - kp2.y
                    if dx * dx + dy * dy < 100 * scale_factors[kp2.octave]:
                        continue
                if check_dist_epipolar_line(kp1, kp2, f12, level_sigma2):
                    best_idx2, best_dist = idx2, dist

            if best_idx2 >= 0:
                matches12[idx1] = best_idx2
                if check_orientation:
                    histogram.add(kp1.angle, view2.keypoints[best_idx2].angle, idx1)

    if check_orientation:
        for idx1 in histogram.inconsistent():
            matches12[idx1] = -1

    return [(i1, i2) for i1, i2 in enumerate(matches12) if i2 >= 0]