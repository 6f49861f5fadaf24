import numpy as np
import pytest

from slamgeom.bow_matching import (
    BowView,
    match_by_bow,
    search_for_initialization,
    search_for_triangulation,
)
from slamgeom.matching import KeyPoint


def desc(nbits):
    bits = np.zeros(256, dtype=np.uint8)
    bits[:nbits] = 1
    return np.packbits(bits)


HORIZONTAL_F = [[0, 0, 0], [0, 0, -1], [0, 1, 0]]
FAR_EPIPOLE = (1e6, 1e6)
SCALES = [1.0, 1.2, 1.44]
SIGMA2 = [1.0, 1.44, 2.0736]


def test_match_by_bow_picks_closest_unmatched():
    v1 = BowView([KeyPoint(0, 0), KeyPoint(1, 1)], [desc(0), desc(200)], {1: [0, 1]},
                 map_points=["p0", "p1"])
    v2 = BowView([KeyPoint(0, 0), KeyPoint(1, 1)], [desc(2), desc(100)], {1: [0, 1]},
                 map_points=["q0", "q1"])
    assert match_by_bow(v1, v2, 0.6, True) == ["q0", None]


def test_match_by_bow_ratio_rejects_ambiguous():
    v1 = BowView([KeyPoint(0, 0)], [desc(0)], {1: [0]}, map_points=["p0"])
    v2 = BowView([KeyPoint(0, 0), KeyPoint(1, 1)], [desc(2), desc(3)], {1: [0, 1]},
                 map_points=["q0", "q1"])
    assert match_by_bow(v1, v2, 0.6, False) == [None]


def test_match_by_bow_only_shared_nodes():
    v1 = BowView([KeyPoint(0, 0)], [desc(0)], {1: [0]}, map_points=["p0"])
    v2 = BowView([KeyPoint(0, 0)], [desc(0)], {2: [0]}, map_points=["q0"])
    assert match_by_bow(v1, v2, 0.6, False) == [None]


def test_match_by_bow_skips_bad_and_missing_points():
    v1 = BowView([KeyPoint(0, 0), KeyPoint(1, 1)], [desc(0), desc(0)], {1: [0], 2: [1]},
                 map_points=[None, "p1"])
    v2 = BowView([KeyPoint(0, 0), KeyPoint(1, 1)], [desc(0), desc(0)], {1: [0], 2: [1]},
                 map_points=["q0", "bad"], is_bad=lambda p: p == "bad")
    assert match_by_bow(v1, v2, 0.6, False) == [None, None]


def test_match_by_bow_rejects_rotation_outlier():
    n = 12
    fv = {i: [i] for i in range(n)}
    kps1 = [KeyPoint(i, i, angle=10.0) for i in range(n)]
    kps2 = [KeyPoint(i, i, angle=10.0) for i in range(n - 1)] + [KeyPoint(0, 0, angle=100.0)]
    points2 = [f"q{i}" for i in range(n)]
    v1 = BowView(kps1, [desc(0)] * n, fv, map_points=[f"p{i}" for i in range(n)])
    v2 = BowView(kps2, [desc(0)] * n, fv, map_points=points2)
    with_check = match_by_bow(v1, v2, 0.6, True)
    assert with_check == points2[:-1] + [None]
    assert match_by_bow(v1, v2, 0.6, False) == points2


def test_bow_view_rejects_mismatched_lengths():
    with pytest.raises(ValueError):
        BowView([KeyPoint(0, 0)], [desc(0), desc(1)], {})
    with pytest.raises(ValueError):
        BowView([KeyPoint(0, 0)], [desc(0)], {1: [5]})


def test_initialization_identity():
    kps = [KeyPoint(10, 10), KeyPoint(50, 50)]
    kps2 = [KeyPoint(12, 11), KeyPoint(51, 49)]
    matches, prev = search_for_initialization(
        kps, kps2, [desc(0), desc(100)], [desc(1), desc(101)],
        [(10, 10), (50, 50)], 5, 0.9, True)
    assert matches == [0, 1]
    assert prev == [(12, 11), (51, 49)]


def test_initialization_skips_coarse_levels_and_far_points():
    kps1 = [KeyPoint(10, 10, octave=1), KeyPoint(50, 50)]
    kps2 = [KeyPoint(10, 10, octave=1), KeyPoint(80, 80)]
    matches, prev = search_for_initialization(
        kps1, kps2, [desc(0), desc(0)], [desc(0), desc(0)],
        [(10, 10), (50, 50)], 5, 0.9, False)
    assert matches == [-1, -1]
    assert prev == [(10, 10), (50, 50)]


def test_initialization_better_match_steals():
    kps1 = [KeyPoint(10, 10), KeyPoint(11, 11)]
    kps2 = [KeyPoint(10, 10)]
    matches, prev = search_for_initialization(
        kps1, kps2, [desc(5), desc(1)], [desc(0)],
        [(10, 10), (11, 11)], 5, 0.9, False)
    assert matches == [-1, 0]
    assert prev == [(10, 10), (10, 10)]


def test_initialization_worse_match_does_not_steal():
    kps1 = [KeyPoint(10, 10), KeyPoint(11, 11)]
    kps2 = [KeyPoint(10, 10)]
    matches, _ = search_for_initialization(
        kps1, kps2, [desc(5), desc(10)], [desc(0)],
        [(10, 10), (11, 11)], 5, 0.9, False)
    assert matches == [0, -1]


def test_initialization_length_check():
    with pytest.raises(ValueError):
        search_for_initialization([KeyPoint(0, 0)], [], [desc(0)], [], [], 5, 0.9, False)


def _tri_views(kps2, map_points1=None, u1=None, u2=None):
    v1 = BowView([KeyPoint(10, 20)], [desc(0)], {3: [0]}, map_points=map_points1, u_right=u1)
    v2 = BowView(kps2, [desc(1)] * len(kps2), {3: list(range(len(kps2)))}, u_right=u2)
    return v1, v2


def test_triangulation_keeps_point_on_epipolar_line():
    v1, v2 = _tri_views([KeyPoint(30, 40), KeyPoint(30, 20)])
    pairs = search_for_triangulation(v1, v2, HORIZONTAL_F, FAR_EPIPOLE, SCALES, SIGMA2, False, True)
    assert pairs == [(0, 1)]


def test_triangulation_rejects_point_near_epipole():
    v1, v2 = _tri_views([KeyPoint(30, 20)])
    assert search_for_triangulation(v1, v2, HORIZONTAL_F, (30, 20), SCALES, SIGMA2, False, False) == []


def test_triangulation_skips_existing_map_point():
    v1, v2 = _tri_views([KeyPoint(30, 20)], map_points1=["p0"])
    assert search_for_triangulation(v1, v2, HORIZONTAL_F, FAR_EPIPOLE, SCALES, SIGMA2, False, False) == []


def test_triangulation_only_stereo():
    v1, v2 = _tri_views([KeyPoint(30, 20), KeyPoint(31, 20)], u1=[5.0], u2=[-1.0, 7.0])
    pairs = search_for_triangulation(v1, v2, HORIZONTAL_F, FAR_EPIPOLE, SCALES, SIGMA2, True, False)
    assert pairs == [(0, 1)]
    mono1, mono2 = _tri_views([KeyPoint(30, 20)])
    assert search_for_triangulation(mono1, mono2, HORIZONTAL_F, FAR_EPIPOLE, SCALES, SIGMA2, True, False) == []