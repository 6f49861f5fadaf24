import numpy as np
import pytest
from hypothesis import assume, given, settings
from hypothesis import strategies as st

from slamgeom.epnp import (
    EPnP,
    Intrinsics,
    mat_to_quat,
    qr_solve,
    relative_error,
    reprojection_error,
)

K = Intrinsics(fu=500.0, fv=480.0, uc=320.0, vc=240.0)


def _rotation(rng):
    q, r = np.linalg.qr(rng.normal(size=(3, 3)))
    q = q @ np.diag(np.sign(np.diag(r)))
    if np.linalg.det(q) < 0:
        q[:, 0] = -q[:, 0]
    return q


def _scene(seed, n=20):
    rng = np.random.default_rng(seed)
    r = _rotation(rng)
    t = rng.uniform(-1.0, 1.0, size=3)
    pc = np.column_stack([
        rng.uniform(-1.5, 1.5, n),
        rng.uniform(-1.5, 1.5, n),
        rng.uniform(4.0, 8.0, n),
    ])
    pw = (pc - t) @ r
    u = K.uc + K.fu * pc[:, 0] / pc[:, 2]
    v = K.vc + K.fv * pc[:, 1] / pc[:, 2]
    return r, t, pw, np.column_stack([u, v])


@pytest.mark.parametrize("seed", [0, 1, 2, 3, 4])
def test_compute_pose_recovers_exact_pose(seed):
    r, t, pw, uv = _scene(seed)
    r_est, t_est, error = EPnP(K).compute_pose(pw, uv)
    np.testing.assert_allclose(r_est, r, atol=1e-6)
    np.testing.assert_allclose(t_est, t, atol=1e-6)
    assert error < 1e-6


@pytest.mark.parametrize("n", [4, 6, 50])
def test_compute_pose_returns_proper_rotation(n):
    _, _, pw, uv = _scene(7, n)
    r_est, _, _ = EPnP(K).compute_pose(pw, uv)
    np.testing.assert_allclose(r_est @ r_est.T, np.eye(3), atol=1e-9)
    assert np.linalg.det(r_est) == pytest.approx(1.0)


def test_compute_pose_with_noise_has_small_error():
    r, t, pw, uv = _scene(11, 60)
    noisy = uv + np.random.default_rng(5).normal(scale=0.5, size=uv.shape)
    r_est, t_est, error = EPnP(K).compute_pose(pw, noisy)
    assert 0.0 < error < 2.0
    assert error == pytest.approx(reprojection_error(K, r_est, t_est, pw, noisy))
    rot_err, transl_err = relative_error(r, t, r_est, t_est)
    assert rot_err < 0.05


def test_compute_pose_rejects_too_few_points():
    _, _, pw, uv = _scene(0, 3)
    with pytest.raises(ValueError):
        EPnP(K).compute_pose(pw, uv)


def test_compute_pose_rejects_mismatched_lengths():
    _, _, pw, uv = _scene(0, 8)
    with pytest.raises(ValueError):
        EPnP(K).compute_pose(pw, uv[:-1])


def test_compute_pose_rejects_bad_shape():
    with pytest.raises(ValueError):
        EPnP(K).compute_pose(np.zeros((5, 2)), np.zeros((5, 2)))


def test_reprojection_error_zero_for_true_pose():
    r, t, pw, uv = _scene(3)
    assert reprojection_error(K, r, t, pw, uv) == pytest.approx(0.0, abs=1e-9)


def test_reprojection_error_of_shifted_observations():
    r, t, pw, uv = _scene(3)
    shifted = uv + np.array([3.0, 4.0])
    assert reprojection_error(K, r, t, pw, shifted) == pytest.approx(5.0)


@settings(max_examples=50, deadline=None)
@given(
    st.lists(st.floats(-10, 10), min_size=24, max_size=24),
    st.lists(st.floats(-5, 5), min_size=4, max_size=4),
)
def test_qr_solve_consistent_overdetermined(entries, xs):
    a = np.array(entries).reshape(6, 4)
    assume(np.linalg.matrix_rank(a) == 4 and np.linalg.cond(a) < 1e4)
    x = np.array(xs)
    b = a @ x
    np.testing.assert_allclose(qr_solve(a, b), x, atol=1e-6)


def test_qr_solve_least_squares_matches_normal_equations():
    rng = np.random.default_rng(4)
    a = rng.normal(size=(6, 4))
    b = rng.normal(size=6)
    x = qr_solve(a, b)
    np.testing.assert_allclose(a.T @ (a @ x - b), np.zeros(4), atol=1e-9)


def test_qr_solve_leaves_inputs_untouched():
    rng = np.random.default_rng(9)
    a = rng.normal(size=(6, 4))
    b = rng.normal(size=6)
    a_copy, b_copy = a.copy(), b.copy()
    qr_solve(a, b)
    np.testing.assert_array_equal(a, a_copy)
    np.testing.assert_array_equal(b, b_copy)


def test_qr_solve_singular_raises():
    a = np.ones((6, 4))
    a[:, 0] = 0.0
    with pytest.raises(np.linalg.LinAlgError):
        qr_solve(a, np.ones(6))


def test_qr_solve_rejects_wide_matrix():
    with pytest.raises(ValueError):
        qr_solve(np.ones((2, 4)), np.ones(2))


def test_mat_to_quat_identity():
    np.testing.assert_allclose(mat_to_quat(np.eye(3)), [0.0, 0.0, 0.0, 1.0])


@pytest.mark.parametrize("seed", range(8))
def test_mat_to_quat_is_unit(seed):
    r = _rotation(np.random.default_rng(seed))
    assert np.linalg.norm(mat_to_quat(r)) == pytest.approx(1.0)


@pytest.mark.parametrize(
    "r",
    [
        np.diag([1.0, -1.0, -1.0]),
        np.diag([-1.0, 1.0, -1.0]),
        np.diag([-1.0, -1.0, 1.0]),
    ],
)
def test_mat_to_quat_half_turns_are_unit(r):
    q = mat_to_quat(r)
    assert np.linalg.norm(q) == pytest.approx(1.0)
    assert q[3] == pytest.approx(0.0)


def test_relative_error_identical_pose_is_zero():
    r = _rotation(np.random.default_rng(2))
    t = np.array([0.5, -1.0, 2.0])
    rot_err, transl_err = relative_error(r, t, r, t)
    assert rot_err == pytest.approx(0.0, abs=1e-12)
    assert transl_err == pytest.approx(0.0, abs=1e-12)


def test_relative_error_doubled_translation():
    r = np.eye(3)
    t = np.array([1.0, 2.0, 2.0])
    _, transl_err = relative_error(r, t, r, 2 * t)
    assert transl_err == pytest.approx(1.0)


def test_relative_error_detects_rotation_difference():
    rng = np.random.default_rng(6)
    r1 = _rotation(rng)
    r2 = _rotation(rng)
    t = np.ones(3)
    rot_err, _ = relative_error(r1, t, r2, t)
    assert rot_err > 0.01