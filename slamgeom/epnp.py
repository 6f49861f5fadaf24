"""Efficient Perspective-n-Point camera pose estimation.

The pose of a calibrated camera is recovered from n >= 4 correspondences
between 3D world points and their 2D image projections. The world points
are written in terms of four control points. The camera-frame control
points are found from the null space of a 2n x 12 system, refined with
Gauss-Newton, and the best of three approximations is kept.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import numpy as np

_GAUSS_NEWTON_ITERATIONS = 5
_PAIRS = ((0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3))


@dataclass(frozen=True)
class Intrinsics:
    """Pinhole calibration: focal lengths and principal point in pixels."""

    fu: float
    fv: float
    uc: float
    vc: float


def _as_points(points, width: int, name: str) -> np.ndarray:
    array = np.asarray(points, dtype=float)
    if array.ndim != 2 or array.shape[1] != width:
        raise ValueError(f"{name} must be an n x {width} array")
    return array


def reprojection_error(intrinsics: Intrinsics, r, t, points3d, points2d) -> float:
    """Mean pixel distance between observed and reprojected points."""
    pws = _as_points(points3d, 3, "points3d")
    us = _as_points(points2d, 2, "points2d")
    if len(pws) != len(us):
        raise ValueError("points3d and points2d differ in length")
    if len(pws) == 0:
        raise ValueError("at least one correspondence is required")
    r = np.asarray(r, dtype=float).reshape(3, 3)
    t = np.asarray(t, dtype=float).reshape(3)
    with np.errstate(divide="ignore", invalid="ignore"):
        pc = pws @ r.T + t
        inv_z = 1.0 / pc[:, 2]
        ue = intrinsics.uc + intrinsics.fu * pc[:, 0] * inv_z
        ve = intrinsics.vc + intrinsics.fv * pc[:, 1] * inv_z
        return float(np.mean(np.hypot(us[:, 0] - ue, us[:, 1] - ve)))


def qr_solve(a, b) -> np.ndarray:
    """Solve ``a @ x = b`` in the least-squares sense by Householder QR.

    ``a`` must have at least as many rows as columns. Raises
    ``numpy.linalg.LinAlgError`` when a column is found to be zero.
    """
    a = np.array(a, dtype=float)
    b = np.array(b, dtype=float).reshape(-1)
    if a.ndim != 2:
        raise ValueError("a must be a matrix")
    nr, nc = a.shape
    if nc == 0 or nr < nc:
        raise ValueError("a must have at least as many rows as columns")
    if len(b) != nr:
        raise ValueError("b must have one entry per row of a")

    a1 = np.zeros(nc)
    a2 = np.zeros(nc)
    for k in range(nc):
        # The pivot search stops one row short of the bottom of the column.
        scan_end = max(nr - 1, k + 1)
        eta = float(np.max(np.abs(a[k:scan_end, k])))
        if eta == 0:
            raise np.linalg.LinAlgError("matrix is singular")
        a[k:, k] *= 1.0 / eta
        sigma = float(np.sqrt(np.dot(a[k:, k], a[k:, k])))
        if a[k, k] < 0:
            sigma = -sigma
        a[k, k] += sigma
        a1[k] = sigma * a[k, k]
        a2[k] = -eta * sigma
        for j in range(k + 1, nc):
            tau = np.dot(a[k:, k], a[k:, j]) / a1[k]
            a[k:, j] -= tau * a[k:, k]

    for j in range(nc):
        tau = np.dot(a[j:, j], b[j:]) / a1[j]
        b[j:] -= tau * a[j:, j]

    x = np.zeros(nc)
    x[nc - 1] = b[nc - 1] / a2[nc - 1]
    for i in range(nc - 2, -1, -1):
        x[i] = (b[i] - np.dot(a[i, i + 1:], x[i + 1:])) / a2[i]
    return x


def mat_to_quat(r) -> np.ndarray:
    """Unit quaternion (x, y, z, w) of a rotation matrix."""
    r = np.asarray(r, dtype=float).reshape(3, 3)
    tr = r[0, 0] + r[1, 1] + r[2, 2]
    if tr > 0.0:
        q = np.array([r[1, 2] - r[2, 1], r[2, 0] - r[0, 2], r[0, 1] - r[1, 0], tr + 1.0])
        n4 = q[3]
    elif r[0, 0] > r[1, 1] and r[0, 0] > r[2, 2]:
        q = np.array([
            1.0 + r[0, 0] - r[1, 1] - r[2, 2],
            r[1, 0] + r[0, 1],
            r[2, 0] + r[0, 2],
            r[1, 2] - r[2, 1],
        ])
        n4 = q[0]
    elif r[1, 1] > r[2, 2]:
        q = np.array([
            r[1, 0] + r[0, 1],
            1.0 + r[1, 1] - r[0, 0] - r[2, 2],
            r[2, 1] + r[1, 2],
            r[2, 0] - r[0, 2],
        ])
        n4 = q[1]
    else:
        q = np.array([
            r[2, 0] + r[0, 2],
            r[2, 1] + r[1, 2],
            1.0 + r[2, 2] - r[0, 0] - r[1, 1],
            r[0, 1] - r[1, 0],
        ])
        n4 = q[2]
    return q * (0.5 / np.sqrt(n4))


def relative_error(r_true, t_true, r_est, t_est) -> tuple[float, float]:
    """Relative rotation and translation errors of an estimated pose."""
    q_true = mat_to_quat(r_true)
    q_est = mat_to_quat(r_est)
    t_true = np.asarray(t_true, dtype=float).reshape(3)
    t_est = np.asarray(t_est, dtype=float).reshape(3)
    with np.errstate(divide="ignore", invalid="ignore"):
        q_norm = np.linalg.norm(q_true)
        rot_err = min(
            np.linalg.norm(q_true - q_est) / q_norm,
            np.linalg.norm(q_true + q_est) / q_norm,
        )
        transl_err = np.linalg.norm(t_true - t_est) / np.linalg.norm(t_true)
    return float(rot_err), float(transl_err)


def _control_points(pws: np.ndarray) -> np.ndarray:
    n = len(pws)
    cws = np.zeros((4, 3))
    cws[0] = pws.mean(axis=0)
    pw0 = pws - cws[0]
    u, dc, _ = np.linalg.svd(pw0.T @ pw0)
    uct = u.T
    for i in range(1, 4):
        k = np.sqrt(dc[i - 1] / n)
        cws[i] = cws[0] + k * uct[i - 1]
    return cws


def _barycentric(pws: np.ndarray, cws: np.ndarray) -> np.ndarray:
    cc = (cws[1:] - cws[0]).T
    cc_inv = np.linalg.pinv(cc)
    alphas = np.empty((len(pws), 4))
    alphas[:, 1:] = (pws - cws[0]) @ cc_inv.T
    alphas[:, 0] = 1.0 - alphas[:, 1:].sum(axis=1)
    return alphas


def _compute_l_6x10(ut: np.ndarray) -> np.ndarray:
    v = ut[[11, 10, 9, 8]].reshape(4, 4, 3)
    dv = np.stack([v[:, a] - v[:, b] for a, b in _PAIRS], axis=1)

    def d(i: int, j: int) -> np.ndarray:
        return np.sum(dv[i] * dv[j], axis=1)

    return np.stack(
        [
            d(0, 0), 2.0 * d(0, 1), d(1, 1), 2.0 * d(0, 2), 2.0 * d(1, 2),
            d(2, 2), 2.0 * d(0, 3), 2.0 * d(1, 3), 2.0 * d(2, 3), d(3, 3),
        ],
        axis=1,
    )


def _compute_rho(cws: np.ndarray) -> np.ndarray:
    return np.array([np.sum((cws[a] - cws[b]) ** 2) for a, b in _PAIRS])


def _lstsq(matrix: np.ndarray, rhs: np.ndarray) -> np.ndarray:
    return np.linalg.lstsq(matrix, rhs, rcond=None)[0]


def _betas_approx_1(l_6x10: np.ndarray, rho: np.ndarray) -> np.ndarray:
    b4 = _lstsq(l_6x10[:, [0, 1, 3, 6]], rho)
    betas = np.zeros(4)
    if b4[0] < 0:
        betas[0] = np.sqrt(-b4[0])
        betas[1:] = -b4[1:] / betas[0]
    else:
        betas[0] = np.sqrt(b4[0])
        betas[1:] = b4[1:] / betas[0]
    return betas


def _leading_pair(b: np.ndarray) -> tuple[float, float]:
    if b[0] < 0:
        beta0 = np.sqrt(-b[0])
        beta1 = np.sqrt(-b[2]) if b[2] < 0 else 0.0
    else:
        beta0 = np.sqrt(b[0])
        beta1 = np.sqrt(b[2]) if b[2] > 0 else 0.0
    if b[1] < 0:
        beta0 = -beta0
    return beta0, beta1


def _betas_approx_2(l_6x10: np.ndarray, rho: np.ndarray) -> np.ndarray:
    b3 = _lstsq(l_6x10[:, :3], rho)
    beta0, beta1 = _leading_pair(b3)
    return np.array([beta0, beta1, 0.0, 0.0])


def _betas_approx_3(l_6x10: np.ndarray, rho: np.ndarray) -> np.ndarray:
    b5 = _lstsq(l_6x10[:, :5], rho)
    beta0, beta1 = _leading_pair(b5)
    return np.array([beta0, beta1, np.float64(b5[3]) / np.float64(beta0), 0.0])


def _gauss_newton(l_6x10: np.ndarray, rho: np.ndarray, betas: np.ndarray) -> np.ndarray:
    betas = betas.astype(float).copy()
    l = l_6x10
    for _ in range(_GAUSS_NEWTON_ITERATIONS):
        b0, b1, b2, b3 = betas
        jac = np.stack(
            [
                2 * l[:, 0] * b0 + l[:, 1] * b1 + l[:, 3] * b2 + l[:, 6] * b3,
                l[:, 1] * b0 + 2 * l[:, 2] * b1 + l[:, 4] * b2 + l[:, 7] * b3,
                l[:, 3] * b0 + l[:, 4] * b1 + 2 * l[:, 5] * b2 + l[:, 8] * b3,
                l[:, 6] * b0 + l[:, 7] * b1 + l[:, 8] * b2 + 2 * l[:, 9] * b3,
            ],
            axis=1,
        )
        products = np.array(
            [b0 * b0, b0 * b1, b1 * b1, b0 * b2, b1 * b2,
             b2 * b2, b0 * b3, b1 * b3, b2 * b3, b3 * b3]
        )
        residual = rho - l @ products
        try:
            step = qr_solve(jac, residual)
        except np.linalg.LinAlgError:
            break
        betas += step
    return betas


def _estimate_r_and_t(pcs: np.ndarray, pws: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    pc0 = pcs.mean(axis=0)
    pw0 = pws.mean(axis=0)
    abt = (pcs - pc0).T @ (pws - pw0)
    u, _, vt = np.linalg.svd(abt)
    r = u @ vt
    if np.linalg.det(r) < 0:
        r[2] = -r[2]
    t = pc0 - r @ pw0
    return r, t


def _r_and_t(
    ut: np.ndarray, betas: np.ndarray, alphas: np.ndarray, pws: np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    ccs = np.zeros((4, 3))
    for i in range(4):
        ccs += betas[i] * ut[11 - i].reshape(4, 3)
    pcs = alphas @ ccs
    if pcs[0, 2] < 0.0:
        pcs = -pcs
    return _estimate_r_and_t(pcs, pws)


@dataclass
class EPnP:
    """Closed-form pose estimator for a camera with the given calibration."""

    intrinsics: Intrinsics

    def _build_m(self, alphas: np.ndarray, us: np.ndarray) -> np.ndarray:
        k = self.intrinsics
        m = np.zeros((2 * len(alphas), 12))
        m[0::2, 0::3] = alphas * k.fu
        m[0::2, 2::3] = alphas * (k.uc - us[:, 0])[:, None]
        m[1::2, 1::3] = alphas * k.fv
        m[1::2, 2::3] = alphas * (k.vc - us[:, 1])[:, None]
        return m

    def compute_pose(self, points3d, points2d) -> tuple[np.ndarray, np.ndarray, float]:
        """Estimate the world-to-camera pose.

        Returns the rotation matrix, the translation vector and the mean
        reprojection error of the chosen solution.
        """
        pws = _as_points(points3d, 3, "points3d")
        us = _as_points(points2d, 2, "points2d")
        if len(pws) != len(us):
            raise ValueError("points3d and points2d differ in length")
        if len(pws) < 4:
            raise ValueError("at least 4 correspondences are required")

        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            cws = _control_points(pws)
            alphas = _barycentric(pws, cws)
            m = self._build_m(alphas, us)
            u, _, _ = np.linalg.svd(m.T @ m)
            ut = u.T
            l_6x10 = _compute_l_6x10(ut)
            rho = _compute_rho(cws)

            finders: tuple[Callable[[np.ndarray, np.ndarray], np.ndarray], ...] = (
                _betas_approx_1,
                _betas_approx_2,
                _betas_approx_3,
            )
            solutions = []
            for finder in finders:
                betas = _gauss_newton(l_6x10, rho, finder(l_6x10, rho))
                r, t = _r_and_t(ut, betas, alphas, pws)
                error = reprojection_error(self.intrinsics, r, t, pws, us)
                solutions.append((r, t, error))

        best = 0
        if solutions[1][2] < solutions[0][2]:
            best = 1
        if solutions[2][2] < solutions[best][2]:
            best = 2
        return solutions[best]