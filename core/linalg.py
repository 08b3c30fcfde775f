"""Robust linear solves for the regression core.

``solve`` tries three strategies in order and returns the first valid
solution:

1. exact solve through an LU factorization,
2. least squares through a QR decomposition with R-diagonal rank screening,
3. the Moore-Penrose pseudo-inverse computed from an SVD.

Each strategy is an *attempt*: a function returning an array or ``None``.
Library errors never leave an attempt, and a result holding NaN/Inf (or the
``UNUSED`` sentinel) is rejected exactly like a failed factorization.
"""

from __future__ import annotations

import logging
import warnings as _warnings
from typing import TYPE_CHECKING, Callable

import numpy as np
import scipy.linalg as sla

from remreg.core.errors import NumericInvalidError, SingularSystemError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

__all__ = [
    "crossprod",
    "first_success",
    "pinv",
    "solve",
    "solve_lu",
    "solve_normal_eq",
    "solve_pinv",
    "solve_qr",
    "solve_strict",
    "valid_solution",
]

LOGGER = logging.getLogger(__name__)

Attempt = Callable[[], "NDArray[np.float64] | None"]

# Library failures an attempt converts into "no solution".
_SOLVER_ERRORS = (np.linalg.LinAlgError, sla.LinAlgWarning, ValueError, ZeroDivisionError, FloatingPointError)

# Stata (Mata qrsolve) rank tolerance: eta * trace(|R|) / rows(R).
_RANK_ETA = 1e-13


def _as_system(A, b) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    Ad = np.atleast_2d(np.asarray(A, dtype=np.float64))
    bd = np.asarray(b, dtype=np.float64)
    return Ad, bd


def valid_solution(x: NDArray[np.float64] | None) -> bool:
    """Return True when ``x`` exists and every component is finite."""
    if x is None:
        return False
    arr = np.asarray(x, dtype=np.float64)
    return arr.size > 0 and bool(np.all(np.isfinite(arr)))


def first_success(*attempts: Attempt) -> NDArray[np.float64] | None:
    """Run ``attempts`` in order and return the first valid solution."""
    for i, attempt in enumerate(attempts):
        x = attempt()
        if valid_solution(x):
            return np.asarray(x, dtype=np.float64)
        LOGGER.debug("solve: attempt %d (%s) gave no valid solution", i + 1, getattr(attempt, "__name__", "attempt"))
    return None


# ---------------------------------------------------------------------
# Individual attempts
# ---------------------------------------------------------------------


def _rank_tolerance(diag: NDArray[np.float64]) -> float:
    d = np.abs(np.asarray(diag, dtype=np.float64))
    return _RANK_ETA * float(np.mean(d)) if d.size else 0.0


def solve_lu(A, b) -> NDArray[np.float64] | None:
    """Exact solve via LU; ``None`` for non-square or numerically singular ``A``.

    A factorization is rejected when a pivot falls to the rank tolerance
    (``1e-13`` times the mean absolute pivot) or when LAPACK reports an
    ill-conditioned system.
    """
    Ad, bd = _as_system(A, b)
    n, m = Ad.shape
    if n != m or bd.shape[0] != n:
        return None
    try:
        with _warnings.catch_warnings():
            _warnings.simplefilter("error", sla.LinAlgWarning)
            lu, piv = sla.lu_factor(Ad, check_finite=True)
            pivots = np.abs(np.diag(lu))
            if pivots.size == 0 or np.min(pivots) <= _rank_tolerance(pivots):
                return None
            x = sla.lu_solve((lu, piv), bd, check_finite=False)
    except _SOLVER_ERRORS:
        return None
    return np.asarray(x, dtype=np.float64)


def solve_qr(A, b, *, tol: float | None = None) -> NDArray[np.float64] | None:
    """Least-squares solve via pivoted QR.

    Columns whose R-diagonal falls to ``tol * |R[0, 0]|`` are dropped and
    their coefficients set to zero (basic solution). Without ``tol`` the
    threshold is ``1e-13`` times the mean absolute R-diagonal.
    """
    Ad, bd = _as_system(A, b)
    if bd.shape[0] != Ad.shape[0]:
        return None
    try:
        Q, R, perm = sla.qr(Ad, mode="economic", pivoting=True, check_finite=True)
    except _SOLVER_ERRORS:
        return None
    diag = np.abs(np.diag(R))
    if diag.size == 0 or diag[0] == 0.0:
        return None
    cutoff = _rank_tolerance(diag) if tol is None else tol * diag[0]
    rank = int(np.sum(diag > cutoff))
    qtb = Q[:, :rank].T @ bd
    try:
        head = sla.solve_triangular(R[:rank, :rank], qtb, lower=False, check_finite=False)
    except _SOLVER_ERRORS:
        return None
    x = np.zeros((Ad.shape[1],) + bd.shape[1:], dtype=np.float64)
    x[perm[:rank]] = head
    return x


def pinv(A, *, rcond: float | None = None) -> NDArray[np.float64]:
    """Compute Moore-Penrose pseudo-inverse with explicit rcond handling."""
    Ad = np.atleast_2d(np.asarray(A, dtype=np.float64))
    U, s, Vt = np.linalg.svd(Ad, full_matrices=False)
    if rcond is None:
        rcond = np.sqrt(np.finfo(float).eps)
    tol = float(rcond) * (s.max() if s.size else 0.0)
    s_inv = np.where(s > tol, 1.0 / np.where(s > tol, s, 1.0), 0.0)
    return (Vt.T * s_inv) @ U.T


def solve_pinv(A, b, *, rcond: float | None = None) -> NDArray[np.float64] | None:
    """Minimum-norm solve through the SVD pseudo-inverse."""
    Ad, bd = _as_system(A, b)
    if bd.shape[0] != Ad.shape[0]:
        return None
    try:
        return pinv(Ad, rcond=rcond) @ bd
    except _SOLVER_ERRORS:
        return None


# ---------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------


def solve(A, b) -> NDArray[np.float64] | None:
    """Solve ``A x = b`` with the LU -> QR -> pseudo-inverse cascade.

    Returns ``None`` when the system holds non-finite entries or every tier
    fails.
    """
    Ad, bd = _as_system(A, b)
    if not (np.all(np.isfinite(Ad)) and np.all(np.isfinite(bd))):
        LOGGER.debug("solve: system contains NaN/Inf; no solution")
        return None

    def lu() -> NDArray[np.float64] | None:
        return solve_lu(Ad, bd)

    def qr() -> NDArray[np.float64] | None:
        return solve_qr(Ad, bd)

    def svd() -> NDArray[np.float64] | None:
        return solve_pinv(Ad, bd)

    return first_success(lu, qr, svd)


def solve_strict(A, b) -> NDArray[np.float64]:
    """Like :func:`solve` but raise instead of returning ``None``."""
    Ad, bd = _as_system(A, b)
    if not (np.all(np.isfinite(Ad)) and np.all(np.isfinite(bd))):
        msg = "Linear system contains NaN/Inf entries."
        raise NumericInvalidError(msg)
    x = solve(Ad, bd)
    if x is None:
        msg = f"No valid solution for a {Ad.shape[0]}x{Ad.shape[1]} system."
        raise SingularSystemError(msg)
    return x


def crossprod(
    X: NDArray[np.float64],
    y: NDArray[np.float64] | None = None,
    weights: Sequence[float] | NDArray[np.float64] | None = None,
) -> NDArray[np.float64]:
    """Return ``X' W X`` or ``X' W y`` with optional diagonal row weights."""
    Xd = np.asarray(X, dtype=np.float64)
    rhs = Xd if y is None else np.asarray(y, dtype=np.float64)
    if weights is None:
        return Xd.T @ rhs
    w = np.asarray(weights, dtype=np.float64).reshape(-1)
    if w.shape[0] != Xd.shape[0]:
        msg = f"weights length {w.shape[0]} != n_obs {Xd.shape[0]}."
        raise ValueError(msg)
    if rhs.ndim == 1:
        return Xd.T @ (w * rhs)
    return Xd.T @ (w[:, None] * rhs)


def solve_normal_eq(
    X: NDArray[np.float64],
    y: NDArray[np.float64],
    weights: Sequence[float] | NDArray[np.float64] | None = None,
) -> NDArray[np.float64] | None:
    """Solve ``(X' W X) beta = X' W y`` through :func:`solve`."""
    Xd = np.asarray(X, dtype=np.float64)
    yd = np.asarray(y, dtype=np.float64).reshape(-1)
    if Xd.ndim != 2 or Xd.shape[0] == 0 or Xd.shape[0] != yd.shape[0]:
        return None
    return solve(crossprod(Xd, weights=weights), crossprod(Xd, yd, weights=weights))
