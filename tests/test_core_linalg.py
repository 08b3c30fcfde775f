
import pytest
import numpy as np
from remreg.core import linalg as la
from remreg.core.errors import NumericInvalidError, SingularSystemError

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def rng():
    return np.random.default_rng(42)

@pytest.fixture
def data_dense(rng):
    X = rng.standard_normal((100, 4))
    y = X @ np.array([1.0, -2.0, 0.5, 3.0]) + 0.1 * rng.standard_normal(100)
    return X, y

@pytest.fixture
def data_duplicated():
    # Integer design whose last two columns coincide: X'X is exactly singular.
    X = np.array(
        [
            [1.0, 1.0, 1.0],
            [1.0, 2.0, 2.0],
            [1.0, 3.0, 3.0],
            [1.0, 4.0, 4.0],
        ],
    )
    y = X @ np.array([1.0, 2.0, 0.0])
    return X, y

# ---------------------------------------------------------------------
# Unit Tests: Individual attempts
# ---------------------------------------------------------------------

def test_solve_lu_exact(rng):
    A = rng.standard_normal((5, 5)) + 5 * np.eye(5)
    x_true = rng.standard_normal(5)
    x = la.solve_lu(A, A @ x_true)
    assert x is not None
    assert np.allclose(x, x_true)

def test_solve_lu_rejects_singular_and_rectangular():
    A = np.array([[1.0, 2.0], [2.0, 4.0]])
    assert la.solve_lu(A, np.array([1.0, 2.0])) is None
    assert la.solve_lu(np.ones((3, 2)), np.ones(3)) is None

def test_solve_lu_rejects_numerically_singular(rng):
    x1 = rng.random(100)
    X = np.column_stack([np.ones(100), x1, 3.0 * x1])
    y = 1.0 + 2.0 * x1
    XtX, Xty = X.T @ X, X.T @ y
    assert la.solve_lu(XtX, Xty) is None

    beta = la.solve(XtX, Xty)
    assert beta is not None
    assert np.allclose(beta, la.solve_qr(XtX, Xty))
    # Basic solution: one of the collinear coefficients is dropped.
    assert beta[1] == 0.0 or beta[2] == 0.0
    assert beta[0] == pytest.approx(1.0)
    assert beta[1] + 3.0 * beta[2] == pytest.approx(2.0)
    assert np.allclose(X @ beta, y)

def test_solve_lu_rejects_duplicated_integer_columns(data_duplicated):
    X, y = data_duplicated
    assert la.solve_lu(X.T @ X, X.T @ y) is None

def test_solve_qr_drops_zero_column():
    X = np.column_stack([np.ones(4), np.arange(1.0, 5.0), np.zeros(4)])
    y = 1.0 + 2.0 * np.arange(1.0, 5.0)
    beta = la.solve_qr(X, y)
    assert beta is not None
    assert beta[2] == 0.0
    assert np.allclose(beta[:2], [1.0, 2.0])

def test_solve_qr_matches_lstsq(data_dense):
    X, y = data_dense
    beta = la.solve_qr(X, y)
    ref = np.linalg.lstsq(X, y, rcond=None)[0]
    assert np.allclose(beta, ref)

def test_pinv_matches_numpy(rng):
    A = rng.standard_normal((6, 3))
    assert np.allclose(la.pinv(A), np.linalg.pinv(A))

def test_first_success_skips_invalid_attempts():
    calls = []

    def none():
        calls.append("none")
        return None

    def nan():
        calls.append("nan")
        return np.array([np.nan, 1.0])

    def good():
        calls.append("good")
        return np.array([1.0, 2.0])

    def never():
        calls.append("never")
        return np.array([0.0])

    out = la.first_success(none, nan, good, never)
    assert np.array_equal(out, [1.0, 2.0])
    assert calls == ["none", "nan", "good"]
    assert la.first_success(none, nan) is None

def test_valid_solution():
    assert la.valid_solution(np.array([1.0, 2.0]))
    assert not la.valid_solution(None)
    assert not la.valid_solution(np.array([]))
    assert not la.valid_solution(np.array([1.0, np.inf]))

# ---------------------------------------------------------------------
# Unit Tests: Robust solve
# ---------------------------------------------------------------------

def test_solve_falls_back_on_singular_system():
    A = np.array([[1.0, 2.0], [2.0, 4.0]])
    b = np.array([1.0, 2.0])
    x = la.solve(A, b)
    assert x is not None
    assert np.allclose(A @ x, b)

def test_solve_rejects_non_finite_input():
    A = np.array([[1.0, np.nan], [0.0, 1.0]])
    assert la.solve(A, np.ones(2)) is None
    assert la.solve(np.eye(2), np.array([1.0, np.inf])) is None

def test_solve_normal_eq_duplicated_column(data_duplicated):
    X, y = data_duplicated
    beta = la.solve_normal_eq(X, y)
    assert beta is not None
    assert np.all(np.isfinite(beta))
    assert np.allclose(X @ beta, y)

def test_solve_normal_eq_matches_lstsq(data_dense):
    X, y = data_dense
    beta = la.solve_normal_eq(X, y)
    ref = np.linalg.lstsq(X, y, rcond=None)[0]
    assert np.allclose(beta, ref)

def test_solve_normal_eq_weighted(rng, data_dense):
    X, y = data_dense
    w = rng.uniform(0.1, 2.0, size=X.shape[0])
    beta = la.solve_normal_eq(X, y, weights=w)
    sw = np.sqrt(w)
    ref = np.linalg.lstsq(X * sw[:, None], y * sw, rcond=None)[0]
    assert np.allclose(beta, ref)

def test_solve_normal_eq_empty_or_mismatched():
    assert la.solve_normal_eq(np.empty((0, 2)), np.empty(0)) is None
    assert la.solve_normal_eq(np.ones((3, 2)), np.ones(4)) is None

def test_crossprod_weights_length_mismatch():
    with pytest.raises(ValueError, match="weights length"):
        la.crossprod(np.ones((3, 2)), weights=np.ones(2))

# ---------------------------------------------------------------------
# Unit Tests: Strict solve
# ---------------------------------------------------------------------

def test_solve_strict_nan_raises():
    with pytest.raises(NumericInvalidError, match="NaN/Inf"):
        la.solve_strict(np.array([[np.nan]]), np.array([1.0]))

def test_solve_strict_failure_raises(monkeypatch):
    monkeypatch.setattr(la, "solve", lambda A, b: None)
    with pytest.raises(SingularSystemError, match="No valid solution"):
        la.solve_strict(np.eye(2), np.ones(2))

def test_solve_strict_errors_are_value_errors():
    with pytest.raises(ValueError):
        la.solve_strict(np.eye(2), np.array([np.nan, 1.0]))
