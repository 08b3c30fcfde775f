
import pytest
import numpy as np
import pandas as pd
from remreg.core.em import EMControl, EMStatus
from remreg.core.missing import UNUSED
from remreg.estimators.base import ExchangedParameter, REMConfig, RowStatistic, normal_pdf
from remreg.estimators.rem import REM
from remreg.sim.generators import generate_regressive_gaussian_data, mask_missing

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def rng():
    return np.random.default_rng(42)

@pytest.fixture
def data_complete(rng):
    N = 100
    X = rng.random((N, 2))
    z = 1.0 + 2.0 * X[:, 0] - X[:, 1] + 0.01 * rng.standard_normal(N)
    return pd.DataFrame({"x1": X[:, 0], "x2": X[:, 1], "z": z})

@pytest.fixture
def data_missing():
    frame, _, _ = generate_regressive_gaussian_data(1, 100, alphas=[[1.0, 2.0]], variance=0.0025, seed=7)
    return frame, mask_missing(frame, ["x1", "z"], 0.1, seed=11)

# ---------------------------------------------------------------------
# Unit Tests: Complete data
# ---------------------------------------------------------------------

def test_rem_complete_data_matches_ols(data_complete):
    df = data_complete
    model = REM(epsilon=1e-6)
    res = model.fit(df)

    X = np.column_stack([np.ones(len(df)), df[["x1", "x2"]].to_numpy()])
    beta_np = np.linalg.lstsq(X, df["z"].to_numpy(), rcond=None)[0]
    assert np.allclose(res.params.values, beta_np)
    assert list(res.params.index) == ["const", "x1", "x2"]
    assert res.status is EMStatus.CONVERGED
    assert res.iterations == 1
    assert res.n_obs == 100

def test_rem_complete_data_impute_is_identity(data_complete):
    df = data_complete
    model = REM()
    model.fit(df)
    imputed = model.impute()
    assert np.allclose(imputed[["x1", "x2", "z"]].to_numpy(), df.to_numpy())
    assert list(imputed.index) == list(range(100))

def test_rem_betas_regress_each_regressor_on_response(data_complete):
    df = data_complete
    model = REM()
    res = model.fit(df)
    Z = np.column_stack([np.ones(len(df)), df["z"].to_numpy()])
    beta_x1 = np.linalg.lstsq(Z, df["x1"].to_numpy(), rcond=None)[0]
    assert np.allclose(res.extra["betas"].loc["x1"].to_numpy(), beta_x1)
    assert np.allclose(model.parameter.betas[0], [1.0, 0.0])

# ---------------------------------------------------------------------
# Unit Tests: Missing data
# ---------------------------------------------------------------------

def test_rem_missing_data_recovers_line(data_missing):
    _, masked = data_missing
    model = REM(epsilon=1e-4)
    res = model.fit(masked)

    assert res.fitted
    assert res.status is EMStatus.CONVERGED
    assert np.allclose(res.params.values, [1.0, 2.0], atol=0.15)
    assert 90 <= res.n_obs <= 100
    assert res.extra["z_variance"] > 0.0

def test_rem_execute(data_missing):
    _, masked = data_missing
    model = REM(epsilon=1e-4)
    model.fit(masked)
    assert model.execute({"x1": 0.5, "z": None}) == pytest.approx(2.0, abs=0.1)
    assert model.execute([0.5]) == pytest.approx(2.0, abs=0.1)
    assert model.execute(pd.Series({"x1": 0.25, "z": 100.0})) == pytest.approx(1.5, abs=0.1)
    assert model.execute({"x1": None, "z": 2.0}) is None
    assert model.execute({"x1": float("inf"), "z": 2.0}) is None

def test_rem_predict_and_impute(data_missing):
    _, masked = data_missing
    model = REM(epsilon=1e-4)
    model.fit(masked)

    pred = model.predict(masked)
    assert len(pred) == len(masked)
    assert pred.isna().to_numpy().tolist() == masked["x1"].isna().to_numpy().tolist()

    imputed = model.impute()
    assert not imputed.isna().to_numpy().any()
    observed = masked.loc[imputed.index]
    ok = observed["x1"].notna()
    assert np.allclose(imputed.loc[ok, "x1"], observed.loc[ok, "x1"])
    ok = observed["z"].notna()
    assert np.allclose(imputed.loc[ok, "z"], observed.loc[ok, "z"])

def test_rem_deterministic(data_missing):
    _, masked = data_missing
    a = REM(epsilon=1e-4).fit(masked)
    b = REM(epsilon=1e-4).fit(masked)
    assert np.array_equal(a.params.values, b.params.values)
    assert a.iterations == b.iterations

def test_rem_loop_balance(data_missing):
    _, masked = data_missing
    res = REM(epsilon=1e-4, loop_balance=True).fit(masked)
    assert res.fitted
    assert np.allclose(res.params.values, [1.0, 2.0], atol=0.2)

def test_rem_gaussian_mode(data_missing):
    _, masked = data_missing
    model = REM(epsilon=1e-4, estimate_mode="gaussian")
    res = model.fit(masked)
    assert res.fitted
    assert np.allclose(res.params.values, [1.0, 2.0], atol=0.2)
    assert model.parameter.x_mean is not None
    assert model.parameter.x_mean.shape == (2,)
    assert model.parameter.x_variance[1] > 0.0

def test_rem_listener_events(data_missing):
    _, masked = data_missing
    events = []
    model = REM(epsilon=1e-4)
    model.add_listener(events.append)
    res = model.fit(masked)
    assert len(events) == res.iterations
    assert events[-1].status is res.status

def test_rem_cancelled_keeps_start(data_missing):
    _, masked = data_missing
    control = EMControl()
    control.stop()
    res = REM().fit(masked, control=control)
    assert res.status is EMStatus.CANCELLED
    assert res.iterations == 0
    assert res.fitted

# ---------------------------------------------------------------------
# Unit Tests: Indices
# ---------------------------------------------------------------------

def test_rem_expression_indices():
    x = np.linspace(0.0, 1.0, 50)
    df = pd.DataFrame({"x1": x, "y": 3.0 + 4.0 * x**2})
    model = REM(indices="#x1^2, 2")
    res = model.fit(df)
    assert np.allclose(res.params.values, [3.0, 4.0])
    assert model.regressor_names() == ["(#x1 ^ 2.0)"]
    assert model.response_name() == "y"

def test_rem_swapped_indices(data_complete):
    model = REM(indices="3, 1")
    res = model.fit(data_complete)
    assert list(res.params.index) == ["const", "z"]

def test_rem_bad_indices_gives_no_model(data_complete):
    res = REM(indices="1, 9").fit(data_complete)
    assert not res.fitted
    assert res.status is EMStatus.FAILED
    assert "out of range" in res.extra["reason"]

# ---------------------------------------------------------------------
# Unit Tests: Boundaries
# ---------------------------------------------------------------------

def test_rem_never_observed_response(data_complete):
    df = data_complete.copy()
    df["z"] = np.nan
    model = REM()
    res = model.fit(df)
    assert not res.fitted
    assert model.parameter is None
    assert model.learn(df) is None
    assert model.execute({"x1": 0.1, "x2": 0.2, "z": None}) is None
    assert model.impute() is None
    assert model.describe() == "No model"
    assert "never observed" in res.extra["reason"]

def test_rem_single_column():
    res = REM().fit(pd.DataFrame({"z": [1.0, 2.0, 3.0]}))
    assert not res.fitted
    assert len(res.params) == 0

def test_rem_drops_never_observed_regressor(data_complete):
    df = data_complete.copy()
    df["x1"] = np.nan
    res = REM().fit(df)
    assert res.fitted
    assert list(res.params.index) == ["const", "x2"]

def test_rem_no_complete_rows_starts_from_constant_model(rng):
    x = rng.random(100)
    z = 1.0 + x + 0.01 * rng.standard_normal(100)
    df = pd.DataFrame({"x1": x, "z": z})
    df.loc[:49, "z"] = np.nan
    df.loc[50:, "x1"] = np.nan
    res = REM(max_iteration=50).fit(df)
    assert res.fitted
    z_mean = df["z"].mean()
    assert np.allclose(res.params.values, [z_mean, 0.0], atol=1e-8)

def test_rem_results_before_fit():
    model = REM()
    assert not model.fitted
    with pytest.raises(RuntimeError, match="not been fitted"):
        _ = model.results

def test_rem_accepts_arrays(rng):
    X = rng.random((40, 1))
    arr = np.column_stack([X, 2.0 - X[:, 0]])
    res = REM().fit(arr)
    assert np.allclose(res.params.values, [2.0, -1.0])

def test_rem_describe(data_complete):
    model = REM()
    model.fit(data_complete)
    text = str(model)
    assert text.startswith("z = ")
    assert "*(x1)" in text
    assert "t=1" in text

# ---------------------------------------------------------------------
# Unit Tests: Configuration and parameter
# ---------------------------------------------------------------------

def test_config_validation():
    with pytest.raises(ValueError, match="estimate_mode"):
        REMConfig(estimate_mode="bogus")
    with pytest.raises(ValueError, match="fitness_threshold"):
        REMConfig(fitness_threshold=-1.0)
    assert REMConfig(max_components=0).effective_max_components is None
    assert REMConfig(epsilon=0.01).effective_fitness_threshold == 0.01
    model = REM(REMConfig(epsilon=0.1), max_iteration=5)
    assert model.config.epsilon == 0.1
    assert model.config.max_iteration == 5

def test_parameter_shape_mismatch():
    with pytest.raises(ValueError, match="betas has"):
        ExchangedParameter(alpha=np.zeros(3), betas=np.zeros((2, 2)))

def test_parameter_terminated_optional_fields():
    a = ExchangedParameter.zeros(2)
    b = a.copy()
    b.coeff = 0.5
    assert not a.terminated(b, None, 0.001, True)
    assert not b.terminated(a, None, 0.001, True)
    c = a.copy()
    c.coeff = 0.5
    assert c.terminated(b, None, 0.001, True)

def test_parameter_terminated_two_cycle():
    cur = ExchangedParameter(alpha=[1.0, 2.0], betas=[[1.0, 0.0], [0.0, 0.5]])
    new = ExchangedParameter(alpha=[1.5, 2.0], betas=[[1.0, 0.0], [0.0, 0.5]])
    assert not new.terminated(cur, None, 0.001, True)
    assert new.terminated(cur, new.copy(), 0.001, True)

def test_parameter_accessors():
    p = ExchangedParameter(alpha=[1.0, 2.0], betas=[[1.0, 0.0], [-0.5, 0.5]])
    assert p.mean_z([1.0, 3.0]) == 7.0
    assert p.mean_x(1, 7.0) == 3.0
    assert not p.is_null_alpha()
    assert ExchangedParameter.zeros(3).is_null_alpha()

def test_normal_pdf_degenerate_variance():
    assert normal_pdf(1.0, 1.0, 0.0) == 1.0
    assert normal_pdf(1.5, 1.0, 0.0) == 0.0
    assert normal_pdf(0.0, 0.0, 1.0) == pytest.approx(1.0 / np.sqrt(2.0 * np.pi))

def test_rem_execute_unfitted_warns():
    with pytest.warns(UserWarning, match="not been fitted"):
        assert REM().execute({"x1": 0.5, "z": None}) is None

# ---------------------------------------------------------------------
# Unit Tests: Row completion
# ---------------------------------------------------------------------

@pytest.fixture
def parameter_two_regressors():
    # z = 1 + 2*x1 + 3*x2, x1 = 0.5 + 0.1*z, x2 = -1 + 0.2*z
    return ExchangedParameter(alpha=[1.0, 2.0, 3.0], betas=[[1.0, 0.0], [0.5, 0.1], [-1.0, 0.2]])

def test_estimate_row_regressors_from_observed_response(parameter_two_regressors):
    model = REM()
    stat = model.estimate_row(np.array([1.0, UNUSED, 2.0]), 4.0, parameter_two_regressors)
    assert stat.z == 4.0
    assert np.allclose(stat.x, [1.0, 0.9, 2.0])

def test_estimate_row_forward_and_inverse_agree(parameter_two_regressors):
    model = REM()
    x = np.array([1.0, UNUSED, 2.0])
    missing = np.array([False, True, False])
    # b = 1 + 3*2 = 7, a = 2*0.5 = 1, c = 2*0.1 = 0.2, z = (a + b) / (1 - c)
    forward = model._estimate_forward(x, missing, parameter_two_regressors)
    inverse = model._estimate_inverse(x, missing, parameter_two_regressors)
    assert forward.z == pytest.approx(10.0)
    assert inverse.z == pytest.approx(10.0)
    assert np.allclose(forward.x, [1.0, 1.5, 2.0])
    assert np.allclose(inverse.x, forward.x)

    stat = model.estimate_row(x, UNUSED, parameter_two_regressors)
    assert stat.z == pytest.approx(10.0)
    assert np.allclose(stat.x, [1.0, 1.5, 2.0])

def test_estimate_row_averages_forward_and_inverse(parameter_two_regressors, monkeypatch):
    model = REM()
    x = np.array([1.0, UNUSED, 2.0])
    shifted = RowStatistic(x=np.array([1.0, 2.5, 2.0]), z=12.0)
    monkeypatch.setattr(model, "_estimate_inverse", lambda *args: shifted)
    stat = model.estimate_row(x, UNUSED, parameter_two_regressors)
    assert stat.z == pytest.approx(11.0)
    assert np.allclose(stat.x, [1.0, 2.0, 2.0])

def test_estimate_row_several_missing_regressors(parameter_two_regressors):
    model = REM()
    x = np.array([1.0, UNUSED, UNUSED])
    missing = np.array([False, True, True])
    # b = 1, a = 2*0.5 + 3*(-1) = -2, c = 2*0.1 + 3*0.2 = 0.8, z = -5
    forward = model._estimate_forward(x, missing, parameter_two_regressors)
    inverse = model._estimate_inverse(x, missing, parameter_two_regressors)
    assert forward.z == pytest.approx(-5.0)
    assert np.allclose(forward.x, [1.0, 0.0, -2.0])
    assert inverse.z == pytest.approx(-5.0)
    assert np.allclose(inverse.x, [1.0, 0.0, -2.0], atol=1e-12)

    stat = model.estimate_row(x, UNUSED, parameter_two_regressors)
    assert stat.valid
    assert stat.z == pytest.approx(-5.0)
    assert stat.z == pytest.approx(parameter_two_regressors.mean_z(stat.x))

def test_estimate_row_unit_denominator_uses_inverse():
    # alpha1 * beta1 slope = 2 * 0.5 = 1: z = (a + b) / (1 - c) is undefined.
    p = ExchangedParameter(alpha=[1.0, 2.0], betas=[[1.0, 0.0], [0.5, 0.5]])
    model = REM()
    x = np.array([1.0, UNUSED])
    missing = np.array([False, True])
    assert model._estimate_forward(x, missing, p) is None

    inverse = model._estimate_inverse(x, missing, p)
    assert inverse is not None
    stat = model.estimate_row(x, UNUSED, p)
    assert stat.valid
    assert np.allclose(stat.x, inverse.x)
    assert stat.z == pytest.approx(inverse.z)
    assert stat.z == pytest.approx(p.mean_z(stat.x))

def test_estimate_row_complete_row_is_unchanged(parameter_two_regressors):
    stat = REM().estimate_row(np.array([1.0, 0.3, 0.7]), 5.0, parameter_two_regressors)
    assert stat.z == 5.0
    assert np.allclose(stat.x, [1.0, 0.3, 0.7])

# ---------------------------------------------------------------------
# Integration Tests: Two regressors with missing cells
# ---------------------------------------------------------------------

def test_rem_two_regressors_missing_x1_and_z():
    frame, alphas, _ = generate_regressive_gaussian_data(
        1, 100, n_regressors=2, alphas=[[1.0, 2.0, -1.0]], variance=0.0025, seed=7,
    )
    masked = mask_missing(frame, ["x1", "z"], 0.1, seed=11)
    assert masked["x1"].isna().sum() == 10
    assert masked["z"].isna().sum() == 10

    model = REM(epsilon=1e-4)
    res = model.fit(masked)

    assert res.fitted
    assert model.parameter.alpha.shape == (3,)
    assert list(res.params.index) == ["const", "x1", "x2"]
    assert np.allclose(res.params.values, alphas[0], atol=0.3)

    imputed = model.impute()
    assert not imputed[["x1", "x2", "z"]].isna().any().any()
    observed = masked["z"].notna().to_numpy()
    assert np.allclose(imputed["z"].to_numpy()[observed], masked["z"].to_numpy()[observed])

def test_rem_collinear_regressors_basic_solution(rng):
    x1 = rng.random(100)
    df = pd.DataFrame({"x1": x1, "x2": 3.0 * x1, "z": 1.0 + 2.0 * x1 + 0.01 * rng.standard_normal(100)})
    model = REM()
    res = model.fit(df)

    assert res.fitted
    alpha = model.parameter.alpha
    assert alpha[1] == 0.0 or alpha[2] == 0.0
    assert alpha[0] == pytest.approx(1.0, abs=0.05)
    assert alpha[1] + 3.0 * alpha[2] == pytest.approx(2.0, abs=0.05)
