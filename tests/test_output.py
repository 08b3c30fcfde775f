import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest

from remreg.estimators.mixture import MixtureREM
from remreg.estimators.rem import REM
from remreg.output.plots import error_plot, regressor_plot, response_plot
from remreg.output.summary import coefficient_frame, diagnostics, fit_statistics, modelsummary
from remreg.sim.generators import generate_regressive_gaussian_data


@pytest.fixture
def fitted_models():
    frame, _, _ = generate_regressive_gaussian_data(2, 80, alphas=[[0.0, 1.0], [10.0, -1.0]], variance=0.01, seed=5)
    single, _, _ = generate_regressive_gaussian_data(1, 80, alphas=[[1.0, 2.0]], variance=0.0001, seed=6)
    rem = REM()
    rem.fit(single)
    mix = MixtureREM(n_components=2, epsilon=1e-4)
    mix.fit(frame)
    return rem, mix


# ---------------------------------------------------------------------
# Summary tables
# ---------------------------------------------------------------------

def test_coefficient_frame(fitted_models) -> None:
    rem, mix = fitted_models
    frame = coefficient_frame(rem)
    assert list(frame.columns) == ["REM"]
    assert frame.loc["alpha:x1", "REM"] == pytest.approx(2.0, abs=0.05)
    assert np.isnan(frame.loc["coeff", "REM"])
    mframe = coefficient_frame(mix)
    assert list(mframe.columns) == ["c1", "c2"]
    assert mframe.loc["coeff"].sum() == pytest.approx(1.0)
    assert coefficient_frame(REM()).empty


def test_modelsummary(fitted_models) -> None:
    rem, mix = fitted_models
    text = modelsummary([rem, mix], ["single", "mixture"])
    assert isinstance(text, str)
    assert "alpha:const" in text
    assert "mixture c2" in text
    assert "beta:" not in text


def test_fit_statistics(fitted_models) -> None:
    rem, mix = fitted_models
    stats = fit_statistics(rem)
    assert stats["n"] == 80
    assert stats["variance"] < 1e-3
    assert stats["r"] > 0.99
    assert abs(stats["error_mean"]) < 1e-3
    empty = fit_statistics(REM())
    assert empty["n"] == 0
    assert np.isnan(empty["variance"])


def test_diagnostics(fitted_models) -> None:
    text = diagnostics(list(fitted_models))
    assert "MSE" in text
    assert "(2)" in text


# ---------------------------------------------------------------------
# Plots
# ---------------------------------------------------------------------

def test_plots_return_axes(fitted_models) -> None:
    rem, mix = fitted_models
    for model in (rem, mix):
        for plot in (regressor_plot, response_plot, error_plot):
            ax = plot(model)
            assert ax is not None
            assert ax.get_ylabel() != ""
            plt.close(ax.figure)


def test_regressor_plot_draws_each_component(fitted_models) -> None:
    _, mix = fitted_models
    fig, ax = plt.subplots()
    out = regressor_plot(mix, ax=ax)
    assert out is ax
    assert len(ax.get_lines()) == 2
    plt.close(fig)


def test_plot_errors(fitted_models) -> None:
    rem, _ = fitted_models
    with pytest.raises(ValueError, match="regressor index"):
        regressor_plot(rem, j=3)
    with pytest.raises(ValueError, match="no fitted statistics"):
        response_plot(REM())
    failed = REM()
    failed.fit(pd.DataFrame({"x1": [1.0, 2.0], "z": [np.nan, np.nan]}))
    with pytest.raises(ValueError, match="no fitted statistics"):
        error_plot(failed)
