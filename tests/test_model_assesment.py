import numpy as np
import pandas as pd
import pytest
from scipy.stats import multivariate_normal

from nicesaem.jax_utils import predict_phi_jacobian
from nicesaem.model_assesment import (compare_models, select_best_model, linearization_terms,
                                      fixed_effect_standard_errors, wald_ci)
from nicesaem.saem import CovariateModel, PopulationFitResult, SAEMData, SAEMOptions, error_sd
from nicesaem.utils import FitConvergenceError, ModelSelectionTieError


def _fit(neg2ll, n_params, converged=True, n_subjects=100, error_model="additive"):
    return PopulationFitResult(
        model_name=error_model, error_model=error_model, covariate_model=CovariateModel(),
        options=SAEMOptions(ll_method="lin"), fixed_effects=None, covariate_effects=None,
        omega2=None, error_params=None, individual_params=None, etas=None, map_etas=None,
        residuals=None, neg2ll={"lin": neg2ll}, n_params=n_params, n_subjects=n_subjects,
        n_obs=10 * n_subjects, converged=converged, convergence_message="", map_converged=True,
        history=None,
    )


def test_compare_models_table():
    fits = {"additive": _fit(100.0, 7), "combined": _fit(90.0, 8)}
    table = compare_models(fits)
    assert list(table.columns) == ["model", "error_model", "n_covariate_effects", "n_params",
                                   "ll_method", "neg2ll", "aic", "bic", "converged"]
    row = table.set_index("model").loc["combined"]
    assert row["aic"] == pytest.approx(106.0)
    assert row["bic"] == pytest.approx(90.0 + np.log(100) * 8)


def test_unique_minimum():
    fits = {"additive": _fit(100.0, 7), "proportional": _fit(95.0, 7), "combined": _fit(94.0, 8)}
    assert select_best_model(fits, "aic") == "proportional"
    assert select_best_model(fits, "bic") == "proportional"


def test_aic_tie_broken_by_bic():
    # both aic == 114, bic favours the smaller model
    fits = {"small": _fit(100.0, 7), "large": _fit(98.0, 8)}
    assert select_best_model(fits, "aic") == "small"


def test_remaining_tie_broken_by_parameter_count():
    fits = {"small": _fit(100.0, 7), "large": _fit(97.9, 8)}
    # tolerance wide enough to tie on both criteria
    assert select_best_model(fits, "aic", rtol=0.05) == "small"


def test_unbreakable_tie_raises():
    fits = {"one": _fit(100.0, 7), "two": _fit(100.0, 7)}
    with pytest.raises(ModelSelectionTieError):
        select_best_model(fits)


def test_unconverged_fits_are_excluded():
    fits = {"additive": _fit(100.0, 7), "combined": _fit(50.0, 8, converged=False)}
    assert select_best_model(fits) == "additive"
    assert select_best_model(fits, allow_unconverged=True) == "combined"


def test_no_converged_fit():
    fits = {"additive": _fit(100.0, 7, converged=False)}
    with pytest.raises(FitConvergenceError):
        select_best_model(fits)


def test_invalid_criterion():
    with pytest.raises(ValueError):
        select_best_model({"additive": _fit(100.0, 7)}, criterion="dic")


def test_standard_errors_from_information():
    se = fixed_effect_standard_errors(np.diag([4.0, 25.0]))
    np.testing.assert_allclose(se, [0.5, 0.2])
    # singular information falls back to the pseudo-inverse
    se = fixed_effect_standard_errors(np.ones((2, 2)))
    np.testing.assert_allclose(se, [0.5, 0.5])


def test_wald_ci():
    lower, upper = wald_ci(np.array([0.0, 1.0]), np.array([1.0, 0.5]), 0.95)
    np.testing.assert_allclose(lower, [-1.959964, 0.020018], atol=1e-6)
    np.testing.assert_allclose(upper, [1.959964, 1.979982], atol=1e-6)


def test_linearised_likelihood_matches_gaussian_density():
    t = np.array([0.5, 1.0, 4.0, 1.0, 2.0])
    arrays = SAEMData(
        subject_ids=np.array([1, 2]),
        y=np.array([0.4, 0.55, 0.3, 0.6, 0.5]),
        t=t,
        obs_subject_idx=np.array([0, 0, 0, 1, 1]),
        dose=np.array([100.0, 100.0]),
        covariates=pd.DataFrame(index=[1, 2]),
    )
    mean_phi = np.tile(np.log([1.238, 101.361, 0.498]), (2, 1))
    omega2 = np.array([0.1, 0.05, 0.2])
    a, b = 0.02, 0.1
    X = arrays.design_matrices(CovariateModel())
    res = linearization_terms(arrays, mean_phi, mean_phi, omega2, a, b, X)

    f, J = predict_phi_jacobian(mean_phi[arrays.obs_subject_idx], t, arrays.dose_obs)
    expected = 0.0
    weighted_ss = 0.0
    for i in range(2):
        sl = arrays.obs_subject_idx == i
        V = (J[sl] * omega2) @ J[sl].T + np.diag(error_sd(f[sl], a, b) ** 2)
        expected += -2 * multivariate_normal.logpdf(arrays.y[sl], mean=f[sl], cov=V)
        r = arrays.y[sl] - f[sl]
        weighted_ss += r @ np.linalg.solve(V, r)
    assert res["neg2ll"] == pytest.approx(expected)
    assert np.sum(res["cwres"] ** 2) == pytest.approx(weighted_ss)
    assert res["fim"].shape == (3, 3)
    np.testing.assert_allclose(res["fim"], res["fim"].T, atol=1e-10)
    np.testing.assert_allclose(res["ipred"], f)
