import warnings
import numpy as np
import pytest

from nicesaem.datasets import simulate_pk_dataset
from nicesaem.saem import SAEMOptions
from nicesaem.workflow import run_analysis, AnalysisResults


@pytest.fixture(scope="module")
def results():
    ds = simulate_pk_dataset(n_subjects=24, seed=31)
    opts = SAEMOptions(seed=9, n_burn=2, n_iter_exploration=20, n_iter_smoothing=10,
                       ll_method="lin", compute_map=False)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        res = run_analysis(ds, saem_options=opts, allow_unconverged=True, make_plots=True,
                           omega_sd_init=0.5)
    return ds, res


def test_run_analysis_end_to_end(results):
    ds, res = results
    assert isinstance(res, AnalysisResults)
    assert len(res.nca_params) == ds.n_subjects
    assert res.naive_fit.converged_
    assert set(res.error_model_fits) == {"additive", "proportional", "combined"}
    assert res.best_error_model in res.error_model_fits
    assert res.best_fit is res.error_model_fits[res.best_error_model]
    assert list(res.comparison["model"]) == ["additive", "proportional", "combined"]
    assert res.covariate_fit.error_model == res.best_error_model
    assert res.covariate_fit.covariate_model.n_effects == 4


def test_run_analysis_screens_etas(results):
    ds, res = results
    assert len(res.etas) == ds.n_subjects
    assert {"SEX", "AGE", "eta_ka", "eta_vd", "eta_ke"} <= set(res.etas.columns)
    assert list(res.sex_tests["param"]) == ["eta_ka", "eta_vd", "eta_ke"]
    assert len(res.age_tests) == 6
    assert np.all(np.isfinite(res.age_tests["slope_age"]))


def test_run_analysis_figures(results):
    _, res = results
    assert {"observed_linear", "observed_log", "individual_fits", "gof",
            "error_model_comparison", "eta_by_sex", "eta_by_age"} <= set(res.figures)
