import numpy as np
import pandas as pd
import pytest
from sklearn.exceptions import ConvergenceWarning

from nicesaem.datasets import simulate_pk_dataset
from nicesaem.diffeqs import InvalidPKParameterError, one_compartment_oral_conc
from nicesaem.utils import (NaivePooledModel, PopulationCoeffcient, FitConvergenceError,
                            get_function_args, neg2_log_likelihood_loss, sum_of_squares_loss)

TRUE = {"ka": 1.238, "vd": 101.361, "ke": 0.498}


@pytest.fixture
def noiseless_profile():
    ds = simulate_pk_dataset(n_subjects=4, typical_values=TRUE,
                             omega_sd={"ka": 0.0, "vd": 0.0, "ke": 0.0},
                             error_model=None, seed=0)
    return ds.mean_profile()


def _inits(ka=1.5, vd=90.0, ke=0.4):
    return [PopulationCoeffcient("ka", ka), PopulationCoeffcient("vd", vd),
            PopulationCoeffcient("ke", ke)]


def test_noiseless_round_trip(noiseless_profile):
    model = NaivePooledModel(population_coeff=_inits()).fit(noiseless_profile)
    assert model.converged_
    for name, val in TRUE.items():
        assert model.params_[name] == pytest.approx(val, rel=1e-4)
    assert model.sse_ < 1e-10
    np.testing.assert_allclose(model.predict(noiseless_profile), noiseless_profile["DV"], atol=1e-6)


def test_start_value_order_does_not_matter(noiseless_profile):
    inits = _inits()[::-1]
    model = NaivePooledModel(population_coeff=inits).fit(noiseless_profile)
    assert list(model.params_.index) == ["ka", "vd", "ke"]


def test_standard_errors_on_noisy_profile():
    ds = simulate_pk_dataset(n_subjects=110, seed=21)
    model = NaivePooledModel(population_coeff=_inits()).fit(ds.mean_profile())
    model.require_converged()
    assert np.all(np.isfinite(model.se_))
    assert np.all(model.se_ > 0)
    summary = model.summary()
    assert list(summary.columns) == ["estimate", "se", "rse_pct"]
    assert model.score(ds.mean_profile(), ds.mean_profile()["DV"]) > 0.9


def test_initial_values_seed_population_fit(noiseless_profile):
    model = NaivePooledModel(population_coeff=_inits()).fit(noiseless_profile)
    inits = model.initial_values(omega_sd_init=0.4)
    assert [c.coeff_name for c in inits] == ["ka", "vd", "ke"]
    assert inits[1].optimization_init_val == pytest.approx(TRUE["vd"], rel=1e-4)
    assert inits[0].subject_level_intercept_sd_init_val == 0.4


def test_non_convergence_is_flagged(noiseless_profile):
    model = NaivePooledModel(population_coeff=_inits(), max_nfev=1)
    with pytest.warns(ConvergenceWarning):
        model.fit(noiseless_profile)
    assert not model.converged_
    with pytest.raises(FitConvergenceError):
        model.require_converged()
    with pytest.raises(FitConvergenceError):
        model.initial_values()


def test_degenerate_start_values_rejected(noiseless_profile):
    with pytest.raises(InvalidPKParameterError):
        NaivePooledModel(population_coeff=_inits(ka=0.4, ke=0.4)).fit(noiseless_profile)


def test_unknown_or_missing_coefficients(noiseless_profile):
    with pytest.raises(ValueError):
        NaivePooledModel(population_coeff=_inits()[:2]).fit(noiseless_profile)
    with pytest.raises(ValueError):
        NaivePooledModel(population_coeff=_inits() + [PopulationCoeffcient("cl", 1.0)]).fit(noiseless_profile)


def test_predict_before_fit():
    with pytest.raises(ValueError):
        NaivePooledModel().predict(pd.DataFrame({"TIME": [1.0], "AMT": [100.0]}))


def test_loss_helpers():
    y = np.array([1.0, 2.0, 3.0])
    assert sum_of_squares_loss(y, y + 1) == 3.0
    # sigma at its MLE
    n2ll = neg2_log_likelihood_loss(y, y + 1)
    assert n2ll == pytest.approx(3 * np.log(2 * np.pi) + 3)
    assert get_function_args(one_compartment_oral_conc) == ["t", "ka", "vd", "ke", "dose"]


def test_population_coefficient_validation():
    with pytest.raises(ValueError):
        PopulationCoeffcient("ka", -1.0)
    c = PopulationCoeffcient("ka", 2.0)
    assert c.log_name == "ka_pop"
    assert c.subject_level_intercept_sd_name == "omega2_ka"
    assert c.log_init_val == pytest.approx(np.log(2.0))
    assert c.to_pandas()["init_val"].iloc[0] == 2.0
