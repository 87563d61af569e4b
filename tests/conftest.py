import matplotlib
matplotlib.use("Agg")

import warnings
import pytest
import matplotlib.pyplot as plt

from nicesaem.datasets import simulate_pk_dataset
from nicesaem.saem import SAEMOptions
from nicesaem.utils import PopulationCoeffcient, PopulationModel, ModelError
from nicesaem.workflow import default_covariate_model


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close("all")


@pytest.fixture(scope="session")
def pk_dataset():
    return simulate_pk_dataset(n_subjects=40, seed=11, error_model="combined",
                               error_a=0.01, error_b=0.1,
                               covariate_effects={"vd": {"SEX": 0.3}})


@pytest.fixture(scope="session")
def fast_options():
    return SAEMOptions(seed=3, n_burn=2, n_iter_exploration=40, n_iter_smoothing=20,
                       ll_method="lin", n_is_samples=200)


@pytest.fixture(scope="session")
def start_values():
    return [PopulationCoeffcient("ka", 1.0, subject_level_intercept_sd_init_val=0.5),
            PopulationCoeffcient("vd", 90.0, subject_level_intercept_sd_init_val=0.5),
            PopulationCoeffcient("ke", 0.4, subject_level_intercept_sd_init_val=0.5)]


@pytest.fixture(scope="session")
def additive_fit(pk_dataset, fast_options, start_values):
    model = PopulationModel(model_name="test", population_coeff=start_values,
                            model_error=ModelError("additive", a_init=0.1),
                            saem_options=fast_options)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        model.fit(pk_dataset)
    return model


@pytest.fixture(scope="session")
def covariate_fit(pk_dataset, fast_options, start_values):
    model = PopulationModel(model_name="test_cov", population_coeff=start_values,
                            model_error=ModelError("combined", a_init=0.05, b_init=0.2),
                            covariate_model=default_covariate_model(),
                            saem_options=fast_options)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        model.fit(pk_dataset)
    return model
