import numpy as np
import pandas as pd
from dataclasses import dataclass, field, replace
from typing import Dict, Literal

from .covariates import (join_covariates, sex_ttests, age_regressions,
                         plot_covariate_boxplots, plot_covariate_scatter)
from .datasets import PKDataset
from .diagnostics import (plot_observed_profiles, plot_individual_fits, compute_residuals,
                          plot_gof, plot_error_model_comparison)
from .model_assesment import compare_models, select_best_model
from .nca import NCA, summarize_nca
from .saem import ERROR_MODELS, PARAM_NAMES, CovariateModel, SAEMOptions, PopulationFitResult
from .utils import (NaivePooledModel, PopulationModel, ModelError, fit_error_models,
                    debug_print)


def default_covariate_model(sex_col="SEX", age_col="AGE") -> CovariateModel:
    """Sex and age effects on ka and vd, none on ke."""
    return CovariateModel.from_dict({"ka": [sex_col, age_col], "vd": [sex_col, age_col]})


@dataclass
class AnalysisResults:
    nca_params: pd.DataFrame
    nca_summary: pd.DataFrame
    naive_fit: NaivePooledModel
    error_model_fits: Dict[str, PopulationFitResult]
    comparison: pd.DataFrame
    best_error_model: str
    covariate_fit: PopulationFitResult
    etas: pd.DataFrame
    sex_tests: pd.DataFrame
    age_tests: pd.DataFrame
    figures: Dict[str, object] = field(default_factory=dict)

    @property
    def best_fit(self) -> PopulationFitResult:
        return self.error_model_fits[self.best_error_model]


def run_analysis(
    dataset: PKDataset,
    covariate_model: CovariateModel = None,
    saem_options: SAEMOptions = None,
    error_models=ERROR_MODELS,
    criterion: Literal["aic", "bic"] = "aic",
    allow_unconverged=False,
    omega_sd_init=1.0,
    b_init=0.3,
    make_plots=False,
    verbose=False,
    mlflow_tracking=False,
) -> AnalysisResults:
    """
    The whole analysis top to bottom: NCA, naive pooled fit, one population
    fit per residual error model, selection, a covariate fit on the selected
    error model, and screening of the base-model etas against sex and age.
    """
    c = dataset.cols
    covariate_model = default_covariate_model(c.sex, c.age) if covariate_model is None else covariate_model
    saem_options = SAEMOptions() if saem_options is None else saem_options
    figures = {}

    debug_print("Running NCA", verbose)
    nca = NCA.from_dataset(dataset, verbose=verbose)
    nca_params = nca.estimate_all_nca_params()
    nca_summary = summarize_nca(nca_params)

    debug_print("Fitting the naive pooled model to the mean profile", verbose)
    naive = NaivePooledModel(conc_at_time_col=c.conc, dose_col=c.dose, time_col=c.time,
                             verbose=verbose)
    naive.fit(dataset.mean_profile())
    inits = naive.initial_values(omega_sd_init=omega_sd_init)
    a_init = float(np.sqrt(naive.sigma2_)) if np.isfinite(naive.sigma2_) and naive.sigma2_ > 0 else 1.0
    base_error = ModelError(a_init=a_init, b_init=b_init)

    base_model = PopulationModel(
        model_name="base", subject_id_col=c.subject_id, conc_at_time_col=c.conc,
        dose_col=c.dose, time_col=c.time, population_coeff=inits, model_error=base_error,
        saem_options=saem_options, verbose=verbose, mlflow_tracking=mlflow_tracking,
    )
    fits = fit_error_models(dataset, error_models=error_models, base_model=base_model)
    comparison = compare_models(fits)
    best = select_best_model(fits, criterion=criterion, allow_unconverged=allow_unconverged)
    debug_print(f"Selected error model: {best}", verbose)

    cov_model = PopulationModel(
        model_name="covariate", subject_id_col=c.subject_id, conc_at_time_col=c.conc,
        dose_col=c.dose, time_col=c.time, population_coeff=inits,
        model_error=replace(base_error, model_method=best), covariate_model=covariate_model,
        saem_options=saem_options, verbose=verbose, mlflow_tracking=mlflow_tracking,
    )
    covariate_fit = cov_model.fit(dataset).fit_result_

    etas = join_covariates(fits[best].etas, dataset.covariates(), subject_id_col=c.subject_id)
    eta_cols = [f"eta_{p}" for p in PARAM_NAMES]
    sex_tests = sex_ttests(etas, params=eta_cols, sex_col=c.sex, subject_id_col=c.subject_id)
    age_tests = age_regressions(etas, params=eta_cols, age_col=c.age, sex_col=c.sex,
                                subject_id_col=c.subject_id)

    if make_plots:
        figures["observed_linear"] = plot_observed_profiles(dataset, log_scale=False)
        figures["observed_log"] = plot_observed_profiles(dataset, log_scale=True)
        figures["individual_fits"] = plot_individual_fits(fits[best], dataset, log_scale=True)
        figures["gof"] = plot_gof(compute_residuals(fits[best], dataset), conc_col=c.conc,
                                  time_col=c.time, hue=c.sex)
        figures["error_model_comparison"] = plot_error_model_comparison(comparison)
        figures["eta_by_sex"] = plot_covariate_boxplots(etas, eta_cols, sex_col=c.sex,
                                                        tests=sex_tests)
        figures["eta_by_age"] = plot_covariate_scatter(etas, eta_cols, age_col=c.age,
                                                       sex_col=c.sex, regressions=age_tests)

    return AnalysisResults(
        nca_params=nca_params,
        nca_summary=nca_summary,
        naive_fit=naive,
        error_model_fits=fits,
        comparison=comparison,
        best_error_model=best,
        covariate_fit=covariate_fit,
        etas=etas,
        sex_tests=sex_tests,
        age_tests=age_tests,
        figures=figures,
    )
