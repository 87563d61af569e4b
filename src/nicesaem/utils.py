import numpy as np
import pandas as pd
import numdifftools as nd
import inspect
import uuid
import warnings
import mlflow
from dataclasses import dataclass, field, replace
from typing import Dict, List, Literal, Type
from scipy.optimize import least_squares
from sklearn.base import BaseEstimator, RegressorMixin, clone
from sklearn.exceptions import ConvergenceWarning

from .diffeqs import (PKBaseODE, OneCompartmentAbsorptionKe, InvalidPKParameterError,
                      check_pk_params, valid_pk_params_mask, one_compartment_oral_conc)
from .datasets import PKDataset
from .jax_utils import estimate_map_phi
from .model_assesment import (linearization_terms, fixed_effect_standard_errors,
                              importance_sampling_neg2ll, wald_ci)
from .mlflow_utils import MLflowCallback, log_population_fit
from .pd_templates import FitSummaryRows
from .saem import (PARAM_NAMES, ERROR_MODELS, CovariateModel, SAEMData, SAEMEstimate,
                   SAEMOptions, PopulationFitResult, saem_estimate, predict_from_phi)
from scipy.stats import norm as scipy_norm


class FitConvergenceError(RuntimeError):
    """A fit was asked for final estimates but did not converge."""


class MissingCovariateError(KeyError):
    """A keyed join on subject id found subjects without a match."""


class ModelSelectionTieError(ValueError):
    """Two or more fits could not be separated by the selection rules."""


def debug_print(print_obj, debug=False):
    if debug:
        if isinstance(print_obj, str):
            print(print_obj)
        else:
            print(repr(print_obj))


@dataclass
class PopulationCoeffcient:
    coeff_name: str
    optimization_init_val: np.float64 = 1.0
    log_name: str = None
    optimization_lower_bound: np.float64 = None
    optimization_upper_bound: np.float64 = None
    subject_level_intercept: bool = True
    subject_level_intercept_sd_name: str = None
    # sd of the random effect on the log scale, the init val above is natural scale
    subject_level_intercept_sd_init_val: np.float64 = 1.0

    def __post_init__(self):
        self.log_name = (self.coeff_name + "_pop"
                         if self.log_name is None
                         else self.log_name)
        if not self.optimization_init_val > 0:
            raise ValueError(
                f"Initial value of `{self.coeff_name}` must be strictly positive, got {self.optimization_init_val}"
            )
        if self.subject_level_intercept_sd_name is None:
            self.subject_level_intercept_sd_name = f"omega2_{self.coeff_name}"
        if not self.subject_level_intercept_sd_init_val > 0:
            raise ValueError(f"Initial random effect sd of `{self.coeff_name}` must be strictly positive")

    @property
    def log_init_val(self):
        return np.log(self.optimization_init_val)

    def to_pandas(self):
        row_data = {
            "model_coeff": self.coeff_name,
            "log_name": self.log_name,
            "population_coeff": True,
            "model_error": False,
            "init_val": self.optimization_init_val,
            "model_coeff_lower_bound": self.optimization_lower_bound,
            "model_coeff_upper_bound": self.optimization_upper_bound,
            "subject_level_intercept": self.subject_level_intercept,
            "subject_level_intercept_name": self.subject_level_intercept_sd_name,
            "subject_level_intercept_sd_init_val": self.subject_level_intercept_sd_init_val,
        }
        return pd.DataFrame([row_data]).copy()


@dataclass
class ModelError:
    """
    Residual error model of a population fit, g = a + b*f.

    'additive' estimates a only, 'proportional' b only, 'combined' both.
    'constant' is accepted as another name for 'additive'.
    """
    model_method: Literal['additive', 'proportional', 'combined', 'constant'] = 'additive'
    a_init: np.float64 = None
    b_init: np.float64 = None
    coeff_name: str = "sigma"
    log_name: str = field(init=False, default=None)

    def __post_init__(self):
        if self.model_method == 'constant':
            self.model_method = 'additive'
        if self.model_method not in ERROR_MODELS:
            raise ValueError(
                f"Error model {self.model_method} is not implemented, use one of {ERROR_MODELS}"
            )
        self.a_init = 1.0 if self.a_init is None else self.a_init
        self.b_init = 1.0 if self.b_init is None else self.b_init
        if not (self.a_init > 0 and self.b_init > 0):
            raise ValueError("Residual error start values must be strictly positive")
        self.log_name = f"{self.coeff_name}_{self.model_method}"

    @property
    def param_names(self):
        return {"additive": ["a"], "proportional": ["b"], "combined": ["a", "b"]}[self.model_method]

    @property
    def n_params(self):
        return len(self.param_names)

    @property
    def init_vals(self):
        return self.a_init, self.b_init

    def to_pandas(self):
        init = dict(zip(["a", "b"], self.init_vals))
        return pd.DataFrame([
            {"model_coeff": n, "log_name": f"{self.log_name}_{n}", "population_coeff": False,
             "model_error": True, "init_val": init[n]}
            for n in self.param_names
        ])


def sum_of_squares_loss(y_true, y_pred):
    return np.sum((y_true - y_pred) ** 2)


def neg2_log_likelihood_loss(y_true, y_pred, sigma=None):
    residuals = y_true - y_pred
    ss = np.sum(residuals**2)
    n = len(y_true)
    if sigma is None:
        sigma = np.sqrt(ss / n)
    return n * np.log(2 * np.pi * sigma**2) + ss / sigma**2


def get_function_args(func):
    signature = inspect.signature(func)
    params = signature.parameters
    arg_names = [param.name.lower() for param in params.values()]
    return arg_names


def _order_population_coeffs(population_coeff, param_names):
    by_name = {c.coeff_name: c for c in population_coeff}
    unknown = [n for n in by_name if n not in param_names]
    if len(unknown) > 0:
        raise ValueError(f"Population coefficients {unknown} are not parameters of the model {list(param_names)}")
    missing = [n for n in param_names if n not in by_name]
    if len(missing) > 0:
        raise ValueError(f"Population coefficients for {missing} must be provided")
    return [by_name[n] for n in param_names]


class NaivePooledModel(RegressorMixin, BaseEstimator):
    """
    Nonlinear least squares fit of the PK model to a single series, usually
    the naive population-average profile. Unweighted: the objective is the
    sum of squared concentration residuals.
    """

    def __init__(
        self,
        model_name: str = None,
        pk_model_class: Type[PKBaseODE] = OneCompartmentAbsorptionKe,
        population_coeff: List[PopulationCoeffcient] = None,
        conc_at_time_col: str = "DV",
        dose_col: str = "AMT",
        time_col: str = "TIME",
        loss_function=sum_of_squares_loss,
        max_nfev: int = 2000,
        optimizer_tol: float = 1e-10,
        verbose=False,
    ):
        self.model_name = model_name
        self.pk_model_class = pk_model_class
        self.population_coeff = population_coeff
        self.conc_at_time_col = conc_at_time_col
        self.dose_col = dose_col
        self.time_col = time_col
        self.loss_function = loss_function
        self.max_nfev = max_nfev
        self.optimizer_tol = optimizer_tol
        self.verbose = verbose

    def _population_coeffs(self, pk_model):
        coeffs = ([PopulationCoeffcient("ka", 1.0), PopulationCoeffcient("vd", 100.0),
                   PopulationCoeffcient("ke", 0.3)]
                  if self.population_coeff is None else self.population_coeff)
        return _order_population_coeffs(coeffs, pk_model.param_names)

    def _validate_data(self, X):
        missing = [c for c in (self.time_col, self.conc_at_time_col, self.dose_col)
                   if c not in X.columns]
        if len(missing) > 0:
            raise ValueError(f"`{missing}` is/are not provided in the data")
        return X.sort_values(self.time_col).reset_index(drop=True)

    def fit(self, X: pd.DataFrame, y=None):
        pk_model = self.pk_model_class()
        param_names = list(pk_model.param_names)
        if get_function_args(pk_model.closed_form_depvar)[2:] != param_names:
            raise ValueError(
                f"{self.pk_model_class.__name__}.closed_form_depvar arguments do not match {param_names}"
            )
        coeffs = self._population_coeffs(pk_model)
        df = self._validate_data(X)
        t = df[self.time_col].to_numpy(dtype=np.float64)
        dose = df[self.dose_col].to_numpy(dtype=np.float64)
        y = df[self.conc_at_time_col].to_numpy(dtype=np.float64)

        x0 = np.array([c.optimization_init_val for c in coeffs], dtype=np.float64)
        check_pk_params(*x0)
        lb = [1e-8 if c.optimization_lower_bound is None else c.optimization_lower_bound for c in coeffs]
        ub = [np.inf if c.optimization_upper_bound is None else c.optimization_upper_bound for c in coeffs]

        def _resid(params):
            with np.errstate(all="ignore"):
                return y - pk_model.closed_form_depvar(t, dose, *params)

        def _loss(params):
            with np.errstate(all="ignore"):
                return self.loss_function(y, pk_model.closed_form_depvar(t, dose, *params))

        if self.verbose:
            print(f"Fitting {self.pk_model_class.__name__} to {len(y)} observations from {x0}")
        self.fit_result_ = least_squares(
            _resid, x0, bounds=(lb, ub), method="trf", x_scale="jac",
            xtol=self.optimizer_tol, ftol=self.optimizer_tol, max_nfev=self.max_nfev,
        )
        res = self.fit_result_
        self.params_ = pd.Series(res.x, index=param_names, name="estimate")
        self.n_obs_ = len(y)
        self.sse_ = _loss(res.x)
        dof = self.n_obs_ - len(param_names)
        self.sigma2_ = self.sse_ / dof if dof > 0 else np.nan
        with np.errstate(all="ignore"):
            self.neg2ll_ = neg2_log_likelihood_loss(y, pk_model.closed_form_depvar(t, dose, *res.x))

        converged, message = res.status > 0, res.message
        if not np.all(np.isfinite(res.x)) or not np.isfinite(self.sse_):
            converged, message = False, "non-finite estimates"
        elif not bool(valid_pk_params_mask(*res.x)):
            converged, message = False, "degenerate estimates (ka == ke or non-positive parameters)"
        self.converged_ = bool(converged)
        self.convergence_message_ = message
        if not self.converged_:
            warnings.warn(f"Naive pooled fit did not converge: {message}", ConvergenceWarning)

        se = np.full(len(param_names), np.nan)
        if self.converged_ and dof > 0:
            H = nd.Hessian(_loss)(res.x)
            try:
                cov = 2 * self.sigma2_ * np.linalg.inv(H)
                with np.errstate(invalid="ignore"):
                    se = np.sqrt(np.diag(cov))
            except np.linalg.LinAlgError:
                warnings.warn("Singular Hessian, standard errors are not available")
        self.se_ = pd.Series(se, index=param_names, name="se")
        if self.verbose:
            print(self.summary())
        return self

    def _check_fitted(self):
        if getattr(self, "fit_result_", None) is None:
            raise ValueError("The model must be fit before use")

    def require_converged(self):
        self._check_fitted()
        if not self.converged_:
            raise FitConvergenceError(
                f"Naive pooled fit did not converge: {self.convergence_message_}"
            )
        return self

    def predict(self, X: pd.DataFrame):
        self._check_fitted()
        pk_model = self.pk_model_class()
        return pk_model.closed_form_depvar(
            X[self.time_col].to_numpy(dtype=np.float64),
            X[self.dose_col].to_numpy(dtype=np.float64),
            *self.params_.to_numpy(),
        )

    def summary(self):
        self._check_fitted()
        out = pd.DataFrame({"estimate": self.params_, "se": self.se_})
        out["rse_pct"] = 100 * out["se"] / out["estimate"].abs()
        return out

    def initial_values(self, omega_sd_init=1.0) -> List[PopulationCoeffcient]:
        """Estimates as start values of a population fit."""
        self.require_converged()
        return [PopulationCoeffcient(n, float(v), subject_level_intercept_sd_init_val=omega_sd_init)
                for n, v in self.params_.items()]


class PopulationModel(RegressorMixin, BaseEstimator):
    """
    Nonlinear mixed-effects fit of the one-compartment oral model to all
    subjects. The estimator itself is pluggable through `estimation_function`,
    which receives the fitting arrays, start values, error model, covariate
    model, options and an optional per-iteration callback, and returns a
    `SAEMEstimate`. Likelihoods, standard errors, individual parameters and
    residuals are computed from that estimate here.
    """

    def __init__(
        self,
        model_name: str = None,
        subject_id_col: str = "ID",
        conc_at_time_col: str = "DV",
        dose_col: str = "AMT",
        time_col: str = "TIME",
        population_coeff: List[PopulationCoeffcient] = None,
        model_error: ModelError = None,
        covariate_model: CovariateModel = None,
        saem_options: SAEMOptions = None,
        estimation_function=saem_estimate,
        ci_level: float = 0.95,
        verbose=False,
        batch_id: uuid.UUID = None,
        mlflow_tracking=False,
    ):
        self.model_name = model_name
        self.subject_id_col = subject_id_col
        self.conc_at_time_col = conc_at_time_col
        self.dose_col = dose_col
        self.time_col = time_col
        self.population_coeff = population_coeff
        self.model_error = model_error
        self.covariate_model = covariate_model
        self.saem_options = saem_options
        self.estimation_function = estimation_function
        self.ci_level = ci_level
        self.verbose = verbose
        self.batch_id = batch_id
        self.mlflow_tracking = mlflow_tracking

    def _settings(self):
        coeffs = ([PopulationCoeffcient("ka", 1.0), PopulationCoeffcient("vd", 100.0),
                   PopulationCoeffcient("ke", 0.3)]
                  if self.population_coeff is None else self.population_coeff)
        coeffs = _order_population_coeffs(coeffs, PARAM_NAMES)
        model_error = ModelError() if self.model_error is None else self.model_error
        covariate_model = CovariateModel() if self.covariate_model is None else self.covariate_model
        options = SAEMOptions() if self.saem_options is None else self.saem_options
        return coeffs, model_error, covariate_model, options

    def _validate_data(self, data):
        if isinstance(data, PKDataset):
            data = data.observations()
        required = [self.subject_id_col, self.time_col, self.conc_at_time_col, self.dose_col]
        missing = [c for c in required if c not in data.columns]
        if len(missing) > 0:
            raise ValueError(f"`{missing}` is/are not provided in the data")
        return data

    def fit(self, data, y=None):
        self.fit_id = uuid.uuid4()
        self._batch_id = uuid.uuid4() if self.batch_id is None else self.batch_id
        coeffs, model_error, covariate_model, options = self._settings()
        df = self._validate_data(data)
        covariate_model.validate_covariates(list(df.columns))
        arrays = SAEMData.from_frame(
            df, subject_id_col=self.subject_id_col, time_col=self.time_col,
            conc_col=self.conc_at_time_col, dose_col=self.dose_col,
            covariate_cols=covariate_model.covariate_names,
        )
        debug_print(f"Fitting {self._model_label(model_error)}: {arrays.n_subjects} subjects, "
                    f"{arrays.n_obs} observations", self.verbose)
        if self.mlflow_tracking:
            with mlflow.start_run(run_name=self._generate_fitted_model_name(),
                                  nested=mlflow.active_run() is not None):
                mlflow.log_param("batch_id", str(self._batch_id))
                callback = MLflowCallback(error_model=model_error.model_method)
                self.fit_result_ = self._fit(arrays, coeffs, model_error, covariate_model,
                                             options, callback)
                log_population_fit(self.fit_result_)
        else:
            self.fit_result_ = self._fit(arrays, coeffs, model_error, covariate_model, options)
        if not self.fit_result_.converged:
            warnings.warn(
                f"Population fit `{self.fit_result_.model_name}` did not converge: "
                f"{self.fit_result_.convergence_message}",
                ConvergenceWarning,
            )
        return self

    def _model_label(self, model_error):
        name = "population" if self.model_name is None else self.model_name
        return f"{name}_{model_error.model_method}"

    def _fit(self, arrays: SAEMData, coeffs, model_error, covariate_model, options,
             callback=None) -> PopulationFitResult:
        init_phi = np.array([c.log_init_val for c in coeffs])
        init_omega2 = np.array([c.subject_level_intercept_sd_init_val for c in coeffs]) ** 2
        est: SAEMEstimate = self.estimation_function(
            arrays, init_phi, init_omega2, model_error.model_method, model_error.init_vals,
            covariate_model, options, callback,
        )
        a, b = est.error_a, est.error_b
        X = arrays.design_matrices(covariate_model)

        if options.compute_map:
            phi_map, map_res = estimate_map_phi(
                est.cond_mean_phi, arrays.y, arrays.t, arrays.dose_obs, arrays.obs_subject_idx,
                est.mean_phi, est.omega2, a, b,
            )
            map_converged = bool(map_res.success)
            if not map_converged:
                warnings.warn(f"Conditional mode estimation did not converge: {map_res.message}",
                              ConvergenceWarning)
        else:
            phi_map, map_converged = est.cond_mean_phi.copy(), True

        lin = linearization_terms(arrays, phi_map, est.mean_phi, est.omega2, a, b, X)
        neg2ll = {"lin": lin["neg2ll"]}
        if options.ll_method == "is":
            neg2ll["is"] = importance_sampling_neg2ll(
                arrays, est.cond_mean_phi, est.cond_var_phi, est.mean_phi, est.omega2, a, b,
                n_samples=options.n_is_samples, df=options.is_df, seed=options.seed,
            )
        debug_print(f"-2LL: {neg2ll}", self.verbose)

        se_theta = fixed_effect_standard_errors(lin["fim"])
        rows = FitSummaryRows()
        cov_rows = []
        offset = 0
        for k, p in enumerate(PARAM_NAMES):
            rows.append(p, f"{p}_pop", np.exp(est.theta[k][0]), se_theta[offset])
            for j, c in enumerate(covariate_model.covariates_for(p)):
                beta, se = est.theta[k][j + 1], se_theta[offset + j + 1]
                rows.append(p, f"{p}__{c}", beta, se, model_coeff_dep_var=c, population_coeff=False)
                cov_rows.append({"param": p, "covariate": c, "estimate": beta, "se": se,
                                 "p_value": 2 * scipy_norm.sf(np.abs(beta / se))})
            offset += X[k].shape[1]
        fixed_effects = rows.df()
        log_est = np.concatenate([est.theta[k] for k in range(len(PARAM_NAMES))])
        lower, upper = wald_ci(log_est, se_theta, self.ci_level)
        ci_label = int(round(self.ci_level * 100))
        pop = fixed_effects["population_coeff"].astype(bool).to_numpy()
        fixed_effects["log_estimate"] = log_est
        fixed_effects[f"ci{ci_label}_lower"] = np.where(pop, np.exp(lower), lower)
        fixed_effects[f"ci{ci_label}_upper"] = np.where(pop, np.exp(upper), upper)
        covariate_effects = pd.DataFrame(
            cov_rows, columns=["param", "covariate", "estimate", "se", "p_value"]
        )

        sid = self.subject_id_col
        ids = arrays.subject_ids
        individual_params = pd.DataFrame({sid: ids, self.dose_col: arrays.dose})
        for k, p in enumerate(PARAM_NAMES):
            individual_params[p] = np.exp(est.cond_mean_phi[:, k])
        for k, p in enumerate(PARAM_NAMES):
            individual_params[f"map_{p}"] = np.exp(phi_map[:, k])
        etas = pd.DataFrame({sid: ids})
        map_etas = pd.DataFrame({sid: ids})
        for k, p in enumerate(PARAM_NAMES):
            etas[f"eta_{p}"] = est.cond_mean_phi[:, k] - est.mean_phi[:, k]
            map_etas[f"eta_{p}"] = phi_map[:, k] - est.mean_phi[:, k]

        pred = predict_from_phi(est.mean_phi, arrays)
        residuals = pd.DataFrame({
            sid: ids[arrays.obs_subject_idx],
            self.time_col: arrays.t,
            self.conc_at_time_col: arrays.y,
            "PRED": pred,
            "IPRED": lin["ipred"],
            "IWRES": (arrays.y - lin["ipred"]) / lin["ipred_sd"],
            "CWRES": lin["cwres"],
        })

        error_params = pd.Series({"a": a, "b": b})[model_error.param_names]
        n_params = 2 * len(PARAM_NAMES) + covariate_model.n_effects + model_error.n_params
        return PopulationFitResult(
            model_name=self._model_label(model_error),
            error_model=model_error.model_method,
            covariate_model=covariate_model,
            options=options,
            fixed_effects=fixed_effects,
            covariate_effects=covariate_effects,
            omega2=pd.Series(est.omega2, index=list(PARAM_NAMES), name="omega2"),
            error_params=error_params,
            individual_params=individual_params,
            etas=etas,
            map_etas=map_etas,
            residuals=residuals,
            neg2ll=neg2ll,
            n_params=n_params,
            n_subjects=arrays.n_subjects,
            n_obs=arrays.n_obs,
            converged=est.converged,
            convergence_message=est.convergence_message,
            map_converged=map_converged,
            history=est.history,
            estimate=est,
            subject_id_col=sid,
            dose_col=self.dose_col,
        )

    def _check_fitted(self):
        if getattr(self, "fit_result_", None) is None:
            raise ValueError("The model must be fit before use")

    def require_converged(self):
        self._check_fitted()
        self.fit_result_.require_converged()
        return self

    def predict(self, X: pd.DataFrame, subject_level_prediction=True):
        """
        Concentrations at the rows of `X`. Subjects seen during the fit use
        their conditional modes when `subject_level_prediction`; everyone else
        gets the typical value for their covariates.
        """
        self._check_fitted()
        fit = self.fit_result_
        sid = self.subject_id_col
        df = self._validate_data(X)
        covs = fit.covariate_model.covariate_names
        sub_covs = df[[sid] + covs].drop_duplicates(sid).set_index(sid)
        phi = fit.typical_phi(sub_covs)
        if subject_level_prediction:
            map_phi = np.log(fit.individual_params
                             .set_index(sid)[[f"map_{p}" for p in PARAM_NAMES]]
                             .rename(columns=lambda c: c.replace("map_", "")))
            known = phi.index.intersection(map_phi.index)
            phi.loc[known, :] = map_phi.loc[known, list(PARAM_NAMES)]
        rows = df[[sid]].merge(phi, left_on=sid, right_index=True, how="left", validate="many_to_one")
        psi = np.exp(rows[list(PARAM_NAMES)].to_numpy(dtype=np.float64))
        return one_compartment_oral_conc(
            df[self.time_col].to_numpy(dtype=np.float64), psi[:, 0], psi[:, 1], psi[:, 2],
            dose=df[self.dose_col].to_numpy(dtype=np.float64),
        )

    def _generate_fitted_model_name(self):
        if getattr(self, "fit_id", None) is None:
            raise ValueError("A fit id is assigned when `fit` starts")
        return f"b-{self._batch_id}_m-{self.model_name}_f-{self.fit_id}"


def fit_error_models(data, error_models=ERROR_MODELS, base_model: PopulationModel = None,
                     **model_kwargs) -> Dict[str, PopulationFitResult]:
    """
    Fit one population model per residual error structure, in sequence, with
    everything else (start values, covariates, options and seed) shared.
    """
    base_model = PopulationModel(**model_kwargs) if base_model is None else base_model
    base_error = ModelError() if base_model.model_error is None else base_model.model_error
    fits = {}
    for em in error_models:
        model = clone(base_model)
        model.set_params(model_error=replace(base_error, model_method=em))
        fits[em] = model.fit(data).fit_result_
    return fits
