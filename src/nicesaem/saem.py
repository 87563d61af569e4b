import numpy as np
import pandas as pd
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Dict, List, Literal, Tuple
from scipy.optimize import minimize
from tqdm import tqdm

from .diffeqs import (OneCompartmentAbsorptionKe, one_compartment_oral_conc,
                      valid_pk_params_mask, check_pk_params)

PARAM_NAMES: Tuple[str, ...] = OneCompartmentAbsorptionKe.param_names
ERROR_MODELS: Tuple[str, ...] = ("additive", "proportional", "combined")
ERROR_SD_FLOOR = 1e-10


@dataclass(frozen=True)
class SAEMOptions:
    """
    Immutable settings of one population fit. A fit is fully determined by the
    model, the data, the start values and these options (including `seed`).

    Iteration layout follows saemix: `n_burn` MCMC-only iterations, then
    `n_iter_exploration` iterations with step size 1 (the first
    `n_iter_annealing` of them with simulated annealing on the variances),
    then `n_iter_smoothing` iterations with step size 1/k.
    """
    seed: int = 23456
    n_burn: int = 5
    n_iter_exploration: int = 300
    n_iter_smoothing: int = 100
    n_iter_annealing: int = None
    annealing_alpha: float = 0.97
    n_mcmc: Tuple[int, int, int] = (2, 2, 2)
    n_chains: int = 1
    rw_init: float = 0.5
    rw_stepsize: float = 0.4
    mcmc_target_acceptance: float = 0.4
    ll_method: Literal["is", "lin"] = "is"
    n_is_samples: int = 5000
    is_df: int = 4
    convergence_window: int = 10
    convergence_rtol: float = 0.02
    convergence_atol: float = 1e-3
    compute_map: bool = True
    verbose: bool = False

    def __post_init__(self):
        if self.n_iter_annealing is None:
            object.__setattr__(self, "n_iter_annealing", self.n_iter_exploration // 2)
        if self.n_iter_exploration < 1:
            raise ValueError("`n_iter_exploration` must be at least 1")
        if min(self.n_burn, self.n_iter_smoothing, self.n_iter_annealing) < 0:
            raise ValueError("iteration counts must be non-negative")
        if len(self.n_mcmc) != 3 or min(self.n_mcmc) < 0:
            raise ValueError("`n_mcmc` must hold three non-negative kernel counts")
        if self.n_chains < 1:
            raise ValueError("`n_chains` must be at least 1")
        if self.ll_method not in ("is", "lin"):
            raise ValueError(f"`ll_method` must be 'is' or 'lin', got {self.ll_method}")
        if not 0 < self.annealing_alpha <= 1:
            raise ValueError("`annealing_alpha` must lie in (0, 1]")

    @property
    def n_iter_total(self):
        return self.n_burn + self.n_iter_exploration + self.n_iter_smoothing

    def step_sizes(self):
        """SA step size per iteration; zero during burn-in."""
        return np.concatenate([
            np.zeros(self.n_burn),
            np.ones(self.n_iter_exploration),
            1.0 / np.arange(1, self.n_iter_smoothing + 1),
        ])


@dataclass(frozen=True)
class CovariateModel:
    """
    Which covariate effects are estimated. `matrix` has one row per PK
    parameter and one column per covariate; 1 means a linear effect of that
    covariate on the parameter's log population value is estimated, 0 means
    it is fixed to zero.
    """
    matrix: pd.DataFrame = None

    def __post_init__(self):
        m = (pd.DataFrame(index=list(PARAM_NAMES), dtype=np.int64)
             if self.matrix is None else self.matrix.copy())
        unknown = [i for i in m.index if i not in PARAM_NAMES]
        if len(unknown) > 0:
            raise ValueError(f"Covariate model rows {unknown} are not model parameters {list(PARAM_NAMES)}")
        if m.isnull().to_numpy().any():
            raise ValueError("Covariate model matrix must not contain missing entries")
        if not np.isin(m.to_numpy(), [0, 1]).all():
            raise ValueError("Covariate model matrix entries must be 0 or 1")
        m = m.reindex(list(PARAM_NAMES)).fillna(0).astype(np.int64)
        object.__setattr__(self, "matrix", m)

    @classmethod
    def from_dict(cls, effects: Dict[str, List[str]]):
        covs = []
        for c_list in effects.values():
            covs.extend([c for c in c_list if c not in covs])
        m = pd.DataFrame(0, index=list(PARAM_NAMES), columns=covs, dtype=np.int64)
        for param, c_list in effects.items():
            if param not in PARAM_NAMES:
                raise ValueError(f"`{param}` is not a model parameter {list(PARAM_NAMES)}")
            m.loc[param, c_list] = 1
        return cls(m)

    def covariates_for(self, param) -> List[str]:
        row = self.matrix.loc[param]
        return [c for c in self.matrix.columns if row[c] == 1]

    @property
    def covariate_names(self) -> List[str]:
        return [c for c in self.matrix.columns if self.matrix[c].sum() > 0]

    @property
    def n_effects(self):
        return int(self.matrix.to_numpy().sum())

    def effect_names(self):
        return [(p, c) for p in PARAM_NAMES for c in self.covariates_for(p)]

    def validate_covariates(self, available):
        missing = [c for c in self.covariate_names if c not in available]
        if len(missing) > 0:
            raise ValueError(f"Covariates {missing} are used by the covariate model but absent from the data")


@dataclass(frozen=True)
class SAEMData:
    """Flattened fitting arrays; observations sorted by subject then time."""
    subject_ids: np.ndarray
    y: np.ndarray
    t: np.ndarray
    obs_subject_idx: np.ndarray
    dose: np.ndarray
    covariates: pd.DataFrame

    @classmethod
    def from_frame(cls, df: pd.DataFrame, subject_id_col="ID", time_col="TIME",
                   conc_col="DV", dose_col="AMT", covariate_cols=()):
        df = df.loc[df[time_col] != 0, :]
        df = df.sort_values([subject_id_col, time_col]).reset_index(drop=True)
        if len(df) == 0:
            raise ValueError("No post-dose observations to fit")
        ids = np.sort(df[subject_id_col].unique())
        idx = np.searchsorted(ids, df[subject_id_col].to_numpy())
        per_sub = df.groupby(subject_id_col)
        dose = per_sub[dose_col].first().reindex(ids).to_numpy(dtype=np.float64)
        covariates = per_sub[list(covariate_cols)].first().reindex(ids)
        if covariates.isnull().to_numpy().any():
            raise ValueError(f"Missing covariate values in {list(covariate_cols)}")
        return cls(
            subject_ids=ids,
            y=df[conc_col].to_numpy(dtype=np.float64),
            t=df[time_col].to_numpy(dtype=np.float64),
            obs_subject_idx=idx,
            dose=dose,
            covariates=covariates.astype(np.float64),
        )

    @property
    def n_subjects(self):
        return len(self.subject_ids)

    @property
    def n_obs(self):
        return len(self.y)

    @property
    def dose_obs(self):
        return self.dose[self.obs_subject_idx]

    @property
    def subject_starts(self):
        return np.searchsorted(self.obs_subject_idx, np.arange(self.n_subjects))

    def design_matrices(self, covariate_model: CovariateModel):
        """Per-parameter design (intercept + selected covariates), keyed by subject order."""
        X = []
        for p in PARAM_NAMES:
            covs = covariate_model.covariates_for(p)
            cols = [np.ones(self.n_subjects)] + [self.covariates[c].to_numpy() for c in covs]
            X.append(np.column_stack(cols))
        return X


def error_sd(f, a, b):
    return np.maximum(a + b * np.abs(f), ERROR_SD_FLOOR)


def predict_from_phi(phi, data: SAEMData, obs_subject_idx=None, t=None, dose_obs=None):
    obs_subject_idx = data.obs_subject_idx if obs_subject_idx is None else obs_subject_idx
    t = data.t if t is None else t
    dose_obs = data.dose_obs if dose_obs is None else dose_obs
    psi = np.exp(phi[obs_subject_idx])
    with np.errstate(all="ignore"):
        return one_compartment_oral_conc(t, psi[:, 0], psi[:, 1], psi[:, 2], dose=dose_obs)


def conditional_data_loglik(phi, data: SAEMData, a, b, n_rep=1):
    """
    Per-subject log p(y_i | phi_i) up to the 2*pi constant. `phi` may stack
    `n_rep` chains, (n_rep * n_subjects, p). Invalid parameter vectors get -inf.
    """
    N = data.n_subjects
    idx = np.concatenate([data.obs_subject_idx + r * N for r in range(n_rep)])
    y = np.tile(data.y, n_rep)
    t = np.tile(data.t, n_rep)
    dose_obs = np.tile(data.dose_obs, n_rep)
    psi = np.exp(phi)
    valid = valid_pk_params_mask(psi[:, 0], psi[:, 1], psi[:, 2])
    # invalid vectors are never evaluated
    valid_obs = valid[idx]
    f = np.full(len(idx), np.nan)
    f[valid_obs] = predict_from_phi(phi, data, obs_subject_idx=idx[valid_obs],
                                    t=t[valid_obs], dose_obs=dose_obs[valid_obs])
    g = error_sd(f, a, b)
    with np.errstate(all="ignore"):
        ll_obs = -0.5 * ((y - f) / g) ** 2 - np.log(g)
    ll = np.bincount(idx, weights=np.nan_to_num(ll_obs, nan=-np.inf), minlength=N * n_rep)
    ll[~valid | ~np.isfinite(ll)] = -np.inf
    return ll, f


def _prior_loglik(phi, mean_phi, omega2):
    return -0.5 * np.sum((phi - mean_phi) ** 2 / omega2, axis=1)


def _combined_error_objective(log_ab, y, f):
    a, b = np.exp(log_ab)
    g = error_sd(f, a, b)
    return np.sum(0.5 * ((y - f) / g) ** 2 + np.log(g))


@dataclass
class SAEMEstimate:
    """Raw output of an estimation function."""
    param_names: Tuple[str, ...]
    theta: List[np.ndarray]
    mean_phi: np.ndarray
    omega2: np.ndarray
    error_a: float
    error_b: float
    cond_mean_phi: np.ndarray
    cond_var_phi: np.ndarray
    history: pd.DataFrame
    converged: bool
    convergence_message: str
    n_iterations: int
    acceptance_rates: Dict[str, float] = field(default_factory=dict)

    @property
    def mu(self):
        return np.array([th[0] for th in self.theta])


def _error_param_flags(error_model):
    if error_model == "additive":
        return True, False
    if error_model == "proportional":
        return False, True
    if error_model == "combined":
        return True, True
    raise ValueError(f"Unknown error model `{error_model}`, expected one of {ERROR_MODELS}")


def _history_row(iteration, theta, omega2, a, b, covariate_model):
    row = {"iteration": iteration}
    for k, p in enumerate(PARAM_NAMES):
        row[f"{p}_pop"] = theta[k][0]
        for j, c in enumerate(covariate_model.covariates_for(p)):
            row[f"{p}__{c}"] = theta[k][j + 1]
        row[f"omega2_{p}"] = omega2[k]
    row["a"] = a
    row["b"] = b
    return row


def _convergence_scale(history: pd.DataFrame, covariate_model: CovariateModel,
                       covariates: pd.DataFrame):
    """
    Fixed effects on the scale of the log-parameter they act on: intercepts
    at the mean covariate values, coefficients times the covariate sd. Each
    fixed effect also gets its random-effect sd as the reference magnitude.
    """
    scaled = history.copy()
    reference = {}
    for p in PARAM_NAMES:
        omega_sd = np.sqrt(history[f"omega2_{p}"].iloc[-1])
        reference[f"{p}_pop"] = omega_sd
        for c in covariate_model.covariates_for(p):
            col = f"{p}__{c}"
            vals = covariates[c].to_numpy(dtype=np.float64)
            sd = vals.std()
            scaled[f"{p}_pop"] = scaled[f"{p}_pop"] + history[col] * vals.mean()
            scaled[col] = history[col] * (sd if sd > 0 else 1.0)
            reference[col] = omega_sd
    return scaled, reference


def _assess_convergence(history: pd.DataFrame, options: SAEMOptions, error_model,
                        covariate_model: CovariateModel, covariates: pd.DataFrame):
    has_a, has_b = _error_param_flags(error_model)
    value_cols = [c for c in history.columns if c != "iteration"]
    if not has_a:
        value_cols.remove("a")
    if not has_b:
        value_cols.remove("b")
    values = history[value_cols].to_numpy(dtype=np.float64)
    if not np.all(np.isfinite(values[-1])):
        bad = [c for c, v in zip(value_cols, values[-1]) if not np.isfinite(v)]
        return False, f"non-finite estimates for {bad}"
    window = min(options.convergence_window, len(history) - 1)
    if window < 1:
        return False, "too few iterations to assess convergence"
    scaled, reference = _convergence_scale(history, covariate_model, covariates)
    values = scaled[value_cols].to_numpy(dtype=np.float64)
    # variances and error sds are compared on the log scale
    log_cols = [i for i, c in enumerate(value_cols) if c.startswith("omega2_") or c in ("a", "b")]
    start = values[-1 - window].copy()
    end = values[-1].copy()
    with np.errstate(all="ignore"):
        start[log_cols] = np.log(start[log_cols])
        end[log_cols] = np.log(end[log_cols])
    change = np.abs(end - start)
    magnitude = np.maximum(np.abs(end), [reference.get(c, 0.0) for c in value_cols])
    tol = options.convergence_atol + options.convergence_rtol * magnitude
    moving = [c for c, ch, tl in zip(value_cols, change, tol) if not ch <= tl]
    if len(moving) > 0:
        return False, (f"estimates still moving over the last {window} iterations: {moving}")
    return True, "converged"


def saem_estimate(
    data: SAEMData,
    init_phi: np.ndarray,
    init_omega2: np.ndarray,
    error_model: str,
    init_error: Tuple[float, float],
    covariate_model: CovariateModel,
    options: SAEMOptions,
    callback=None,
) -> SAEMEstimate:
    """
    Stochastic approximation EM for the one-compartment oral model with
    log-normal individual parameters and a diagonal random-effect covariance.

    Args:
        data: fitting arrays.
        init_phi: (p,) log population start values.
        init_omega2: (p,) start variances of the random effects.
        error_model: one of `ERROR_MODELS`.
        init_error: (a, b) start values of the residual error model g = a + b*f.
        covariate_model: covariate effects to estimate.
        options: immutable algorithm settings, including the seed.
        callback: optional callable(iteration, state_dict) run after each iteration.
    """
    has_a, has_b = _error_param_flags(error_model)
    covariate_model.validate_covariates(list(data.covariates.columns))
    init_psi = np.exp(np.asarray(init_phi, dtype=np.float64))
    check_pk_params(*init_psi)
    rng = np.random.default_rng(options.seed)
    N = data.n_subjects
    p = len(PARAM_NAMES)
    C = options.n_chains
    y_rep = np.tile(data.y, C)
    n_obs_total = data.n_obs

    X = data.design_matrices(covariate_model)
    XtX_inv_Xt = [np.linalg.pinv(Xk) for Xk in X]
    theta = [np.concatenate([[init_phi[k]], np.zeros(Xk.shape[1] - 1)]) for k, Xk in enumerate(X)]
    omega2 = np.asarray(init_omega2, dtype=np.float64).copy()
    a = float(init_error[0]) if has_a else 0.0
    b = float(init_error[1]) if has_b else 0.0

    def _mean_phi(theta):
        return np.column_stack([X[k] @ theta[k] for k in range(p)])

    mean_phi = _mean_phi(theta)
    mean_phi_rep = np.tile(mean_phi, (C, 1))
    phi = mean_phi_rep.copy()
    ll, _ = conditional_data_loglik(phi, data, a, b, n_rep=C)
    if not np.all(np.isfinite(ll)):
        raise ValueError("Start values give an undefined likelihood for some subjects")

    domega_cw = options.rw_init * np.sqrt(omega2)
    domega_block = options.rw_init * np.sqrt(omega2)
    accept_counts = {"prior": [0, 0], "componentwise": [0, 0], "block": [0, 0]}

    s1 = np.zeros((N, p))
    s2 = np.zeros(p)
    s3 = 0.0
    cond_sum = np.zeros((N, p))
    cond_sum2 = np.zeros((N, p))
    n_cond = 0
    step_sizes = options.step_sizes()
    smoothing_start = options.n_burn + options.n_iter_exploration
    annealing_end = options.n_burn + options.n_iter_annealing
    history = []

    iterator = tqdm(range(options.n_iter_total), disable=not options.verbose,
                    desc=f"SAEM ({error_model})")
    for it in iterator:
        # ---- simulation step: MCMC on phi ----
        sd_omega = np.sqrt(omega2)
        for _ in range(options.n_mcmc[0]):
            phi_new = mean_phi_rep + sd_omega * rng.standard_normal((N * C, p))
            ll_new, _ = conditional_data_loglik(phi_new, data, a, b, n_rep=C)
            with np.errstate(invalid="ignore"):
                acc = np.log(rng.uniform(size=N * C)) < (ll_new - ll)
            phi[acc], ll[acc] = phi_new[acc], ll_new[acc]
            accept_counts["prior"][0] += int(acc.sum())
            accept_counts["prior"][1] += N * C

        if options.n_mcmc[1] > 0:
            acc_k = np.zeros(p)
            for _ in range(options.n_mcmc[1]):
                for k in range(p):
                    phi_new = phi.copy()
                    phi_new[:, k] += domega_cw[k] * rng.standard_normal(N * C)
                    ll_new, _ = conditional_data_loglik(phi_new, data, a, b, n_rep=C)
                    delta = (ll_new + _prior_loglik(phi_new, mean_phi_rep, omega2)
                             - ll - _prior_loglik(phi, mean_phi_rep, omega2))
                    with np.errstate(invalid="ignore"):
                        acc = np.log(rng.uniform(size=N * C)) < delta
                    phi[acc], ll[acc] = phi_new[acc], ll_new[acc]
                    acc_k[k] += acc.sum()
            rate_k = acc_k / (options.n_mcmc[1] * N * C)
            domega_cw = domega_cw * (1 + options.rw_stepsize * (rate_k - options.mcmc_target_acceptance))
            accept_counts["componentwise"][0] += int(acc_k.sum())
            accept_counts["componentwise"][1] += options.n_mcmc[1] * N * C * p

        if options.n_mcmc[2] > 0:
            n_acc = 0
            for _ in range(options.n_mcmc[2]):
                phi_new = phi + domega_block * rng.standard_normal((N * C, p))
                ll_new, _ = conditional_data_loglik(phi_new, data, a, b, n_rep=C)
                delta = (ll_new + _prior_loglik(phi_new, mean_phi_rep, omega2)
                         - ll - _prior_loglik(phi, mean_phi_rep, omega2))
                with np.errstate(invalid="ignore"):
                    acc = np.log(rng.uniform(size=N * C)) < delta
                phi[acc], ll[acc] = phi_new[acc], ll_new[acc]
                n_acc += acc.sum()
            rate = n_acc / (options.n_mcmc[2] * N * C)
            domega_block = domega_block * (1 + options.rw_stepsize * (rate - options.mcmc_target_acceptance))
            accept_counts["block"][0] += int(n_acc)
            accept_counts["block"][1] += options.n_mcmc[2] * N * C

        f = predict_from_phi(
            phi, data,
            obs_subject_idx=np.concatenate([data.obs_subject_idx + r * N for r in range(C)]),
            t=np.tile(data.t, C), dose_obs=np.tile(data.dose_obs, C),
        )

        gamma = step_sizes[it]
        if gamma > 0:
            # ---- stochastic approximation of the sufficient statistics ----
            phi_chains = phi.reshape(C, N, p)
            s1 = s1 + gamma * (phi_chains.mean(axis=0) - s1)
            s2 = s2 + gamma * ((phi_chains ** 2).sum(axis=1).mean(axis=0) - s2)
            resid = y_rep - f
            if error_model == "additive":
                s3_new = np.sum(resid ** 2) / C
            elif error_model == "proportional":
                with np.errstate(all="ignore"):
                    s3_new = np.sum((resid / np.maximum(f, ERROR_SD_FLOOR)) ** 2) / C
            else:
                s3_new = 0.0
            s3 = s3 + gamma * (s3_new - s3)

            # ---- maximisation step ----
            theta = [XtX_inv_Xt[k] @ s1[:, k] for k in range(p)]
            mean_phi = _mean_phi(theta)
            omega2_new = (s2 - 2 * np.sum(s1 * mean_phi, axis=0) + np.sum(mean_phi ** 2, axis=0)) / N
            omega2_new = np.maximum(omega2_new, 1e-8)
            annealing = it < annealing_end
            if annealing:
                omega2 = np.maximum(omega2_new, options.annealing_alpha * omega2)
            else:
                omega2 = omega2_new

            if error_model == "additive":
                a_new = np.sqrt(s3 / n_obs_total)
                a = max(a_new, np.sqrt(options.annealing_alpha) * a) if annealing else a_new
            elif error_model == "proportional":
                b_new = np.sqrt(s3 / n_obs_total)
                b = max(b_new, np.sqrt(options.annealing_alpha) * b) if annealing else b_new
            else:
                res = minimize(_combined_error_objective, np.log([a, b]),
                               args=(y_rep, f), method="Nelder-Mead",
                               options={"xatol": 1e-6, "fatol": 1e-8, "maxiter": 400})
                a_new, b_new = np.exp(res.x)
                a_sa = a + gamma * (a_new - a)
                b_sa = b + gamma * (b_new - b)
                if annealing:
                    a = max(a_sa, np.sqrt(options.annealing_alpha) * a)
                    b = max(b_sa, np.sqrt(options.annealing_alpha) * b)
                else:
                    a, b = a_sa, b_sa

            mean_phi_rep = np.tile(mean_phi, (C, 1))
            # likelihood of the current chain state under the updated error model
            ll, _ = conditional_data_loglik(phi, data, a, b, n_rep=C)

        if it >= smoothing_start:
            phi_chains = phi.reshape(C, N, p)
            cond_sum += phi_chains.sum(axis=0)
            cond_sum2 += (phi_chains ** 2).sum(axis=0)
            n_cond += C

        history.append(_history_row(it + 1, theta, omega2, a, b, covariate_model))
        if callback is not None:
            callback(it + 1, {"theta": deepcopy(theta), "omega2": omega2.copy(),
                              "a": a, "b": b, "gamma": gamma,
                              "covariate_model": covariate_model})

    if n_cond > 0:
        cond_mean_phi = cond_sum / n_cond
        cond_var_phi = np.maximum(cond_sum2 / n_cond - cond_mean_phi ** 2, 0.0)
    else:
        cond_mean_phi = phi.reshape(C, N, p).mean(axis=0)
        cond_var_phi = np.zeros((N, p))

    history = pd.DataFrame(history)
    converged, message = _assess_convergence(history, options, error_model,
                                             covariate_model, data.covariates)
    acceptance_rates = {k: (v[0] / v[1] if v[1] > 0 else np.nan)
                        for k, v in accept_counts.items()}
    return SAEMEstimate(
        param_names=PARAM_NAMES,
        theta=theta,
        mean_phi=mean_phi,
        omega2=omega2,
        error_a=a,
        error_b=b,
        cond_mean_phi=cond_mean_phi,
        cond_var_phi=cond_var_phi,
        history=history,
        converged=converged,
        convergence_message=message,
        n_iterations=options.n_iter_total,
        acceptance_rates=acceptance_rates,
    )


@dataclass
class PopulationFitResult:
    """
    Fitted Model Object of one population fit: population (fixed-effect)
    estimates, covariate effects, variance components, residual error,
    per-subject parameters and random effects keyed by subject id, fit
    statistics and the convergence flag.
    """
    model_name: str
    error_model: str
    covariate_model: CovariateModel
    options: SAEMOptions
    fixed_effects: pd.DataFrame
    covariate_effects: pd.DataFrame
    omega2: pd.Series
    error_params: pd.Series
    individual_params: pd.DataFrame
    etas: pd.DataFrame
    map_etas: pd.DataFrame
    residuals: pd.DataFrame
    neg2ll: Dict[str, float]
    n_params: int
    n_subjects: int
    n_obs: int
    converged: bool
    convergence_message: str
    map_converged: bool
    history: pd.DataFrame
    estimate: SAEMEstimate = field(repr=False, default=None)
    subject_id_col: str = "ID"
    dose_col: str = "AMT"

    @property
    def seed(self):
        return self.options.seed

    @property
    def population_params(self) -> pd.Series:
        f = self.fixed_effects.loc[self.fixed_effects["population_coeff"].astype(bool)]
        return pd.Series(f["estimate"].to_numpy(dtype=np.float64),
                         index=f["model_coeff"].to_list(), name="estimate")

    @property
    def log_likelihood_method(self):
        return self.options.ll_method

    @property
    def ll(self):
        return -0.5 * self.neg2ll[self.options.ll_method]

    @property
    def aic(self):
        return self.neg2ll[self.options.ll_method] + 2 * self.n_params

    @property
    def bic(self):
        return self.neg2ll[self.options.ll_method] + np.log(self.n_subjects) * self.n_params

    def information_criteria(self, method=None):
        method = self.options.ll_method if method is None else method
        neg2ll = self.neg2ll[method]
        return {
            "neg2ll": neg2ll,
            "aic": neg2ll + 2 * self.n_params,
            "bic": neg2ll + np.log(self.n_subjects) * self.n_params,
        }

    def require_converged(self):
        from .utils import FitConvergenceError
        if not self.converged:
            raise FitConvergenceError(
                f"Population fit `{self.model_name}` did not converge: {self.convergence_message}"
            )
        return self

    def summary(self) -> pd.DataFrame:
        rows = self.fixed_effects[["log_name", "estimate", "se", "rse_pct"]].copy()
        omega_rows = pd.DataFrame({
            "log_name": [f"omega2_{p}" for p in self.omega2.index],
            "estimate": self.omega2.to_numpy(),
        })
        err_rows = pd.DataFrame({
            "log_name": list(self.error_params.index),
            "estimate": self.error_params.to_numpy(),
        })
        return pd.concat([rows, omega_rows, err_rows], ignore_index=True)

    def typical_phi(self, covariates: pd.DataFrame) -> pd.DataFrame:
        """
        Log population parameters implied by the fixed effects for the
        covariate rows in `covariates` (one row per subject, index kept).
        """
        self.covariate_model.validate_covariates(list(covariates.columns))
        out = {}
        for k, p in enumerate(PARAM_NAMES):
            theta_k = self.estimate.theta[k]
            val = np.full(len(covariates), theta_k[0])
            for j, c in enumerate(self.covariate_model.covariates_for(p)):
                val = val + theta_k[j + 1] * covariates[c].to_numpy(dtype=np.float64)
            out[p] = val
        return pd.DataFrame(out, index=covariates.index)
