import numpy as np
import pandas as pd
from typing import Dict, Literal
from scipy.linalg import cho_factor, cho_solve, solve_triangular
from scipy.special import logsumexp
from scipy.stats import t as scipy_t, norm as scipy_norm

from .jax_utils import predict_phi_jacobian
from .saem import SAEMData, PopulationFitResult, conditional_data_loglik, error_sd


def _subject_slices(data: SAEMData):
    starts = data.subject_starts
    ends = np.append(starts[1:], data.n_obs)
    return [slice(s, e) for s, e in zip(starts, ends)]


def _fixed_effect_design(design_matrices, i):
    """(p, n_theta) map from the stacked theta vector to phi_i."""
    n_theta = sum(X.shape[1] for X in design_matrices)
    D = np.zeros((len(design_matrices), n_theta))
    offset = 0
    for k, X in enumerate(design_matrices):
        D[k, offset:offset + X.shape[1]] = X[i]
        offset += X.shape[1]
    return D


def linearization_terms(data: SAEMData, phi_map, mean_phi, omega2, a, b, design_matrices):
    """
    First-order expansion of each subject's model around its conditional mode.

        V_i = J_i diag(omega2) J_i' + diag(g_i^2)
        r_i = y_i - f(phi_map_i) + J_i (phi_map_i - m_i)

    Returns a dict holding the linearised -2LL, the CWRES per observation,
    the Fisher information of the stacked fixed effects, and the individual
    predictions with their residual sds.
    """
    idx = data.obs_subject_idx
    ipred, J = predict_phi_jacobian(phi_map[idx], data.t, data.dose_obs)
    g = error_sd(ipred, a, b)
    n_theta = sum(X.shape[1] for X in design_matrices)
    neg2ll = 0.0
    cwres = np.empty(data.n_obs)
    fim = np.zeros((n_theta, n_theta))
    for i, sl in enumerate(_subject_slices(data)):
        Ji = J[sl]
        Vi = (Ji * omega2) @ Ji.T + np.diag(g[sl] ** 2)
        ri = data.y[sl] - ipred[sl] + Ji @ (phi_map[i] - mean_phi[i])
        c, lower = cho_factor(Vi, lower=True)
        logdet = 2 * np.sum(np.log(np.diag(c)))
        neg2ll += len(ri) * np.log(2 * np.pi) + logdet + ri @ cho_solve((c, lower), ri)
        cwres[sl] = solve_triangular(np.tril(c), ri, lower=True)
        Xi = Ji @ _fixed_effect_design(design_matrices, i)
        fim += Xi.T @ cho_solve((c, lower), Xi)
    return {"neg2ll": neg2ll, "cwres": cwres, "fim": fim, "ipred": ipred, "ipred_sd": g}


def fixed_effect_standard_errors(fim):
    """Standard errors from the inverse Fisher information (pseudo-inverse if singular)."""
    try:
        cov = np.linalg.inv(fim)
    except np.linalg.LinAlgError:
        cov = np.linalg.pinv(fim)
    with np.errstate(invalid="ignore"):
        return np.sqrt(np.diag(cov))


def importance_sampling_neg2ll(data: SAEMData, cond_mean_phi, cond_var_phi, mean_phi,
                               omega2, a, b, n_samples=5000, df=4, seed=0,
                               chunk_size=250, min_sd=1e-4):
    """
    -2 log-likelihood by importance sampling, one estimate per subject summed.

    Proposals are Student-t with `df` degrees of freedom centred on the
    conditional mean of phi with the conditional sd as scale.
    """
    rng = np.random.default_rng(seed)
    N, p = cond_mean_phi.shape
    sd = np.maximum(np.sqrt(cond_var_phi), min_sd)
    n_per_subject = np.bincount(data.obs_subject_idx, minlength=N)
    const = -0.5 * n_per_subject * np.log(2 * np.pi)
    omega_sd = np.sqrt(omega2)
    log_w = []
    n_done = 0
    while n_done < n_samples:
        S = min(chunk_size, n_samples - n_done)
        z = scipy_t.rvs(df, size=(S, N, p), random_state=rng)
        phi = cond_mean_phi + sd * z
        ll, _ = conditional_data_loglik(phi.reshape(S * N, p), data, a, b, n_rep=S)
        ll = ll.reshape(S, N) + const
        log_prior = scipy_norm.logpdf(phi, loc=mean_phi, scale=omega_sd).sum(axis=2)
        log_q = (scipy_t.logpdf(z, df) - np.log(sd)).sum(axis=2)
        log_w.append(ll + log_prior - log_q)
        n_done += S
    log_w = np.concatenate(log_w, axis=0)
    ll_i = logsumexp(log_w, axis=0) - np.log(n_samples)
    return -2 * float(np.sum(ll_i))


def compare_models(fits: Dict[str, PopulationFitResult], ll_method=None) -> pd.DataFrame:
    """Information criteria of several fits on the same data, lower is better."""
    rows = []
    for name, fit in fits.items():
        ic = fit.information_criteria(ll_method)
        rows.append({
            "model": name,
            "error_model": fit.error_model,
            "n_covariate_effects": fit.covariate_model.n_effects,
            "n_params": fit.n_params,
            "ll_method": fit.options.ll_method if ll_method is None else ll_method,
            "neg2ll": ic["neg2ll"],
            "aic": ic["aic"],
            "bic": ic["bic"],
            "converged": fit.converged,
        })
    return pd.DataFrame(rows)


def _within_tol(values, rtol):
    best = np.min(values)
    return np.abs(values - best) <= rtol * max(np.abs(best), 1.0)


def select_best_model(fits: Dict[str, PopulationFitResult],
                      criterion: Literal["aic", "bic"] = "aic",
                      rtol=1e-8, allow_unconverged=False, ll_method=None) -> str:
    """
    Name of the fit with the lowest `criterion`.

    Fits within `rtol` of the minimum are treated as tied; ties are broken by
    the other criterion, then by the smaller number of parameters. A tie that
    survives both raises `ModelSelectionTieError`.
    """
    from .utils import FitConvergenceError, ModelSelectionTieError
    if criterion not in ("aic", "bic"):
        raise ValueError(f"`criterion` must be 'aic' or 'bic', got {criterion}")
    other = "bic" if criterion == "aic" else "aic"
    table = compare_models(fits, ll_method=ll_method)
    if not allow_unconverged:
        table = table.loc[table["converged"], :]
    if len(table) == 0:
        raise FitConvergenceError("No converged fit to select from")
    if not np.all(np.isfinite(table[criterion].to_numpy(dtype=np.float64))):
        bad = table.loc[~np.isfinite(table[criterion].astype(float)), "model"].to_list()
        raise ValueError(f"Non-finite {criterion} for {bad}")

    tied = table.loc[_within_tol(table[criterion].to_numpy(dtype=np.float64), rtol), :]
    if len(tied) > 1:
        tied = tied.loc[_within_tol(tied[other].to_numpy(dtype=np.float64), rtol), :]
    if len(tied) > 1:
        tied = tied.loc[tied["n_params"] == tied["n_params"].min(), :]
    if len(tied) > 1:
        raise ModelSelectionTieError(
            f"Models {tied['model'].to_list()} are tied on {criterion}, {other} and number of parameters"
        )
    return tied["model"].iloc[0]


def wald_ci(estimate, se, ci_level=0.95):
    z = scipy_norm.ppf(0.5 + ci_level / 2)
    return estimate - z * se, estimate + z * se
