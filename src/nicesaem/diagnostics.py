import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns

from .covariates import join_covariates
from .datasets import PKDataset
from .diffeqs import one_compartment_oral_conc
from .saem import PARAM_NAMES, PopulationFitResult


def plot_subject_levels(df: pd.DataFrame, x="TIME", y="DV", subject="ID", ax=None,
                        log_scale=False):
    if ax is None:
        fig, ax = plt.subplots(1)
    df = df.copy()
    df[y] = df[y].astype(np.float64)
    df[x] = df[x].astype(np.float64)
    if log_scale:
        # zero concentrations have no place on a log axis
        df = df.loc[df[y] > 0, :]
    sns.lineplot(data=df, x=x, y=y, hue=subject, units=subject, estimator=None,
                 ax=ax, legend=False)
    if log_scale:
        ax.set_yscale("log")
    return ax


def plot_observed_profiles(dataset: PKDataset, log_scale=False, facet_by_sex=True):
    """Spaghetti plot of the full observed series, pre-dose rows included."""
    c = dataset.cols
    df = dataset.observations()
    if log_scale:
        df = df.loc[df[c.conc] > 0, :]
    g = sns.relplot(data=df, x=c.time, y=c.conc, units=c.subject_id, estimator=None,
                    kind="line", col=c.sex if facet_by_sex else None, alpha=.4,
                    height=4)
    if log_scale:
        g.set(yscale="log")
    return g


def _time_grid(t_grid, t_max, n_points):
    if t_grid is not None:
        return np.asarray(t_grid, dtype=np.float64)
    return np.linspace(0.0, t_max, n_points)


def predict_individual_curves(fit: PopulationFitResult, t_grid=None, ids=None, t_max=10.0,
                              n_points=200, use_map=True, time_col="TIME") -> pd.DataFrame:
    """
    Predicted concentration of each subject over a dense grid, long format
    (subject id, time, IPRED). Parameters come from the conditional modes, or
    the conditional means when `use_map` is False.
    """
    sid = fit.subject_id_col
    t = _time_grid(t_grid, t_max, n_points)
    params = fit.individual_params
    if ids is not None:
        missing = [i for i in ids if i not in set(params[sid])]
        if len(missing) > 0:
            raise KeyError(f"Subjects {missing} are not part of the fit")
        params = params.loc[params[sid].isin(ids), :]
    cols = [f"map_{p}" for p in PARAM_NAMES] if use_map else list(PARAM_NAMES)
    out = []
    for _, row in params.iterrows():
        ka, vd, ke = row[cols].to_numpy(dtype=np.float64)
        out.append(pd.DataFrame({
            sid: row[sid],
            time_col: t,
            "IPRED": one_compartment_oral_conc(t, ka, vd, ke, dose=row[fit.dose_col]),
        }))
    return pd.concat(out, ignore_index=True)


def predict_population_curve(fit: PopulationFitResult, covariates: pd.DataFrame = None,
                             dose=100.0, t_grid=None, t_max=10.0, n_points=200,
                             time_col="TIME") -> pd.DataFrame:
    """Typical-subject curve(s); one per covariate row when covariates are given."""
    t = _time_grid(t_grid, t_max, n_points)
    covariates = pd.DataFrame(index=[0]) if covariates is None else covariates
    phi = fit.typical_phi(covariates)
    out = []
    for idx, row in phi.iterrows():
        ka, vd, ke = np.exp(row[list(PARAM_NAMES)].to_numpy(dtype=np.float64))
        curve = pd.DataFrame({time_col: t,
                              "PRED": one_compartment_oral_conc(t, ka, vd, ke, dose=dose)})
        for c in covariates.columns:
            curve[c] = covariates.loc[idx, c]
        out.append(curve)
    return pd.concat(out, ignore_index=True)


def plot_individual_fits(fit: PopulationFitResult, dataset: PKDataset, ids=None,
                         log_scale=False, ax=None, t_grid=None):
    """Observed points and individual predicted curves superimposed on one axis."""
    c = dataset.cols
    if ax is None:
        fig, ax = plt.subplots(1, figsize=(7, 5))
    ids = list(fit.individual_params[fit.subject_id_col]) if ids is None else list(ids)
    t_max = dataset.observations()[c.time].max()
    curves = predict_individual_curves(fit, t_grid=t_grid, ids=ids, t_max=t_max,
                                       time_col=c.time)
    obs = dataset.observations()
    obs = obs.loc[obs[c.subject_id].isin(ids), :]
    if log_scale:
        obs = obs.loc[obs[c.conc] > 0, :]
        curves = curves.loc[curves["IPRED"] > 0, :]
    palette = dict(zip(ids, sns.color_palette("husl", len(ids))))
    for sub in ids:
        sub_curve = curves.loc[curves[fit.subject_id_col] == sub]
        sub_obs = obs.loc[obs[c.subject_id] == sub]
        ax.plot(sub_curve[c.time], sub_curve["IPRED"], color=palette[sub], lw=1)
        ax.scatter(sub_obs[c.time], sub_obs[c.conc], color=palette[sub], s=12)
    if log_scale:
        ax.set_yscale("log")
    ax.set_xlabel(c.time)
    ax.set_ylabel(c.conc)
    return ax


def compute_residuals(fit: PopulationFitResult, dataset: PKDataset = None) -> pd.DataFrame:
    """
    Per-observation PRED, IPRED, IWRES and CWRES of a fit, with the subject
    covariates attached when a dataset is given.
    """
    res = fit.residuals.copy()
    if dataset is not None:
        sid = fit.subject_id_col
        subjects = res[[sid]].drop_duplicates()
        covs = join_covariates(subjects, dataset.covariates(), subject_id_col=sid)
        res = res.merge(covs, on=sid, how="left", validate="many_to_one")
    return res


def plot_gof(residuals: pd.DataFrame, conc_col="DV", time_col="TIME", log_scale=False,
             hue=None):
    """Observed vs PRED/IPRED and CWRES vs time/PRED."""
    fig, axs = plt.subplots(2, 2, figsize=(10, 9))
    for ax, pred in zip(axs[0], ("PRED", "IPRED")):
        sns.scatterplot(data=residuals, x=pred, y=conc_col, hue=hue, s=12, ax=ax)
        lim = [0, max(residuals[pred].max(), residuals[conc_col].max())]
        ax.plot(lim, lim, color="k", ls="--", lw=1)
        if log_scale:
            ax.set_xscale("log")
            ax.set_yscale("log")
    for ax, x in zip(axs[1], (time_col, "PRED")):
        sns.scatterplot(data=residuals, x=x, y="CWRES", hue=hue, s=12, ax=ax)
        ax.axhline(0, color="k", lw=1)
        for bound in (-2, 2):
            ax.axhline(bound, color="k", ls=":", lw=1)
    fig.tight_layout()
    return fig


def plot_error_model_comparison(comparison: pd.DataFrame):
    long = comparison.melt(id_vars="model", value_vars=["aic", "bic"],
                           var_name="criterion", value_name="value")
    ax = sns.barplot(data=long, x="model", y="value", hue="criterion")
    ax.set_ylabel("information criterion (lower is better)")
    return ax
