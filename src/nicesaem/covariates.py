import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
import statsmodels.formula.api as smf
from scipy.stats import ttest_ind
from statsmodels.stats.multitest import multipletests
from typing import List

from .utils import MissingCovariateError


def join_covariates(params: pd.DataFrame, covariates: pd.DataFrame,
                    subject_id_col="ID") -> pd.DataFrame:
    """
    Attach subject covariates to a one-row-per-subject table (individual
    parameters or etas) by subject id. Every subject in `params` must find
    exactly one covariate row.
    """
    for name, df in (("params", params), ("covariates", covariates)):
        if subject_id_col not in df.columns:
            raise ValueError(f"`{subject_id_col}` is not a column of `{name}`")
        if df[subject_id_col].duplicated().any():
            raise ValueError(f"`{name}` has more than one row for some `{subject_id_col}`")
    missing = ~params[subject_id_col].isin(covariates[subject_id_col])
    if missing.any():
        raise MissingCovariateError(
            f"No covariates for subjects {params.loc[missing, subject_id_col].to_list()}"
        )
    overlap = [c for c in covariates.columns if c in params.columns and c != subject_id_col]
    joined = params.merge(covariates.drop(columns=overlap), on=subject_id_col,
                          how="left", validate="one_to_one")
    if joined[[c for c in covariates.columns if c not in overlap]].isnull().to_numpy().any():
        raise MissingCovariateError("Covariate join produced missing values")
    return joined


def _param_columns(df, params, exclude):
    if params is not None:
        return list(params)
    return [c for c in df.columns if c not in exclude and pd.api.types.is_numeric_dtype(df[c])]


def sex_ttests(joined: pd.DataFrame, params: List[str] = None, sex_col="SEX",
               subject_id_col="ID", p_adjust="holm") -> pd.DataFrame:
    """Welch two-sided t-test of each parameter between the two sex groups."""
    params = _param_columns(joined, params, [subject_id_col, sex_col, "AGE", "AMT"])
    levels = np.sort(joined[sex_col].unique())
    if len(levels) != 2:
        raise ValueError(f"`{sex_col}` must have exactly two levels, got {list(levels)}")
    rows = []
    for p in params:
        g0 = joined.loc[joined[sex_col] == levels[0], p].to_numpy(dtype=np.float64)
        g1 = joined.loc[joined[sex_col] == levels[1], p].to_numpy(dtype=np.float64)
        if min(len(g0), len(g1)) < 2:
            raise ValueError(f"Each `{sex_col}` group needs at least two subjects")
        res = ttest_ind(g0, g1, equal_var=False)
        rows.append({
            "param": p,
            f"mean_{sex_col}{levels[0]}": g0.mean(),
            f"mean_{sex_col}{levels[1]}": g1.mean(),
            f"n_{sex_col}{levels[0]}": len(g0),
            f"n_{sex_col}{levels[1]}": len(g1),
            "t_stat": res.statistic,
            "p_value": res.pvalue,
        })
    out = pd.DataFrame(rows)
    if p_adjust is not None and len(out) > 0:
        out["p_adjusted"] = multipletests(out["p_value"].to_numpy(), method=p_adjust)[1]
    return out


def age_regressions(joined: pd.DataFrame, params: List[str] = None, age_col="AGE",
                    sex_col="SEX", subject_id_col="ID") -> pd.DataFrame:
    """
    OLS of each parameter on age alone and on age, sex and their interaction.
    One row per (parameter, model).
    """
    params = _param_columns(joined, params, [subject_id_col, sex_col, age_col, "AMT"])
    rows = []
    for p in params:
        formulas = {
            "age": f"Q('{p}') ~ {age_col}",
            "age_sex": f"Q('{p}') ~ {age_col} * C({sex_col})",
        }
        for model, formula in formulas.items():
            res = smf.ols(formula, data=joined).fit()
            row = {
                "param": p,
                "model": model,
                "formula": formula,
                "n": int(res.nobs),
                "slope_age": res.params[age_col],
                "p_age": res.pvalues[age_col],
                "r2": res.rsquared,
                "adj_r2": res.rsquared_adj,
                "f_pvalue": res.f_pvalue,
            }
            inter = [k for k in res.params.index if ":" in k]
            if len(inter) > 0:
                row["interaction"] = res.params[inter[0]]
                row["p_interaction"] = res.pvalues[inter[0]]
            rows.append(row)
    return pd.DataFrame(rows)


def plot_covariate_boxplots(joined: pd.DataFrame, params: List[str], sex_col="SEX",
                            tests: pd.DataFrame = None):
    fig, axs = plt.subplots(1, len(params), figsize=(4 * len(params), 4), squeeze=False)
    for ax, p in zip(axs[0], params):
        sns.boxplot(data=joined, x=sex_col, y=p, ax=ax, color="lightgray")
        sns.stripplot(data=joined, x=sex_col, y=p, ax=ax, size=3, alpha=.6)
        if tests is not None:
            p_val = tests.loc[tests["param"] == p, "p_value"]
            if len(p_val) > 0:
                ax.set_title(f"{p} (Welch p={p_val.iloc[0]:.3g})")
    fig.tight_layout()
    return fig


def plot_covariate_scatter(joined: pd.DataFrame, params: List[str], age_col="AGE",
                           sex_col="SEX", regressions: pd.DataFrame = None):
    fig, axs = plt.subplots(1, len(params), figsize=(4 * len(params), 4), squeeze=False)
    for ax, p in zip(axs[0], params):
        for level, sub_df in joined.groupby(sex_col):
            sns.regplot(data=sub_df, x=age_col, y=p, ax=ax, label=f"{sex_col}={level}",
                        scatter_kws={"s": 10, "alpha": .6})
        if regressions is not None:
            r = regressions.loc[(regressions["param"] == p) & (regressions["model"] == "age")]
            if len(r) > 0:
                ax.set_title(f"{p} (age p={r['p_age'].iloc[0]:.3g})")
        ax.legend()
    fig.tight_layout()
    return fig


def stepwise_covariate_search(*args, **kwargs):
    """
    Stepwise covariate model building. The selection policy (direction and
    entry/exit thresholds) has not been defined, so this is not available.
    """
    raise NotImplementedError(
        "Stepwise covariate search is not implemented: its selection policy "
        "(forward/backward, entry and exit thresholds) is undefined"
    )
