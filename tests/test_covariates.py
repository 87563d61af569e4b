import numpy as np
import pandas as pd
import pytest
from scipy.stats import ttest_ind

from nicesaem.covariates import (join_covariates, sex_ttests, age_regressions,
                                 plot_covariate_boxplots, plot_covariate_scatter,
                                 stepwise_covariate_search)
from nicesaem.utils import MissingCovariateError


def _covs(n=20, seed=0):
    rng = np.random.default_rng(seed)
    return pd.DataFrame({
        "ID": np.arange(1, n + 1),
        "SEX": np.tile([0, 1], n // 2),
        "AGE": rng.uniform(20, 80, n),
    })


def _params(covs, seed=1):
    rng = np.random.default_rng(seed)
    return pd.DataFrame({
        "ID": covs["ID"].to_numpy()[::-1],
        "eta_ka": rng.normal(0, 0.3, len(covs)),
        "eta_vd": 0.02 * (covs["AGE"].to_numpy()[::-1] - 50) + rng.normal(0, 0.05, len(covs)),
    })


def test_join_is_keyed_not_positional():
    covs = _covs()
    params = _params(covs)
    joined = join_covariates(params, covs)
    assert len(joined) == len(params)
    merged = joined.set_index("ID")
    for sid in (1, 7, 20):
        assert merged.loc[sid, "AGE"] == covs.set_index("ID").loc[sid, "AGE"]
    assert list(joined["ID"]) == list(params["ID"])


def test_join_allows_extra_covariate_rows():
    covs = _covs()
    params = _params(covs).iloc[:5]
    assert len(join_covariates(params, covs)) == 5


def test_join_missing_subject():
    covs = _covs()
    params = _params(covs)
    with pytest.raises(MissingCovariateError) as err:
        join_covariates(params, covs.iloc[1:])
    assert isinstance(err.value, KeyError)


def test_join_duplicates_rejected():
    covs = _covs()
    with pytest.raises(ValueError):
        join_covariates(_params(covs), pd.concat([covs, covs.iloc[:1]]))


def test_join_missing_id_column():
    covs = _covs()
    with pytest.raises(ValueError):
        join_covariates(_params(covs).drop(columns=["ID"]), covs)


def test_sex_ttests_match_welch():
    joined = join_covariates(_params(_covs()), _covs())
    res = sex_ttests(joined, params=["eta_ka", "eta_vd"])
    assert list(res["param"]) == ["eta_ka", "eta_vd"]
    g0 = joined.loc[joined["SEX"] == 0, "eta_ka"]
    g1 = joined.loc[joined["SEX"] == 1, "eta_ka"]
    expected = ttest_ind(g0, g1, equal_var=False)
    row = res.iloc[0]
    assert row["t_stat"] == pytest.approx(expected.statistic)
    assert row["p_value"] == pytest.approx(expected.pvalue)
    assert row["n_SEX0"] == 10 and row["n_SEX1"] == 10
    assert (res["p_adjusted"] >= res["p_value"]).all()


def test_sex_ttests_default_params():
    joined = join_covariates(_params(_covs()), _covs())
    res = sex_ttests(joined)
    assert set(res["param"]) == {"eta_ka", "eta_vd"}


def test_sex_ttests_need_two_levels():
    joined = join_covariates(_params(_covs()), _covs())
    joined["SEX"] = 0
    with pytest.raises(ValueError):
        sex_ttests(joined, params=["eta_ka"])


def test_age_regressions_recover_slope():
    joined = join_covariates(_params(_covs(n=60)), _covs(n=60))
    res = age_regressions(joined, params=["eta_vd", "eta_ka"])
    assert len(res) == 4
    age_only = res.loc[(res["param"] == "eta_vd") & (res["model"] == "age")].iloc[0]
    assert age_only["slope_age"] == pytest.approx(0.02, abs=0.005)
    assert age_only["p_age"] < 1e-6
    assert age_only["n"] == 60
    with_sex = res.loc[(res["param"] == "eta_vd") & (res["model"] == "age_sex")].iloc[0]
    assert np.isfinite(with_sex["p_interaction"])
    assert np.isnan(age_only["p_interaction"])


def test_covariate_plots():
    joined = join_covariates(_params(_covs()), _covs())
    tests = sex_ttests(joined, params=["eta_ka", "eta_vd"])
    regs = age_regressions(joined, params=["eta_ka", "eta_vd"])
    fig = plot_covariate_boxplots(joined, ["eta_ka", "eta_vd"], tests=tests)
    assert len(fig.axes) == 2
    assert "Welch" in fig.axes[0].get_title()
    fig = plot_covariate_scatter(joined, ["eta_ka", "eta_vd"], regressions=regs)
    assert len(fig.axes) == 2


def test_stepwise_search_not_available():
    with pytest.raises(NotImplementedError):
        stepwise_covariate_search(None, None)
