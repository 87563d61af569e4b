import numpy as np
import pandas as pd
import pytest

from nicesaem.datasets import simulate_pk_dataset
from nicesaem.diffeqs import one_compartment_oral_conc
from nicesaem.nca import (NCA, calculate_aucs, nca_single_subject, summarize_nca,
                          nca_mean_profile, estimate_terminal_slope)

TIMES = np.array([0.0, 0.25, 0.5, 1.0, 1.5, 2.0, 3.0, 4.0, 6.0, 8.0, 10.0, 12.0, 16.0, 24.0])


def test_noiseless_single_subject():
    ka, vd, ke, dose = 2.0, 50.0, 0.2, 100.0
    conc = one_compartment_oral_conc(TIMES, ka, vd, ke, dose=dose)
    res = nca_single_subject(TIMES, conc, dose)
    assert res["cmax"] == conc.max()
    assert res["tmax"] == TIMES[np.argmax(conc)]
    assert res["lambda_z"] == pytest.approx(ke, rel=2e-2)
    assert res["half_life"] == pytest.approx(np.log(2) / ke, rel=2e-2)
    assert res["auc_inf"] == pytest.approx(dose / (vd * ke), rel=5e-2)
    assert res["cl_f"] == pytest.approx(vd * ke, rel=5e-2)
    assert res["vz_f"] == pytest.approx(vd, rel=1e-1)
    assert 0 < res["auc_pct_extrap"] < 100
    assert res["lambda_z_n_points"] >= 3


def test_linear_up_log_down_sections():
    time = np.array([0.0, 1.0, 2.0])
    conc = np.array([0.0, 4.0, 2.0])
    auc_res = calculate_aucs(time, conc)
    # rising section linear, falling section log
    assert auc_res["section_auc_linup_logdown"].iloc[0] == pytest.approx(2.0)
    assert auc_res["section_auc_linup_logdown"].iloc[1] == pytest.approx(2.0 / np.log(2))


def test_failed_terminal_fit_gives_nan():
    time = np.array([0.0, 1.0, 2.0, 3.0, 4.0, 5.0])
    conc = np.array([0.0, 5.0, 1.0, 2.0, 3.0, 4.0])
    res = nca_single_subject(time, conc, 100.0)
    assert np.isnan(res["lambda_z"])
    assert np.isnan(res["half_life"])
    assert np.isnan(res["auc_inf"])
    assert res["auc_last"] > 0


def test_terminal_slope_threshold():
    time = np.array([0.0, 1.0, 2.0, 3.0, 4.0, 5.0])
    conc = np.array([0.0, 10.0, 5.0, 6.0, 2.0, 3.0])
    res = estimate_terminal_slope(time, conc, tmax=1.0, adj_r2_threshold=0.99)
    assert np.isnan(res["lambda_z"])


def test_nca_over_dataset():
    ds = simulate_pk_dataset(n_subjects=12, seed=5)
    nca = NCA.from_dataset(ds)
    params = nca.estimate_all_nca_params()
    assert len(params) == 12
    assert set(params["ID"]) == set(ds.subject_ids)
    assert (params["cmax"] > 0).all()
    summary = summarize_nca(params)
    assert list(summary["param"]) == ["cmax", "tmax", "auc_inf", "half_life", "cl_f", "vz_f", "lambda_z"]
    assert (summary.loc[summary["param"] == "cmax", "n"] == 12).all()


def test_nca_missing_column():
    with pytest.raises(ValueError):
        NCA(pd.DataFrame({"ID": [1], "TIME": [0.0], "DV": [0.0]}))


def test_mean_profile_nca():
    ds = simulate_pk_dataset(n_subjects=20, seed=8)
    res = nca_mean_profile(ds)
    assert res["cmax"] > 0
    assert res["tmax"] > 0
