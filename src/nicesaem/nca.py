import numpy as np
import pandas as pd
from scipy.stats import linregress
from sklearn.metrics import auc

from .pd_templates import PKDataCols

nca_docstring = """
    Relevant NCA Estimated Parameters:
        Non-Compartmental Analysis (NCA) provides model-independent estimates of
        drug exposure and disposition kinetics directly from concentration-time
        data. They summarize the data and inform initial parameter guesses for
        the compartmental fits. Units of dose and concentration must share the
        same mass unit, and time should be in hours so that clearance is in L/hr.

        - Cmax / Tmax: maximum observed concentration and the time it occurs.
        - AUC_last: area under the curve to the last measurable concentration,
            linear trapezoid while concentrations rise, log trapezoid while they fall.
        - lambda_z: terminal elimination rate constant, minus the slope of the
            log-linear regression over the terminal points (best adjusted R^2,
            at least 3 points after Tmax).
        - t_half_z = ln(2) / lambda_z.
        - AUC_inf = AUC_last + C_last / lambda_z.
        - AUMC_inf, MRT = AUMC_inf / AUC_inf.
        - CL/F = Dose / AUC_inf (extravascular data, bioavailability unknown).
        - Vz/F = (CL/F) / lambda_z.
    """


def log_trapazoidal_section_auc(time, conc):
    conc_diff = np.diff(conc)
    time_diff = np.diff(time)
    tmp_auc = np.zeros_like(time_diff, dtype=np.float64)
    # log trapezoid is only defined between two strictly positive, unequal concentrations
    valid = (conc[:-1] > 0) & (conc[1:] > 0) & (conc_diff != 0)
    log_conc_diff = np.zeros_like(time_diff, dtype=np.float64)
    log_conc_diff[valid] = np.log(conc[1:][valid]) - np.log(conc[:-1][valid])
    tmp_auc[valid] = (conc_diff[valid] / log_conc_diff[valid]) * time_diff[valid]
    fallback = ~valid
    tmp_auc[fallback] = section_auc(time, conc)[fallback]
    return tmp_auc


def section_auc(time, conc):
    avg_conc = (conc[:-1] + conc[1:]) / 2
    delta_t = np.diff(time)
    return avg_conc * delta_t


def auc_trapz_slope_is_pos(conc):
    return np.diff(conc) > 0


def generate_auc_res_df(time, conc, log_trap_auc_comp, linear_auc_comp, auc_section_slope, ):
    auc_res = pd.DataFrame()
    auc_res['time_start'] = time[:-1]
    auc_res['time_end'] = time[1:]
    auc_res['conc_start'] = conc[:-1]
    auc_res['conc_end'] = conc[1:]
    auc_res['section_auc_log_trap'] = log_trap_auc_comp
    auc_res['section_auc'] = linear_auc_comp
    auc_res['section_slope_is_pos'] = auc_section_slope
    s = auc_section_slope
    auc_res['section_auc_linup_logdown'] = np.where(s, linear_auc_comp, log_trap_auc_comp)
    return auc_res


def calculate_aucs(time, conc):
    time = np.asarray(time, dtype=np.float64)
    conc = np.asarray(conc, dtype=np.float64)
    t = log_trapazoidal_section_auc(time, conc)
    n = section_auc(time, conc)
    s = auc_trapz_slope_is_pos(conc)
    return generate_auc_res_df(time, conc, t, n, s)


def extend_auc_to_inf(c_last, terminal_k):
    return c_last / terminal_k


def extend_aumc_to_inf(t_last, c_last, terminal_k):
    return (c_last * t_last / terminal_k) + (c_last / (terminal_k**2))


def estimate_terminal_slope(time, conc, tmax, min_points=3,
                            adj_r2_threshold=0.8, adj_r2_tol=1e-4):
    """
    Terminal log-linear regression over the last k points after Tmax.

    All windows ending at the last positive concentration with at least
    `min_points` points are fit; the window with the largest adjusted R^2 is
    chosen, preferring more points among windows within `adj_r2_tol` of the best.

    Returns a dict with lambda_z, intercept, adj_r2, n_points, start time, or
    NaNs if no window is acceptable.
    """
    time = np.asarray(time, dtype=np.float64)
    conc = np.asarray(conc, dtype=np.float64)
    f = (time > tmax) & (conc > 0)
    x_all = time[f]
    y_all = np.log(conc[f])
    results = []
    for n in range(min_points, len(x_all) + 1):
        x = x_all[-n:]
        y = y_all[-n:]
        slope, intercept, r_value, p_value, std_err = linregress(x, y)
        k = 1  # Number of predictors (time)
        adj_r2 = 1 - (1 - r_value**2) * (n - 1) / (n - k - 1)
        results.append({
            'lambda_z': -slope,
            'intercept': intercept,
            'adj_r2': adj_r2,
            'n_points': n,
            'lambda_z_time_start': x[0],
        })
    empty = {'lambda_z': np.nan, 'intercept': np.nan, 'adj_r2': np.nan,
             'n_points': 0, 'lambda_z_time_start': np.nan}
    if len(results) == 0:
        return empty
    res = pd.DataFrame(results)
    res = res.loc[res['lambda_z'] > 0, :]
    if len(res) == 0:
        return empty
    best = res['adj_r2'].max()
    res = res.loc[res['adj_r2'] >= best - adj_r2_tol, :]
    res = res.loc[res['n_points'] == res['n_points'].max(), :]
    out = res.iloc[0].to_dict()
    if out['adj_r2'] < adj_r2_threshold:
        return {**empty, 'adj_r2': out['adj_r2'], 'n_points': int(out['n_points'])}
    out['n_points'] = int(out['n_points'])
    return out


def nca_single_subject(time, conc, dose, adj_r2_threshold=0.8, min_points=3):
    time = np.asarray(time, dtype=np.float64)
    conc = np.asarray(conc, dtype=np.float64)
    order = np.argsort(time)
    time, conc = time[order], conc[order]

    cmax = conc.max()
    tmax = time[np.argmax(conc)]
    positive = conc > 0
    t_last = time[positive][-1] if positive.any() else np.nan
    c_last = conc[positive][-1] if positive.any() else np.nan

    last_f = time <= t_last
    auc_res = calculate_aucs(time[last_f], conc[last_f])
    auc_last = auc_res['section_auc_linup_logdown'].sum()
    auc_last_linear = auc(time[last_f], conc[last_f]) if last_f.sum() > 1 else 0.0
    aumc_last = section_auc(time[last_f], time[last_f] * conc[last_f]).sum()

    term = estimate_terminal_slope(time, conc, tmax, min_points=min_points,
                                   adj_r2_threshold=adj_r2_threshold)
    lambda_z = term['lambda_z']
    auc_inf = auc_last + extend_auc_to_inf(c_last, lambda_z)
    aumc_inf = aumc_last + extend_aumc_to_inf(t_last, c_last, lambda_z)
    cl_f = dose / auc_inf
    return {
        'cmax': cmax,
        'tmax': tmax,
        'c_last': c_last,
        't_last': t_last,
        'auc_last': auc_last,
        'auc_last_linear': auc_last_linear,
        'lambda_z': lambda_z,
        'lambda_z_adj_r2': term['adj_r2'],
        'lambda_z_n_points': term['n_points'],
        'lambda_z_time_start': term['lambda_z_time_start'],
        'half_life': np.log(2) / lambda_z,
        'auc_inf': auc_inf,
        'auc_pct_extrap': 100 * (auc_inf - auc_last) / auc_inf,
        'aumc_inf': aumc_inf,
        'mrt': aumc_inf / auc_inf,
        'cl_f': cl_f,
        'vz_f': cl_f / lambda_z,
    }


class NCA:
    """Non-compartmental analysis over a long concentration table."""
    __doc__ += nca_docstring

    def __init__(self, data: pd.DataFrame,
                 subject_id_col='ID',
                 conc_col='DV',
                 time_col='TIME',
                 dose_col='AMT',
                 verbose=False):
        self.subject_id_col = subject_id_col
        self.conc_col = conc_col
        self.time_col = time_col
        self.dose_col = dose_col
        self.verbose = verbose
        missing = [c for c in (subject_id_col, conc_col, time_col, dose_col)
                   if c not in data.columns]
        if len(missing) > 0:
            raise ValueError(f"`{missing}` is/are not provided in the NCA data")
        self.data = data.copy()
        self.nca_params_ = None

    @classmethod
    def from_dataset(cls, dataset, **kwargs):
        c: PKDataCols = dataset.cols
        return cls(dataset.observations(), subject_id_col=c.subject_id,
                   conc_col=c.conc, time_col=c.time, dose_col=c.dose, **kwargs)

    def estimate_all_nca_params(self, terminal_phase_adj_r2_thresh=0.8, min_points=3):
        res = []
        for sub, sub_df in self.data.groupby(self.subject_id_col):
            if self.verbose:
                print(f"NCA for subject {sub}")
            sub_res = nca_single_subject(
                sub_df[self.time_col].values,
                sub_df[self.conc_col].values,
                sub_df[self.dose_col].values[0],
                adj_r2_threshold=terminal_phase_adj_r2_thresh,
                min_points=min_points,
            )
            res.append({self.subject_id_col: sub, **sub_res})
        self.nca_params_ = pd.DataFrame(res)
        n_failed = int(self.nca_params_['lambda_z'].isnull().sum())
        if self.verbose and n_failed > 0:
            print(f"lambda_z could not be estimated for {n_failed} subjects")
        return self.nca_params_.copy()


def summarize_nca(nca_params: pd.DataFrame,
                  params=('cmax', 'tmax', 'auc_inf', 'half_life', 'cl_f', 'vz_f', 'lambda_z')):
    """Pooled summary of per-subject NCA parameters."""
    rows = []
    for p in params:
        vals = nca_params[p].dropna().to_numpy(dtype=np.float64)
        positive = vals[vals > 0]
        rows.append({
            'param': p,
            'n': len(vals),
            'mean': np.mean(vals) if len(vals) else np.nan,
            'sd': np.std(vals, ddof=1) if len(vals) > 1 else np.nan,
            'median': np.median(vals) if len(vals) else np.nan,
            'min': np.min(vals) if len(vals) else np.nan,
            'max': np.max(vals) if len(vals) else np.nan,
            'geom_mean': np.exp(np.mean(np.log(positive))) if len(positive) else np.nan,
            'cv_pct': 100 * np.std(vals, ddof=1) / np.mean(vals) if len(vals) > 1 else np.nan,
        })
    return pd.DataFrame(rows)


def nca_mean_profile(dataset, terminal_phase_adj_r2_thresh=0.8):
    """NCA of the naive population-average profile of a `PKDataset`."""
    c = dataset.cols
    profile = dataset.mean_profile()
    return nca_single_subject(profile[c.time].values, profile[c.conc].values,
                              profile[c.dose].values[0],
                              adj_r2_threshold=terminal_phase_adj_r2_thresh)
