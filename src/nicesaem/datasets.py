import warnings
from dataclasses import dataclass, field
from typing import Dict

import numpy as np
import pandas as pd

from .diffeqs import one_compartment_oral_conc
from .pd_templates import PKDataCols

DEFAULT_SAMPLE_TIMES = np.array([0.0, 0.25, 0.5, 1.0, 1.5, 2.0, 3.0, 4.0, 6.0, 8.0, 10.0])


def _prepare_observations(df: pd.DataFrame, cols: PKDataCols) -> pd.DataFrame:
    df = df.copy()
    cols.validate_df(df)
    df = df.astype({c: t for c, t in cols.pd_dtypes.items() if c != cols.sex})
    if df[cols.sex].isnull().any():
        raise ValueError(f"`{cols.sex}` must not contain missing values")
    df[cols.sex] = df[cols.sex].astype(np.int64)
    if not df[cols.sex].isin([0, 1]).all():
        raise ValueError(f"`{cols.sex}` must be coded 0/1")

    if (df[cols.time] < 0).any():
        raise ValueError(f"`{cols.time}` must be non-negative")
    predose = df[cols.time] == 0
    df.loc[predose & df[cols.conc].isnull(), cols.conc] = 0.0
    missing_dv = df[cols.conc].isnull()
    if missing_dv.any():
        warnings.warn(
            f"Dropping {int(missing_dv.sum())} post-dose rows with missing `{cols.conc}`"
        )
        df = df.loc[~missing_dv, :].copy()
    if (df[cols.conc] < 0).any():
        raise ValueError(f"`{cols.conc}` must be non-negative")

    # one dose record per subject, carried to every row of that subject
    n_doses = df.groupby(cols.subject_id)[cols.dose].nunique()
    if (n_doses > 1).any():
        bad = n_doses.index[n_doses > 1].to_list()
        raise ValueError(f"Subjects {bad} have more than one distinct `{cols.dose}`")
    if (n_doses == 0).any():
        bad = n_doses.index[n_doses == 0].to_list()
        raise ValueError(f"Subjects {bad} have no `{cols.dose}` record")
    df[cols.dose] = df.groupby(cols.subject_id)[cols.dose].transform("first")

    for c in cols.covariates:
        n_vals = df.groupby(cols.subject_id)[c].nunique()
        if (n_vals > 1).any():
            bad = n_vals.index[n_vals > 1].to_list()
            raise ValueError(f"Covariate `{c}` is not constant within subjects {bad}")

    return (df
            .sort_values([cols.subject_id, cols.time])
            .reset_index(drop=True))


@dataclass(frozen=True)
class PKDataset:
    """
    Immutable long table of concentration observations, one single oral dose
    per subject at time 0. Accessors return copies.
    """

    data: pd.DataFrame
    cols: PKDataCols = field(default_factory=PKDataCols)

    def __post_init__(self):
        object.__setattr__(self, "data", _prepare_observations(self.data, self.cols))

    @property
    def subject_ids(self):
        return np.sort(self.data[self.cols.subject_id].unique())

    @property
    def n_subjects(self):
        return len(self.subject_ids)

    def observations(self) -> pd.DataFrame:
        """Full observed series, pre-dose rows included (for plotting)."""
        return self.data.copy()

    def fitting_data(self) -> pd.DataFrame:
        """Observations used for model fitting, the TIME == 0 rows excluded."""
        return self.data.loc[self.data[self.cols.time] != 0, :].reset_index(drop=True)

    def dose_records(self) -> pd.DataFrame:
        c = self.cols
        doses = (self.data
                 .groupby(c.subject_id, as_index=False)[c.dose]
                 .first())
        doses["DOSE_TIME"] = 0.0
        return doses

    def covariates(self) -> pd.DataFrame:
        c = self.cols
        return (self.data
                .groupby(c.subject_id, as_index=False)[c.covariates]
                .first())

    def subject_series(self) -> Dict[object, pd.DataFrame]:
        c = self.cols
        return {sub: sub_df.reset_index(drop=True).copy()
                for sub, sub_df in self.data.groupby(c.subject_id)}

    def mean_profile(self, include_predose=True) -> pd.DataFrame:
        """Naive population-average series: mean concentration at each nominal time."""
        c = self.cols
        df = self.data if include_predose else self.fitting_data()
        profile = (df
                   .groupby(c.time)[c.conc]
                   .agg(["mean", "std", "count"])
                   .reset_index()
                   .rename(columns={"mean": c.conc, "std": f"{c.conc}_sd",
                                    "count": "n"}))
        profile[c.dose] = self.dose_records()[c.dose].mean()
        return profile


def load_pk_data(path, rename: Dict[str, str] = None, cols: PKDataCols = None,
                 **read_csv_kwargs) -> PKDataset:
    """
    Read a delimited observation table into a `PKDataset`.

    Args:
        path: file path or buffer accepted by `pandas.read_csv`.
        rename: mapping from source column names to the standard names of `cols`,
            e.g. {"id": "ID", "time": "TIME", "conc": "DV", "dose": "AMT",
            "sex": "SEX", "age": "AGE"}.
    """
    cols = PKDataCols() if cols is None else cols
    df = pd.read_csv(path, **read_csv_kwargs)
    if rename is not None:
        df = df.rename(columns=rename)
    return PKDataset(df, cols=cols)


def simulate_pk_dataset(
    n_subjects=110,
    times=DEFAULT_SAMPLE_TIMES,
    dose=100.0,
    typical_values: Dict[str, float] = None,
    omega_sd: Dict[str, float] = None,
    covariate_effects: Dict[str, Dict[str, float]] = None,
    error_model="combined",
    error_a=0.02,
    error_b=0.1,
    age_range=(20.0, 80.0),
    seed=1234,
    cols: PKDataCols = None,
    return_params=False,
):
    """
    Simulate a single-dose oral study from the one-compartment absorption model.

    Individual parameters are log-normal around `typical_values` with optional
    linear covariate effects on the log scale:
        log(psi_ik) = log(typical_k) + sum_j beta_kj * c_ij + eta_ik
    """
    cols = PKDataCols() if cols is None else cols
    typical_values = ({"ka": 1.238, "vd": 101.361, "ke": 0.498}
                      if typical_values is None else typical_values)
    omega_sd = {"ka": 0.3, "vd": 0.2, "ke": 0.25} if omega_sd is None else omega_sd
    covariate_effects = {} if covariate_effects is None else covariate_effects
    rng = np.random.default_rng(seed)

    ids = np.arange(1, n_subjects + 1)
    sex = rng.integers(0, 2, size=n_subjects)
    age = np.round(rng.uniform(age_range[0], age_range[1], size=n_subjects), 1)
    cov_values = {cols.sex: sex, cols.age: age}

    psi = {}
    for name in ("ka", "vd", "ke"):
        log_psi = np.log(typical_values[name]) + rng.normal(0.0, omega_sd.get(name, 0.0), n_subjects)
        for cov_name, beta in covariate_effects.get(name, {}).items():
            log_psi = log_psi + beta * cov_values[cov_name]
        psi[name] = np.exp(log_psi)

    times = np.asarray(times, dtype=np.float64)
    n_t = len(times)
    t_long = np.tile(times, n_subjects)
    ka = np.repeat(psi["ka"], n_t)
    vd = np.repeat(psi["vd"], n_t)
    ke = np.repeat(psi["ke"], n_t)
    f = one_compartment_oral_conc(t_long, ka, vd, ke, dose=dose)
    if error_model == "additive":
        g = np.full_like(f, error_a)
    elif error_model == "proportional":
        g = error_b * f
    elif error_model == "combined":
        g = error_a + error_b * f
    elif error_model is None:
        g = np.zeros_like(f)
    else:
        raise ValueError(f"Unknown error model `{error_model}`")
    y = f + g * rng.standard_normal(len(f))
    y = np.clip(y, 0.0, None)
    y[t_long == 0] = 0.0

    df = pd.DataFrame({
        cols.subject_id: np.repeat(ids, n_t),
        cols.dose: dose,
        cols.time: t_long,
        cols.conc: y,
        cols.sex: np.repeat(sex, n_t),
        cols.age: np.repeat(age, n_t),
    })
    dataset = PKDataset(df, cols=cols)
    if return_params:
        params = pd.DataFrame({cols.subject_id: ids, **psi})
        return dataset, params
    return dataset

