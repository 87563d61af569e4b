import pandas as pd
from dataclasses import dataclass, field
import numpy as np


@dataclass(frozen=True)
class PKDataCols:
    """Standard column names of the long observation table."""

    subject_id: str = "ID"
    time: str = "TIME"
    conc: str = "DV"
    dose: str = "AMT"
    sex: str = "SEX"
    age: str = "AGE"

    @property
    def required(self):
        return [self.subject_id, self.time, self.conc, self.dose]

    @property
    def covariates(self):
        return [self.sex, self.age]

    @property
    def pd_dtypes(self):
        return {
            self.time: np.float64,
            self.conc: np.float64,
            self.dose: np.float64,
            self.sex: np.int64,
            self.age: np.float64,
        }

    def validate_df(self, df: pd.DataFrame, covariates=True):
        expected = self.required + (self.covariates if covariates else [])
        missing = [c for c in expected if c not in df.columns]
        if len(missing) > 0:
            raise ValueError(
                f"`{missing}` is/are not provided. {expected} should be provided."
            )
        return df


@dataclass
class FitSummaryRows:
    """Row accumulator for the fixed-effect summary table of a population fit."""

    model_coeff: list = field(default_factory=list)
    log_name: list = field(default_factory=list)
    model_coeff_dep_var: list = field(default_factory=list)
    population_coeff: list = field(default_factory=list)
    estimate: list = field(default_factory=list)
    se: list = field(default_factory=list)

    def append(self, model_coeff, log_name, estimate, se,
               model_coeff_dep_var=None, population_coeff=True):
        self.model_coeff.append(model_coeff)
        self.log_name.append(log_name)
        self.model_coeff_dep_var.append(model_coeff_dep_var)
        self.population_coeff.append(population_coeff)
        self.estimate.append(estimate)
        self.se.append(se)

    def df(self):
        df = pd.DataFrame({c: self.__dict__[c] for c in self.__dataclass_fields__})
        df = df.astype({
            "model_coeff": pd.StringDtype(),
            "log_name": pd.StringDtype(),
            "population_coeff": pd.BooleanDtype(),
            "estimate": np.float64,
            "se": np.float64,
        })
        # rse on the log scale, reported in percent of the natural-scale value
        df["rse_pct"] = 100 * df["se"]
        df.loc[~df["population_coeff"].astype(bool), "rse_pct"] = (
            100 * df["se"] / df["estimate"].abs()
        )
        return df.copy()
