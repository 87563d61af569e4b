# %%
import sys
import matplotlib.pyplot as plt

from nicesaem.datasets import load_pk_data, simulate_pk_dataset
from nicesaem.diagnostics import (plot_observed_profiles, plot_individual_fits,
                                  predict_individual_curves, compute_residuals, plot_gof)
from nicesaem.nca import NCA, summarize_nca, nca_mean_profile
from nicesaem.saem import SAEMOptions
from nicesaem.utils import NaivePooledModel
from nicesaem.workflow import run_analysis, default_covariate_model
from nicesaem.covariates import stepwise_covariate_search

# %%
# a csv path on the command line, otherwise a simulated study of the same shape
if len(sys.argv) > 1:
    data = load_pk_data(sys.argv[1], rename={"id": "ID", "time": "TIME", "conc": "DV",
                                              "dose": "AMT", "sex": "SEX", "age": "AGE"})
else:
    data = simulate_pk_dataset(n_subjects=110, seed=1234,
                               covariate_effects={"vd": {"SEX": 0.2}})
data.observations().head()

# %%
plot_observed_profiles(data, log_scale=False)
plot_observed_profiles(data, log_scale=True)

# %%
nca_params = NCA.from_dataset(data).estimate_all_nca_params()
summarize_nca(nca_params)

# %%
nca_mean_profile(data)

# %%
naive = NaivePooledModel(verbose=True).fit(data.mean_profile())
naive.summary()

# %%
options = SAEMOptions(seed=632545, n_iter_exploration=300, n_iter_smoothing=100,
                      ll_method="is", verbose=True)
res = run_analysis(data, covariate_model=default_covariate_model(), saem_options=options,
                   criterion="aic", make_plots=True, verbose=True)
res.comparison

# %%
res.best_error_model

# %%
res.best_fit.summary()

# %%
fig, ax = plt.subplots(1, 2, figsize=(12, 5))
plot_individual_fits(res.best_fit, data, ids=data.subject_ids[:12], ax=ax[0])
plot_individual_fits(res.best_fit, data, ids=data.subject_ids[:12], ax=ax[1], log_scale=True)

# %%
curves = predict_individual_curves(res.best_fit, t_max=10.0)
curves.groupby("TIME")["IPRED"].describe().head()

# %%
plot_gof(compute_residuals(res.best_fit, data), hue="SEX")

# %%
res.covariate_fit.covariate_effects

# %%
res.sex_tests

# %%
res.age_tests

# %%
# covariance modelling, bootstrap qualification and dose simulation are not part of this analysis
try:
    stepwise_covariate_search(data, res.best_fit)
except NotImplementedError as e:
    print(e)
