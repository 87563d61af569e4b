import inspect
import ast
import hashlib
import textwrap
import mlflow
import numpy as np
import pandas as pd

from .diffeqs import OneCompartmentAbsorptionKe


class _DocstringRemover(ast.NodeTransformer):
    """
    An AST transformer that removes docstrings from ClassDef, FunctionDef,
    and AsyncFunctionDef nodes.
    """

    def _remove_docstring(self, node):
        if ast.get_docstring(node, clean=False) is not None:
            if node.body and isinstance(node.body[0], ast.Expr):
                node.body = node.body[1:] or [ast.Pass()]
        self.generic_visit(node)
        return node

    def visit_ClassDef(self, node: ast.ClassDef) -> ast.ClassDef:
        return self._remove_docstring(node)

    def visit_FunctionDef(self, node: ast.FunctionDef) -> ast.FunctionDef:
        return self._remove_docstring(node)

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> ast.AsyncFunctionDef:
        return self._remove_docstring(node)


def get_source_without_docstrings(obj) -> str:
    """
    Source text of a class or function with all docstrings removed. Comments
    are dropped as a side effect of the AST round trip, so two definitions
    that differ only in documentation give the same text (and hash).
    """
    source_text = inspect.getsource(obj)
    tree = _DocstringRemover().visit(ast.parse(textwrap.dedent(source_text)))
    ast.fix_missing_locations(tree)
    return ast.unparse(tree)


def generate_contents_hash(contents: str):
    hasher = hashlib.sha256()
    hasher.update(contents.encode('utf-8'))
    return hasher.hexdigest()


class MLflowCallback:
    """
    Per-iteration logger for the SAEM estimator. Called as
    `callback(iteration, state)` where `state` holds the current theta
    (per-parameter [mu, betas...]), omega2, the error parameters and the
    step size.
    """

    def __init__(self, error_model: str, param_names=OneCompartmentAbsorptionKe.param_names,
                 log_every: int = 1):
        self.iteration = 0
        self.error_model = error_model
        self.param_names = tuple(param_names)
        self.log_every = log_every

    def __call__(self, iteration, state):
        self.iteration = iteration
        if iteration % self.log_every != 0:
            return
        cov_model = state["covariate_model"]
        for k, p in enumerate(self.param_names):
            theta_k = state["theta"][k]
            mlflow.log_metric(f'param_{p}_pop_value', theta_k[0], step=iteration)
            mlflow.log_metric(f'exp_param_{p}_pop_value', np.exp(theta_k[0]), step=iteration)
            for j, c in enumerate(cov_model.covariates_for(p)):
                mlflow.log_metric(f'param_{p}__{c}_value', theta_k[j + 1], step=iteration)
        self.log_vals_names(state["omega2"], [f'omega2_{p}' for p in self.param_names])
        if self.error_model in ("additive", "combined"):
            mlflow.log_metric('error_a', state["a"], step=iteration)
        if self.error_model in ("proportional", "combined"):
            mlflow.log_metric('error_b', state["b"], step=iteration)
        mlflow.log_metric('sa_step_size', state["gamma"], step=iteration)

    def log_vals_names(self, vals, names):
        iter_obj = zip(vals, names)
        for val, name in iter_obj:
            mlflow.log_metric(name, val, step=self.iteration)


def log_population_fit(fit_result, model_class=OneCompartmentAbsorptionKe):
    """Log the settings, final estimates and fit statistics of a population fit to the active run."""
    opts = fit_result.options
    mlflow.log_param('model_name', fit_result.model_name)
    mlflow.log_param('error_model', fit_result.error_model)
    mlflow.log_param('seed', opts.seed)
    mlflow.log_param('n_iter_exploration', opts.n_iter_exploration)
    mlflow.log_param('n_iter_smoothing', opts.n_iter_smoothing)
    mlflow.log_param('ll_method', opts.ll_method)
    mlflow.log_param('covariate_effects',
                     [f"{p}__{c}" for p, c in fit_result.covariate_model.effect_names()])

    ode_class_str = get_source_without_docstrings(model_class)
    mlflow.log_text(ode_class_str, 'ode_definition.py')
    mlflow.log_param('ode_definition_hash', generate_contents_hash(ode_class_str))
    mlflow.log_param('ode_class_name', model_class.__name__)

    for _, row in fit_result.fixed_effects.iterrows():
        mlflow.log_metric(f"param_{row['log_name']}_estimate", row['estimate'])
        if np.isfinite(row['se']):
            mlflow.log_metric(f"param_{row['log_name']}_se", row['se'])
    for p, val in fit_result.omega2.items():
        mlflow.log_metric(f'omega2_{p}', val)
    for n, val in fit_result.error_params.items():
        mlflow.log_metric(f'error_{n}', val)
    for method, val in fit_result.neg2ll.items():
        mlflow.log_metric(f'neg2ll_{method}', val)
    ic = fit_result.information_criteria()
    mlflow.log_metric('aic', ic['aic'])
    mlflow.log_metric('bic', ic['bic'])
    mlflow.log_metric('converged', int(fit_result.converged))
    mlflow.log_table(pd.DataFrame(fit_result.fixed_effects).astype({'log_name': str, 'model_coeff': str}),
                     'fit_result_summary.json')
    mlflow.log_table(fit_result.individual_params, 'fitted_subject_params.json')
    mlflow.log_table(fit_result.etas, 'subject_level_effects.json')
