# Response families
from .families import ResponseFamily, Poisson, NegativeBinomial, Bernoulli, get_family

# Model fitting, selection and checks
from .glmm import RandomInterceptGLMM, GLMMResults, ModelFitError
from .selection import (
    SelectionResult,
    dredge,
    iter_term_subsets,
    build_formula,
    complete_cases,
    term_importance,
    compare_families,
)
from .diagnostics import ResidualDiagnostics, simulate_residuals

__all__ = [
    "ResponseFamily",
    "Poisson",
    "NegativeBinomial",
    "Bernoulli",
    "get_family",
    "RandomInterceptGLMM",
    "GLMMResults",
    "ModelFitError",
    "SelectionResult",
    "dredge",
    "iter_term_subsets",
    "build_formula",
    "complete_cases",
    "term_importance",
    "compare_families",
    "ResidualDiagnostics",
    "simulate_residuals",
]
