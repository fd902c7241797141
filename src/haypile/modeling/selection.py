"""
Exhaustive subset model selection ("dredge") over candidate fixed-effect terms.

The full model is fitted on the complete cases of every variable it uses; each
sub-model is then fitted on exactly the same rows so information criteria are
comparable. Interactions only appear alongside all of their main effects.
"""

import itertools
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm

from .. import config
from .glmm import GLMMResults, ModelFitError, RandomInterceptGLMM

logger = logging.getLogger(__name__)

CRITERIA = ("aicc", "aic", "bic")


def term_variables(term: str) -> List[str]:
    """Data columns referenced by a formula term, e.g. 'C(year):elev' -> ['year', 'elev']"""
    variables = []
    for part in term.split(":"):
        part = part.strip()
        match = re.fullmatch(r"C\(\s*([A-Za-z_][A-Za-z0-9_]*)\s*(?:,.*)?\)", part)
        variables.append(match.group(1) if match else part)
    return variables


def is_interaction(term: str) -> bool:
    return ":" in term


def iter_term_subsets(terms: Sequence[str]) -> Iterator[Tuple[str, ...]]:
    """
    Yield every subset of candidate terms that respects marginality.

    Subsets come in increasing size, starting with the intercept-only model (),
    and keep the order of `terms`. An interaction 'a:b' is only included when
    both 'a' and 'b' are.
    """
    terms = list(terms)
    for size in range(len(terms) + 1):
        for subset in itertools.combinations(terms, size):
            chosen = set(subset)
            ok = True
            for term in subset:
                if is_interaction(term):
                    parts = [p.strip() for p in term.split(":")]
                    if not all(p in chosen for p in parts):
                        ok = False
                        break
            if ok:
                yield subset


def build_formula(response: str, terms: Sequence[str]) -> str:
    return f"{response} ~ " + (" + ".join(terms) if terms else "1")


def complete_cases(data: pd.DataFrame, columns: Sequence[str]) -> pd.DataFrame:
    """Rows with no missing values in `columns`"""
    columns = list(dict.fromkeys(columns))
    missing = [c for c in columns if c not in data.columns]
    if missing:
        raise ValueError(f"Columns not found in model data: {missing}")
    kept = data.dropna(subset=columns)
    if len(kept) < len(data):
        logger.info(f"Complete-case filter kept {len(kept)} of {len(data)} rows")
    return kept.reset_index(drop=True)


def model_rows(data: pd.DataFrame, response: str, terms: Sequence[str], groups: str,
               exposure: Optional[str] = None) -> pd.DataFrame:
    """
    Rows every candidate model is fitted on.

    Complete cases of the response, grouping column, term variables and exposure.
    With an exposure, rows whose exposure is zero or negative are dropped too,
    since density (and the log offset) is undefined there.
    """
    variables = [response, groups] + [v for t in terms for v in term_variables(t)]
    if exposure is not None:
        variables.append(exposure)
    kept = complete_cases(data, variables)
    if exposure is not None:
        positive = kept[exposure] > 0
        if not positive.all():
            logger.info(f"Dropping {int((~positive).sum())} rows with non-positive {exposure}")
            kept = kept[positive].reset_index(drop=True)
    return kept


def check_response_varies(data: pd.DataFrame, response: str):
    """Raise ValueError when the response takes a single value on the model rows"""
    n_values = data[response].nunique()
    if n_values < 2:
        raise ValueError(
            f"Response '{response}' has no variation ({n_values} distinct value(s) "
            f"in {len(data)} rows); models cannot be compared"
        )


@dataclass
class SelectionResult:
    """Ranked candidate models from an exhaustive subset search"""
    table: pd.DataFrame
    models: Dict[str, GLMMResults]
    full_model: GLMMResults
    data: pd.DataFrame
    criterion: str
    terms: List[str]
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def top_formula(self) -> str:
        return self.table.iloc[0]["formula"]

    @property
    def top_model(self) -> GLMMResults:
        return self.models[self.top_formula]

    def within_delta(self, delta: float = 2.0) -> pd.DataFrame:
        """Models whose criterion is within `delta` of the best"""
        return self.table[self.table["delta"] <= delta]


def dredge(data: pd.DataFrame, response: str, terms: Sequence[str] = config.CANDIDATE_TERMS,
           groups: str = config.SITE_COLUMN, family: str = config.DEFAULT_FAMILY,
           exposure: Optional[str] = None, criterion: str = config.DEFAULT_CRITERION,
           n_quad: int = config.N_QUADRATURE) -> SelectionResult:
    """
    Fit the full model, then every marginality-respecting sub-model, and rank them.

    Args:
        data: Model dataset
        response: Response column
        terms: Candidate fixed-effect terms (patsy syntax)
        groups: Random-intercept grouping column
        family: Response family name
        exposure: Exposure column for count models (offset = log exposure)
        criterion: "aicc", "aic" or "bic"
        n_quad: Gauss-Hermite nodes

    Returns:
        SelectionResult with a table ranked by the criterion (best first)

    Raises:
        ModelFitError: if the full model does not converge
        ValueError: if the response is constant on the model rows
    """
    criterion = criterion.lower()
    if criterion not in CRITERIA:
        raise ValueError(f"Unknown criterion: {criterion}. Available: {CRITERIA}")

    terms = list(terms)
    model_data = model_rows(data, response, terms, groups, exposure)
    check_response_varies(model_data, response)

    full_formula = build_formula(response, terms)
    logger.info(f"Fitting full model: {full_formula} ({family}, n={len(model_data)})")
    full = RandomInterceptGLMM(full_formula, model_data, groups=groups, family=family,
                               exposure=exposure, n_quad=n_quad).fit()

    models = {full_formula: full}
    failed = {}
    subsets = list(iter_term_subsets(terms))
    for subset in subsets:
        formula = build_formula(response, subset)
        if formula in models:
            continue
        try:
            models[formula] = RandomInterceptGLMM(formula, model_data, groups=groups,
                                                  family=family, exposure=exposure,
                                                  n_quad=n_quad).fit()
        except ModelFitError as e:
            logger.warning(f"Skipping sub-model: {e}")
            failed[formula] = str(e)

    logger.info(f"Fitted {len(models)} of {len(subsets)} candidate models")

    rows = []
    for subset in subsets:
        formula = build_formula(response, subset)
        if formula not in models:
            continue
        res = models[formula]
        row = {"formula": formula}
        for term in terms:
            row[term] = "+" if term in subset else ""
        row.update({
            "df": res.k_params,
            "nobs": res.nobs,
            "logLik": res.llf,
            "AIC": res.aic,
            "AICc": res.aicc,
            "BIC": res.bic,
        })
        rows.append(row)

    table = pd.DataFrame(rows)
    score_col = {"aicc": "AICc", "aic": "AIC", "bic": "BIC"}[criterion]
    table["delta"] = table[score_col] - table[score_col].min()
    rel = np.exp(-0.5 * table["delta"])
    table["weight"] = rel / rel.sum()
    table = table.sort_values([score_col, "df"]).reset_index(drop=True)
    table.insert(0, "rank", np.arange(1, len(table) + 1))

    return SelectionResult(table=table, models=models, full_model=full, data=model_data,
                           criterion=criterion, terms=terms, failed=failed)


def term_importance(selection: SelectionResult) -> pd.DataFrame:
    """Sum of model weights over the models containing each term"""
    table = selection.table
    rows = []
    for term in selection.terms:
        included = table[term] == "+"
        rows.append({
            "term": term,
            "importance": float(table.loc[included, "weight"].sum()),
            "n_models": int(included.sum()),
        })
    return pd.DataFrame(rows).sort_values("importance", ascending=False).reset_index(drop=True)


def compare_families(data: pd.DataFrame, response: str,
                     terms: Sequence[str] = config.CANDIDATE_TERMS,
                     groups: str = config.SITE_COLUMN,
                     families: Sequence[str] = ("poisson", "nbinom2"),
                     exposure: Optional[str] = None,
                     n_quad: int = config.N_QUADRATURE) -> pd.DataFrame:
    """
    Fit the full count model under each family on the same rows.

    Also reports the Pearson dispersion ratio of a fixed-effects Poisson GLM as a
    quick overdispersion check (values well above 1 favour the negative binomial).
    """
    terms = list(terms)
    model_data = model_rows(data, response, terms, groups, exposure)
    formula = build_formula(response, terms)

    offset = np.log(model_data[exposure].to_numpy(dtype=float)) if exposure else None
    glm = sm.GLM.from_formula(formula, model_data, family=sm.families.Poisson(),
                              offset=offset).fit()
    dispersion = float(glm.pearson_chi2 / glm.df_resid) if glm.df_resid > 0 else np.nan

    rows = []
    for name in families:
        try:
            res = RandomInterceptGLMM(formula, model_data, groups=groups, family=name,
                                      exposure=exposure, n_quad=n_quad).fit()
        except ModelFitError as e:
            logger.warning(f"Family comparison: {e}")
            rows.append({"family": name, "converged": False})
            continue
        rows.append({
            "family": name,
            "converged": True,
            "df": res.k_params,
            "logLik": res.llf,
            "AIC": res.aic,
            "AICc": res.aicc,
            "theta": res.theta,
            "site_sd": res.sigma,
        })

    table = pd.DataFrame(rows)
    table["poisson_glm_dispersion"] = dispersion
    return table
