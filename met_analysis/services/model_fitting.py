"""
Linear and mixed model fitting used by the analyzers.

Two capabilities share one result type:

- ``FixedEffectsModel``: ordinary least squares with categorical terms and a
  sequential (type I) ANOVA table, the classical layout for balanced trials.
- ``MixedEffectsModel``: fixed categorical terms plus random terms estimated
  by REML. A single random factor is fitted as a grouping factor; several
  (crossed or nested) random terms are fitted as variance components inside
  one group holding every observation.

Terms are tuples of column names, ``("env", "rep")`` meaning the interaction
(or nesting) of both factors. Column names are replaced by short codes before
building formulas so arbitrary CSV headers are safe.
"""

import logging
import warnings
from dataclasses import dataclass, field
from typing import List, Optional

import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf
from statsmodels.regression.mixed_linear_model import MixedLM
from statsmodels.tools.sm_exceptions import ConvergenceWarning

logger = logging.getLogger(__name__)

_RESPONSE = "y"
_GROUP = "_all"


@dataclass
class ModelFit:
    fixed_effects: pd.Series
    anova: Optional[pd.DataFrame]
    result: object
    warnings: List[str] = field(default_factory=list)

    def level_effects(self, factor):
        """Fixed effects of a no-intercept factor keyed by factor level."""
        prefix = f"C({factor})["
        effects = {}
        for name, value in self.fixed_effects.items():
            if name.startswith(prefix) and name.endswith("]"):
                effects[name[len(prefix):-1]] = value
        return pd.Series(effects, dtype=float)


def _as_terms(terms):
    return [(t,) if isinstance(t, str) else tuple(t) for t in terms]


def _prepare(df, response, terms):
    factors = []
    for term in terms:
        for col in term:
            if col not in factors:
                factors.append(col)
    codes = {col: f"x{i}" for i, col in enumerate(factors)}

    work = pd.DataFrame({_RESPONSE: pd.to_numeric(df[response], errors="coerce")})
    for col, code in codes.items():
        work[code] = df[col].astype(str)
    work = work.dropna(subset=[_RESPONSE]).reset_index(drop=True)
    return work, codes


def _term_formula(term, codes):
    return ":".join(f"C({codes[col]})" for col in term)


def _readable(name, codes):
    for col, code in codes.items():
        name = name.replace(f"C({code})", f"C({col})")
    return name


class FixedEffectsModel:
    def __init__(self, response, terms, intercept=True):
        self.response = response
        self.terms = _as_terms(terms)
        self.intercept = intercept

    def fit(self, df):
        work, codes = _prepare(df, self.response, self.terms)
        rhs = " + ".join(_term_formula(t, codes) for t in self.terms)
        if not self.intercept:
            rhs = "0 + " + rhs
        formula = f"{_RESPONSE} ~ {rhs}"
        logger.debug("OLS fit %s on %d observations", formula, len(work))

        res = smf.ols(formula, data=work).fit()

        table = sm.stats.anova_lm(res, typ=1)
        labels = {_term_formula(t, codes): ":".join(t) for t in self.terms}
        table = table.rename(index=lambda k: labels.get(k, k))
        table = table.rename(columns={"sum_sq": "SS", "mean_sq": "MS"})[["df", "SS", "MS"]]

        params = res.params.rename(index=lambda k: _readable(k, codes))
        return ModelFit(fixed_effects=params, anova=table, result=res)


class MixedEffectsModel:
    def __init__(self, response, fixed, random, intercept=False, reml=True):
        self.response = response
        self.fixed = _as_terms(fixed)
        self.random = _as_terms(random)
        self.intercept = intercept
        self.reml = reml

    def fit(self, df):
        if not self.random:
            raise ValueError("A mixed model needs at least one random term.")
        work, codes = _prepare(df, self.response, self.fixed + self.random)
        rhs = " + ".join(_term_formula(t, codes) for t in self.fixed)
        if not self.intercept:
            rhs = "0 + " + rhs
        formula = f"{_RESPONSE} ~ {rhs}"

        if len(self.random) == 1 and len(self.random[0]) == 1:
            groups = codes[self.random[0][0]]
            model = MixedLM.from_formula(formula, groups=groups, data=work)
        else:
            work[_GROUP] = 1
            vc = {":".join(t): "0 + " + _term_formula(t, codes) for t in self.random}
            model = MixedLM.from_formula(formula, groups=_GROUP, vc_formula=vc, data=work)
        logger.debug("REML fit %s with random terms %s", formula, self.random)

        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always", ConvergenceWarning)
            res = model.fit(reml=self.reml)

        notices = []
        for w in caught:
            if issubclass(w.category, ConvergenceWarning):
                notices.append(str(w.message))
                logger.warning("REML fit of %s: %s", self.response, w.message)
            else:
                warnings.warn_explicit(w.message, w.category, w.filename, w.lineno)

        params = res.fe_params.rename(index=lambda k: _readable(k, codes))
        return ModelFit(fixed_effects=params, anova=None, result=res, warnings=notices)
