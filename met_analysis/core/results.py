from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd


@dataclass(frozen=True)
class AnalysisWarning:
    code: str
    message: str


@dataclass
class SelectionIndexResult:
    table: pd.DataFrame
    standardized: pd.DataFrame
    lower_bounds: pd.Series
    means_policy: str
    model_policy: str
    lower_bound_policy: str
    warnings: List[AnalysisWarning] = field(default_factory=list)

    @property
    def ranking(self):
        """Genotype rows sorted best first, missing ranks last."""
        return self.table.sort_values("Rank", na_position="last", kind="mergesort")


@dataclass
class StabilityResult:
    trait: str
    parameters: pd.DataFrame
    anova: pd.DataFrame
    trial: object
    n_estimated: int
    p_estimated: float
    lambda_range: np.ndarray
    alpha_limit: Optional[np.ndarray]
    alpha_max: float
    lambda_limits: Tuple[float, float]
    confidence: float
    warnings: List[AnalysisWarning] = field(default_factory=list)

    @property
    def alpha(self):
        return self.parameters["alpha"]

    @property
    def lambda_(self):
        return self.parameters["lambda"]

    def to_dict(self):
        """JSON friendly view used by the HTTP layer."""
        return {
            "trait": self.trait,
            "parameters": [
                {"genotype": str(g), "alpha": float(row["alpha"]),
                 "lambda": float(row["lambda"]), "inference": row["Inference"]}
                for g, row in self.parameters.iterrows()
            ],
            "anova": {
                src: {k: (None if pd.isna(v) else float(v)) for k, v in row.items()}
                for src, row in self.anova.iterrows()
            },
            "n_estimated": int(self.n_estimated),
            "p_estimated": float(self.p_estimated),
            "lambda_range": [float(x) for x in self.lambda_range],
            "alpha_limit": None if self.alpha_limit is None else [float(x) for x in self.alpha_limit],
            "alpha_max": float(self.alpha_max),
            "lambda_limits": [float(x) for x in self.lambda_limits],
            "confidence": float(self.confidence),
            "warnings": [{"code": w.code, "message": w.message} for w in self.warnings],
        }
