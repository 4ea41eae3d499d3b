import io
import logging
from datetime import datetime

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns
from docx import Document
from docx.shared import Inches
from docx.enum.text import WD_ALIGN_PARAGRAPH

from met_analysis.core.errors import ConfigurationError
from met_analysis.core.results import AnalysisWarning, SelectionIndexResult
from met_analysis.services.mean_aggregation import aggregate_means
from met_analysis.services.model_fitting import MixedEffectsModel
from met_analysis.services.trial_check import nested_levels, sorted_levels

logger = logging.getLogger(__name__)

MEANS_POLICIES = ("single", "fitted")
MODEL_POLICIES = ("gxe", "g+e")
LOWER_BOUND_POLICIES = ("min", "adjusted-min")


def standardize_means(means):
    """Z-score every trait column across genotypes, skipping missing means."""
    return (means - means.mean()) / means.std(ddof=1)


def lower_bounds(standardized, policy="min", n_geno=None):
    """Per-trait lower bound k.

    ``min`` takes the smallest standardized value. ``adjusted-min`` uses
    (n * min - max) / (n - 1), which lies below the minimum and approaches it
    as the number of genotypes grows.
    """
    if policy not in LOWER_BOUND_POLICIES:
        raise ConfigurationError(f"Unknown lower bound policy '{policy}'. Use one of {LOWER_BOUND_POLICIES}.")
    mins = standardized.min()
    if policy == "min":
        return mins
    n = len(standardized) if n_geno is None else n_geno
    return (n * mins - standardized.max()) / (n - 1)


def combine_index(standardized, bounds, traits):
    index = standardized[traits[0]] - bounds[traits[0]]
    for trait in traits[1:]:
        index = index * (standardized[trait] - bounds[trait])
    return index


def rank_index(index):
    # Ties share the best rank of their group; missing index stays unranked
    ranks = index.rank(ascending=False, method="min", na_option="keep")
    return ranks.astype("Int64")


class ElstonIndexAnalyzer:
    def __init__(self, df, traits, geno_col, env_col=None, rep_col=None,
                 means="single", model="gxe", lb="min"):
        self.df = df.copy()
        self.traits = [traits] if isinstance(traits, str) else list(traits)
        self.geno_col = geno_col
        self.env_col = env_col or None
        self.rep_col = rep_col or None
        self.means = means
        self.model = model
        self.lb = lb

        self.genotypes = []
        self.warnings = []
        self.mean_table = None
        self.result = None

    def validate(self):
        if self.means not in MEANS_POLICIES:
            raise ConfigurationError(f"Unknown means policy '{self.means}'. Use one of {MEANS_POLICIES}.")
        if self.model not in MODEL_POLICIES:
            raise ConfigurationError(f"Unknown model '{self.model}'. Use one of {MODEL_POLICIES}.")
        if self.lb not in LOWER_BOUND_POLICIES:
            raise ConfigurationError(f"Unknown lower bound policy '{self.lb}'. Use one of {LOWER_BOUND_POLICIES}.")
        if not self.traits:
            raise ConfigurationError("At least one trait is required.")

        if self.means == "fitted":
            missing = [name for name, col in (("env", self.env_col), ("rep", self.rep_col)) if col is None]
            if missing:
                raise ConfigurationError(
                    f"For 'fitted' means you must specify the arguments {' and '.join(repr(m) for m in missing)}.")

        keys = [c for c in (self.geno_col, self.env_col, self.rep_col) if c is not None]
        for col in keys + self.traits:
            if col not in self.df.columns:
                raise ConfigurationError(f"Column '{col}' not found in data.")

        self.df = self.df.dropna(subset=keys)
        self.genotypes = sorted_levels(self.df[self.geno_col])
        for col in keys:
            self.df[col] = self.df[col].astype(str).str.strip()
        if self.env_col is not None and self.rep_col is not None:
            self.df[self.rep_col] = nested_levels(self.df, self.env_col, self.rep_col)
        for trait in self.traits:
            self.df[trait] = pd.to_numeric(self.df[trait], errors="coerce")

        if len(self.genotypes) < 2:
            raise ConfigurationError("At least 2 genotypes are required to rank by an index.")

    def compute_means(self):
        if self.means == "fitted":
            return self._fitted_means()

        if self.env_col is not None and self.rep_col is not None:
            # Cell means first so unequal replication does not weight environments
            cells = aggregate_means(self.df, self.traits, [self.geno_col, self.env_col])
            means = aggregate_means(cells, self.traits, self.geno_col)
        else:
            means = aggregate_means(self.df, self.traits, self.geno_col)
        return means.set_index(self.geno_col).reindex(self.genotypes)[self.traits]

    def _fitted_means(self):
        g, e, r = self.geno_col, self.env_col, self.rep_col
        if self.model == "gxe":
            random = [(g, e), (e,), (e, r)]
        else:
            random = [(e,)]

        columns = {}
        for trait in self.traits:
            fit = MixedEffectsModel(trait, fixed=[(g,)], random=random, intercept=False).fit(self.df)
            columns[trait] = fit.level_effects(g).reindex(self.genotypes)
            for notice in dict.fromkeys(fit.warnings):
                self.warnings.append(AnalysisWarning("convergence", f"{trait}: {notice}"))
            logger.debug("Fitted %s means for %s", self.model, trait)
        return pd.DataFrame(columns, index=pd.Index(self.genotypes, name=g))[self.traits]

    def run_analysis(self):
        # 1. Genotypic means
        self.mean_table = self.compute_means()

        # 2. Standardized means
        standardized = standardize_means(self.mean_table)

        # 3. Lower bounds
        bounds = lower_bounds(standardized, self.lb, n_geno=len(self.genotypes))

        # 4. Elston index and rank
        index = combine_index(standardized, bounds, self.traits)

        table = self.mean_table.copy()
        table["Index"] = index
        table["Rank"] = rank_index(index)
        table = table.reset_index().rename(columns={"index": self.geno_col})

        if index.isna().any():
            logger.info("%d genotypes have no index value", int(index.isna().sum()))

        self.result = SelectionIndexResult(
            table=table,
            standardized=standardized,
            lower_bounds=bounds,
            means_policy=self.means,
            model_policy=self.model,
            lower_bound_policy=self.lb,
            warnings=list(self.warnings),
        )
        return self.result

    def generate_plot(self, top=None):
        """Bar chart of the index, best genotype first."""
        ranked = self.result.ranking.dropna(subset=["Index"])
        if top is not None:
            ranked = ranked.head(top)

        plt.figure(figsize=(10, 6))
        sns.barplot(x=self.geno_col, y="Index", data=ranked, order=list(ranked[self.geno_col]),
                    color="seagreen")
        plt.xticks(rotation=45)
        plt.ylabel("Elston index")
        plt.title(f"Elston Index - {', '.join(self.traits)}")

        buf = io.BytesIO()
        plt.savefig(buf, format="png", bbox_inches="tight", dpi=300)
        plt.close()
        buf.seek(0)
        return buf

    def create_report(self):
        res = self.result
        doc = Document()
        title = doc.add_heading("Elston Selection Index Report", 0)
        title.alignment = WD_ALIGN_PARAGRAPH.CENTER
        doc.add_paragraph(f"Generated on: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

        doc.add_heading("Details", level=1)
        details = doc.add_paragraph()
        details.add_run(f"Traits: {', '.join(self.traits)}\n").bold = True
        details.add_run(f"Genotypes: {len(self.genotypes)}\n")
        means_text = "single arithmetic means" if res.means_policy == "single" else f"fitted means ({res.model_policy} model)"
        details.add_run(f"Means: {means_text}\n")
        details.add_run(f"Lower bound: {res.lower_bound_policy}\n")

        for w in res.warnings:
            doc.add_paragraph(f"Warning: {w.message}")

        doc.add_heading("Lower Bounds", level=1)
        table = doc.add_table(rows=1, cols=2)
        table.style = "Table Grid"
        table.rows[0].cells[0].text = "Trait"
        table.rows[0].cells[1].text = "k"
        for trait, k in res.lower_bounds.items():
            row = table.add_row().cells
            row[0].text = str(trait)
            row[1].text = f"{k:.4f}"

        doc.add_heading("Genotypic Means, Index and Rank", level=1)
        ranked = res.ranking
        headers = [self.geno_col] + self.traits + ["Index", "Rank"]
        table = doc.add_table(rows=1, cols=len(headers))
        table.style = "Table Grid"
        for i, text in enumerate(headers):
            table.rows[0].cells[i].text = str(text)
            table.rows[0].cells[i].paragraphs[0].runs[0].bold = True
        for _, r in ranked.iterrows():
            row = table.add_row().cells
            row[0].text = str(r[self.geno_col])
            for i, trait in enumerate(self.traits, start=1):
                row[i].text = "-" if pd.isna(r[trait]) else f"{r[trait]:.4f}"
            row[-2].text = "-" if pd.isna(r["Index"]) else f"{r['Index']:.4f}"
            row[-1].text = "-" if pd.isna(r["Rank"]) else str(int(r["Rank"]))

        if res.table["Index"].notna().any():
            doc.add_heading("Index Plot", level=1)
            doc.add_picture(self.generate_plot(top=30), width=Inches(6))

        doc.add_heading("References", level=1)
        doc.add_paragraph("Elston, R. C. (1963). A weight-free index for the purpose of ranking or selection "
                          "with respect to several traits at a time. Biometrics, 19(1), 85-97.")

        buffer = io.BytesIO()
        doc.save(buffer)
        buffer.seek(0)
        return buffer

    def create_excel(self):
        output = io.BytesIO()
        with pd.ExcelWriter(output, engine="openpyxl") as writer:
            self.result.table.to_excel(writer, sheet_name="Elston_Index", index=False)
            self.result.standardized.reset_index().to_excel(writer, sheet_name="Standardized", index=False)
            self.result.lower_bounds.rename("k").to_frame().reset_index().rename(
                columns={"index": "Trait"}).to_excel(writer, sheet_name="Lower_Bounds", index=False)
        output.seek(0)
        return output


def compute_selection_index(df, traits, geno, env=None, rep=None, means="single", model="gxe", lb="min"):
    """Rank genotypes by the Elston weight-free index."""
    analyzer = ElstonIndexAnalyzer(df, traits, geno, env, rep, means=means, model=model, lb=lb)
    analyzer.validate()
    return analyzer.run_analysis()
