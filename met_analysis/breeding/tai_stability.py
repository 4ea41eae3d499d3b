import io
import logging
from datetime import datetime

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import scipy.stats as stats
from docx import Document
from docx.shared import Inches
from docx.enum.text import WD_ALIGN_PARAGRAPH

from met_analysis.core.errors import ConfigurationError, StructuralError
from met_analysis.core.results import AnalysisWarning, StabilityResult
from met_analysis.services.imputation import estimate_missing_values
from met_analysis.services.model_fitting import FixedEffectsModel
from met_analysis.services.trial_check import check_trial, nested_levels, sorted_levels

logger = logging.getLogger(__name__)

SOURCES = ["Genotypes", "Environments", "Blocks within Env", "G x E", "Residual"]


def correct_residual(anova, n_estimated):
    """Remove one residual df per estimated value and recompute the residual MS."""
    anova = anova.copy()
    if n_estimated > 0:
        anova.loc["Residual", "df"] = anova.loc["Residual", "df"] - n_estimated
        anova.loc["Residual", "MS"] = anova.loc["Residual", "SS"] / anova.loc["Residual", "df"]
    return anova


def interaction_effects(cell_means):
    grand = cell_means.values.mean()
    env_mean = cell_means.mean(axis=0)
    geno_mean = cell_means.mean(axis=1)
    effects = cell_means.sub(geno_mean, axis=0).sub(env_mean, axis=1) + grand
    return effects, env_mean, geno_mean, grand


def tai_parameters(int_eff, env_mean, grand, ms_env, ms_block, ms_error, ng, ne, nr):
    """Tai's alpha and lambda for each genotype (rows of ``int_eff``)."""
    if np.isclose(ms_env, ms_block):
        raise StructuralError("MS for environments equals MS for blocks. Cannot compute alpha parameter.")
    slgl = (int_eff * (env_mean - grand) / (ne - 1)).sum(axis=1)
    alpha = slgl / (ms_env - ms_block) * ng * nr

    s2gl = (int_eff ** 2 / (ne - 1)).sum(axis=1)
    lam = (s2gl - alpha * slgl) / (ng - 1) / ms_error * ng * nr
    lam = lam.clip(lower=0)
    return alpha, lam


class TaiStabilityAnalyzer:
    def __init__(self, df, trait_col, geno_col, env_col, rep_col, maxp=0.1, conf=0.95, tol=1e-6):
        self.df = df.copy()
        self.trait_col = trait_col
        self.geno_col = geno_col
        self.env_col = env_col
        self.rep_col = rep_col
        self.maxp = float(maxp)
        self.conf = float(conf)
        self.tol = float(tol)

        self.trial = None
        self.genotypes = []
        self.n_estimated = 0
        self.p_estimated = 0.0
        self.warnings = []
        self.result = None

    def _warn(self, code, message):
        logger.warning(message)
        self.warnings.append(AnalysisWarning(code, message))

    def validate(self):
        if not (0 < self.conf < 1):
            raise ConfigurationError("Confidence must be between 0 and 1.")
        if not (0 <= self.maxp < 1):
            raise ConfigurationError("Maximum proportion of missing values must be in [0, 1).")

        keys = [self.geno_col, self.env_col, self.rep_col]
        for col in keys + [self.trait_col]:
            if col not in self.df.columns:
                raise ConfigurationError(f"Column '{col}' not found in data.")

        self.df = self.df.dropna(subset=keys)
        self.genotypes = sorted_levels(self.df[self.geno_col])
        for col in keys:
            self.df[col] = self.df[col].astype(str).str.strip()
        self.df[self.rep_col] = nested_levels(self.df, self.env_col, self.rep_col)
        self.df[self.trait_col] = pd.to_numeric(self.df[self.trait_col], errors="coerce")

        lc = check_trial(self.df, self.trait_col, self.geno_col, self.env_col, self.rep_col)
        self.trial = lc

        if not lc.cells_complete:
            raise StructuralError("Some GxE cells have zero frequency. Remove genotypes or environments to proceed.")
        if lc.single_replication:
            raise StructuralError("There is only one replication. Inference is not possible with one replication.")
        if not lc.is_met:
            raise StructuralError("This is not a MET experiment.")
        if lc.n_geno < 3 or lc.n_env < 3:
            raise StructuralError("You need at least 3 genotypes and 3 environments to run Tai")

        if not lc.balanced:
            completed = estimate_missing_values(
                self.df, self.trait_col, self.geno_col, self.env_col, self.rep_col,
                maxp=self.maxp, tol=self.tol)
            completed[self.trait_col] = completed[f"{self.trait_col}_est"]
            self.df = completed.drop(columns=[f"{self.trait_col}_est"])
            self.n_estimated = lc.n_missing
            self.p_estimated = lc.p_missing
            self._warn("imputation",
                       f"The data set is unbalanced, {lc.p_missing * 100:.3g}% missing values estimated.")

    def run_anova(self):
        g, e, r = self.geno_col, self.env_col, self.rep_col
        fit = FixedEffectsModel(self.trait_col, terms=[(g,), (e,), (e, r), (g, e)]).fit(self.df)
        anova = fit.anova
        anova.index = SOURCES
        anova = correct_residual(anova, self.n_estimated)

        # Environments are tested against blocks, the rest against the residual
        ms_err, df_err = anova.loc["Residual", "MS"], anova.loc["Residual", "df"]
        ms_blk, df_blk = anova.loc["Blocks within Env", "MS"], anova.loc["Blocks within Env", "df"]
        f_vals, p_vals = [], []
        for src in SOURCES:
            if src == "Residual":
                f_vals.append(np.nan)
                p_vals.append(np.nan)
                continue
            denom, ddf = (ms_blk, df_blk) if src == "Environments" else (ms_err, df_err)
            f = anova.loc[src, "MS"] / denom if denom > 0 else np.nan
            f_vals.append(f)
            p_vals.append(stats.f.sf(f, anova.loc[src, "df"], ddf) if denom > 0 else np.nan)
        anova["F"] = f_vals
        anova["P"] = p_vals
        return anova

    def run_analysis(self):
        lc = self.trial
        ng, ne, nr = lc.n_geno, lc.n_env, lc.n_rep
        conf = self.conf

        # 1. Interaction effects
        cell_means = self.df.pivot_table(index=self.geno_col, columns=self.env_col,
                                         values=self.trait_col, aggfunc="mean")
        cell_means = cell_means.reindex(self.genotypes).sort_index(axis=1)
        int_eff, env_mean, _, grand = interaction_effects(cell_means)

        # 2. ANOVA
        anova = self.run_anova()
        ms_env = anova.loc["Environments", "MS"]
        ms_blk = anova.loc["Blocks within Env", "MS"]
        ms_err = anova.loc["Residual", "MS"]

        # 3. Alpha and lambda
        alpha, lam = tai_parameters(int_eff, env_mean, grand, ms_env, ms_blk, ms_err, ng, ne, nr)

        # 4. Prediction interval for alpha
        q = 1 - (1 - conf) / 2
        lmax = max(lam.max(), stats.f.ppf(q, ne - 2, ne * (ng - 1) * (nr - 1))) * 1.1
        lx = np.linspace(0, lmax, 101)
        ta = stats.t.ppf(q, ne - 2)
        div2 = (ne - 2) * ms_env - (ta ** 2 + ne - 2) * ms_blk

        def limit(x):
            return ta * np.sqrt((x * (ng - 1) * ms_err * ms_env) / ((ms_env - ms_blk) * div2))

        if div2 <= 0:
            self._warn("prediction_interval",
                       "MS for blocks is too big in relation with MS for environments. "
                       "Cannot compute prediction interval for alpha parameter.")
            pi_alpha = None
            amax = alpha.abs().max() * 1.05
        else:
            pi_alpha = limit(lx)
            amax = max(alpha.abs().max(), pi_alpha.max())

        # 5. Lambda limits
        lambda_limits = (
            float(stats.f.ppf((1 - conf) / 2, ne - 2, ne * ng * (nr - 1))),
            float(stats.f.ppf(q, ne - 2, ne * ng * (nr - 1))),
        )

        params = pd.DataFrame({"alpha": alpha, "lambda": lam})
        params.index.name = self.geno_col
        alpha_bound = limit(lam) if pi_alpha is not None else None
        params["Inference"] = [
            self._inference(a, l, None if alpha_bound is None else alpha_bound[gen], lambda_limits)
            for gen, a, l in zip(params.index, alpha, lam)
        ]

        self.result = StabilityResult(
            trait=self.trait_col,
            parameters=params,
            anova=anova,
            trial=lc,
            n_estimated=self.n_estimated,
            p_estimated=self.p_estimated,
            lambda_range=lx,
            alpha_limit=pi_alpha,
            alpha_max=float(amax),
            lambda_limits=lambda_limits,
            confidence=conf,
            warnings=list(self.warnings),
        )
        return self.result

    @staticmethod
    def _inference(alpha, lam, bound, lambda_limits):
        low, high = lambda_limits
        if lam > high:
            return "Unstable (high deviations)"
        if lam < low:
            return "Low deviations"
        if bound is None or abs(alpha) <= bound:
            return "Average stability"
        return "Above-average response" if alpha > 0 else "Below-average response"

    def generate_plot(self, title=None, color=("darkorange", "black", "gray"), size=(1, 1)):
        res = self.result
        if title is None:
            title = f"Tai stability analysis for {self.trait_col}"
        lmax = res.lambda_range[-1]
        amax = res.alpha_max

        fig, ax = plt.subplots(figsize=(8, 6))
        ax.set_xlim(-0.05 * lmax, lmax)
        ax.set_ylim(-amax, amax)
        ax.scatter(res.lambda_, res.alpha, color=color[0], marker="x", linewidths=2, s=40 * size[0])
        for gen, row in res.parameters.iterrows():
            ax.annotate(str(gen), (row["lambda"], row["alpha"]), xytext=(0, -10 * size[1]),
                        textcoords="offset points", ha="center", color=color[1], fontsize=9 * size[1])
        if res.alpha_limit is not None:
            ax.plot(res.lambda_range, res.alpha_limit, linestyle="--", color=color[2])
            ax.plot(res.lambda_range, -res.alpha_limit, linestyle="--", color=color[2])
        for x in res.lambda_limits:
            ax.axvline(x, linestyle="--", color=color[2])
        ax.set_xlabel(r"$\lambda$")
        ax.set_ylabel(r"$\alpha$")
        ax.set_title(title)

        fig.tight_layout()
        buf = io.BytesIO()
        fig.savefig(buf, format="png", dpi=300)
        plt.close(fig)
        buf.seek(0)
        return buf

    def create_report(self, title=None):
        res = self.result
        doc = Document()
        heading = doc.add_heading("Stability Analysis Report (Tai Model)", 0)
        heading.alignment = WD_ALIGN_PARAGRAPH.CENTER
        doc.add_paragraph(f"Generated on: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

        doc.add_heading("Experimental Details", level=1)
        details = doc.add_paragraph()
        details.add_run(f"Trait: {self.trait_col}\n").bold = True
        details.add_run(f"Genotypes: {res.trial.n_geno}\n")
        details.add_run(f"Environments: {res.trial.n_env}\n")
        details.add_run(f"Replications: {res.trial.n_rep}\n")
        details.add_run(f"Confidence: {res.confidence:.2f}\n")
        if res.n_estimated:
            details.add_run(f"Estimated missing values: {res.n_estimated} ({res.p_estimated * 100:.3g}%)\n")

        for w in res.warnings:
            doc.add_paragraph(f"Warning: {w.message}")

        doc.add_heading("ANOVA", level=1)
        table = doc.add_table(rows=1, cols=6)
        table.style = "Table Grid"
        for i, text in enumerate(["Source", "df", "SS", "MS", "F", "p-value"]):
            table.rows[0].cells[i].text = text
            table.rows[0].cells[i].paragraphs[0].runs[0].bold = True
        for src, val in res.anova.iterrows():
            row = table.add_row().cells
            row[0].text = src
            row[1].text = str(int(val["df"]))
            row[2].text = f"{val['SS']:.4f}"
            row[3].text = f"{val['MS']:.4f}"
            row[4].text = "-" if pd.isna(val["F"]) else f"{val['F']:.4f}"
            row[5].text = "-" if pd.isna(val["P"]) else f"{val['P']:.4f}"

        doc.add_heading("Stability Parameters", level=1)
        table = doc.add_table(rows=1, cols=4)
        table.style = "Table Grid"
        for i, text in enumerate(["Genotype", "alpha", "lambda", "Inference"]):
            table.rows[0].cells[i].text = text
        for gen, p in res.parameters.iterrows():
            row = table.add_row().cells
            row[0].text = str(gen)
            row[1].text = f"{p['alpha']:.4f}"
            row[2].text = f"{p['lambda']:.4f}"
            row[3].text = p["Inference"]

        low, high = res.lambda_limits
        doc.add_paragraph(f"Lambda limits ({res.confidence:.0%}): {low:.4f} - {high:.4f}")

        doc.add_heading("Tai Graph", level=1)
        doc.add_picture(self.generate_plot(title=title), width=Inches(6))

        doc.add_heading("References", level=1)
        doc.add_paragraph("Tai, G. C. C. (1971). Genotypic stability analysis and its application to "
                          "potato regional trials. Crop Science, 11(2), 184-190.")

        buffer = io.BytesIO()
        doc.save(buffer)
        buffer.seek(0)
        return buffer


def compute_stability_analysis(df, trait, geno, env, rep, maxp=0.1, conf=0.95):
    """Tai's stability parameters for one trait of a replicated MET."""
    analyzer = TaiStabilityAnalyzer(df, trait, geno, env, rep, maxp=maxp, conf=conf)
    analyzer.validate()
    return analyzer.run_analysis()
