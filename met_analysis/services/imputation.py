import logging

import numpy as np
import pandas as pd

from met_analysis.core.errors import StructuralError
from met_analysis.services.trial_check import check_trial

logger = logging.getLogger(__name__)


def estimate_missing_values(df, trait, geno, env, rep, maxp=0.1, tol=1e-6, max_iter=100):
    """Fill the gaps of a replicated multi-environment trial.

    The data are laid out on the full genotype x environment x replication
    grid. Within each environment the trial is treated as an RCBD (genotypes
    as treatments, replications as blocks) and every missing plot gets the
    classical missing-plot estimate

        (g * T + r * B - S) / ((g - 1) * (r - 1))

    with g genotypes and r replications, and T, B and S the genotype, block
    and environment totals excluding the plot itself. Estimates are refined in
    turn until the largest change falls below ``tol`` times the largest
    observed value.

    Replication labels must be shared by all environments; renumber them with
    ``nested_levels`` when each environment has its own.

    Returns the grid with the original trait column and ``<trait>_est``.
    """
    lc = check_trial(df, trait, geno, env, rep)

    if not lc.cells_complete:
        raise StructuralError("Some GxE cells have zero frequency.")
    if not lc.replicated:
        raise StructuralError("There is only one replication. Inference is not possible with one replication.")
    if lc.p_missing > maxp:
        raise StructuralError(f"Too many missing values ({lc.p_missing * 100:.3g}%).")
    if df.duplicated(subset=[geno, env, rep]).any():
        raise StructuralError("Some genotype, environment and replication combinations are duplicated.")

    genos = list(lc.frequencies.index)
    envs = list(lc.frequencies.columns)
    reps = sorted(df[rep].dropna().unique())
    if len(reps) > lc.n_rep:
        raise StructuralError(
            f"Found {len(reps)} replication labels for at most {lc.n_rep} replications per cell. "
            "Replication labels must be shared across environments.")
    ng, nr = len(genos), len(reps)

    grid = pd.MultiIndex.from_product([genos, envs, reps], names=[geno, env, rep])
    values = df.set_index([geno, env, rep])[trait].reindex(grid)
    y = values.to_numpy(dtype=float, copy=True).reshape(ng, len(envs), nr)

    missing = np.argwhere(np.isnan(y))
    est_col = f"{trait}_est"

    if len(missing) == 0:
        out = values.reset_index()
        out[est_col] = out[trait]
        return out

    # Starting values from the additive model: block mean + genotype mean - grand mean
    grand = np.nanmean(y)
    geno_mean = np.nanmean(y, axis=(1, 2))
    block_mean = np.nanmean(y, axis=0)
    for i, j, k in missing:
        y[i, j, k] = block_mean[j, k] + geno_mean[i] - grand

    scale = np.nanmax(np.abs(values.to_numpy(dtype=float)))
    denom = (ng - 1) * (nr - 1)
    iterations = 0
    change = np.inf
    while change > scale * tol and iterations < max_iter:
        iterations += 1
        change = 0.0
        for i, j, k in missing:
            old = y[i, j, k]
            t_sum = y[i, j, :].sum() - old
            b_sum = y[:, j, k].sum() - old
            s_sum = y[:, j, :].sum() - old
            new = (ng * t_sum + nr * b_sum - s_sum) / denom
            change = max(change, abs(new - old))
            y[i, j, k] = new

    if change > scale * tol:
        logger.warning("Missing value estimation stopped after %d iterations (last change %.3g)",
                       iterations, change)
    else:
        logger.debug("Estimated %d missing values in %d iterations", len(missing), iterations)

    out = values.reset_index()
    out[est_col] = y.reshape(-1)
    return out
