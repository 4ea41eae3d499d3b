from dataclasses import dataclass

import pandas as pd


@dataclass
class TrialCheck:
    frequencies: pd.DataFrame
    cells_complete: bool
    replicated: bool
    balanced: bool
    n_geno: int
    n_env: int
    n_rep: int
    n_missing: int
    p_missing: float

    @property
    def single_replication(self):
        return self.cells_complete and not self.replicated

    @property
    def is_met(self):
        return self.n_geno >= 2 and self.n_env >= 2


def check_trial(df, trait, geno, env, rep):
    """Cell frequencies and balance flags of a genotype x environment trial.

    Levels come from every row with identifiers, so a genotype whose trait
    values are all missing still shows up as an empty row of cells.
    """
    genos = sorted(df[geno].dropna().unique())
    envs = sorted(df[env].dropna().unique())

    observed = df.dropna(subset=[trait, geno, env])
    freq = observed.groupby([geno, env]).size().unstack(env)
    freq = freq.reindex(index=genos, columns=envs).fillna(0).astype(int)

    n_geno, n_env = len(genos), len(envs)
    n_rep = int(freq.values.max()) if freq.size else 0

    cells_complete = bool((freq.values > 0).all()) if freq.size else False
    replicated = n_rep > 1
    balanced = bool((freq.values == n_rep).all()) if freq.size else False

    n_cells = n_geno * n_env * n_rep
    n_missing = int(n_cells - freq.values.sum())
    p_missing = n_missing / n_cells if n_cells > 0 else 0.0

    return TrialCheck(
        frequencies=freq,
        cells_complete=cells_complete,
        replicated=replicated,
        balanced=balanced,
        n_geno=n_geno,
        n_env=n_env,
        n_rep=n_rep,
        n_missing=n_missing,
        p_missing=p_missing,
    )


def nested_levels(df, env, rep):
    """Replication labels renumbered 1..k within each environment.

    Blocks are nested in environments, so ``L1-1`` and ``L2-1`` both become
    ``"1"`` and every environment shares the same replication levels.
    """
    return df.groupby(env)[rep].transform(lambda s: pd.factorize(s, sort=True)[0] + 1).astype(str)


def sorted_levels(values):
    """Distinct identifiers as stripped strings, ordered by their original values."""
    levels = pd.Series(values.dropna().unique()).sort_values(kind="mergesort")
    return list(dict.fromkeys(str(v).strip() for v in levels))
