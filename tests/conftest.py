import numpy as np
import pandas as pd
import pytest

# Cell means of a 3 x 3 trial. Environment effects are (-10, 0, 10); genotype A
# follows them with slope 0.5 on top of a +20 advantage, B and C carry
# interaction that is unrelated to the environment.
DOMINANT_CELLS = {
    "A": [55.0, 70.0, 85.0],
    "B": [48.0, 44.0, 58.0],
    "C": [32.0, 51.0, 52.0],
}
# Half the difference between the two replications of each cell
REP_OFFSET = {"A": 1.0, "B": 2.0, "C": 0.0}


def make_dominant_trial():
    rows = []
    for geno, cells in DOMINANT_CELLS.items():
        for j, m in enumerate(cells):
            env = f"E{j + 1}"
            rows.append({"geno": geno, "env": env, "rep": "1", "yield": m + REP_OFFSET[geno]})
            rows.append({"geno": geno, "env": env, "rep": "2", "yield": m - REP_OFFSET[geno]})
    return pd.DataFrame(rows)


def make_wide_trial():
    """4 genotypes x 5 environments x 3 replications with strong environments."""
    g_eff = [0.0, 5.0, -5.0, 10.0]
    e_eff = [-40.0, -20.0, 0.0, 20.0, 40.0]
    rows = []
    for i, g in enumerate(g_eff):
        for j, e in enumerate(e_eff):
            ge = ((i * j) % 3 - 1) * 1.5
            for k in range(3):
                noise = ((i + 2 * j + k) % 3 - 1) * 0.5
                rows.append({
                    "geno": f"G{i + 1}",
                    "env": f"L{j + 1}",
                    "rep": str(k + 1),
                    "yield": 50.0 + g + e + ge + noise,
                })
    return pd.DataFrame(rows)


def make_additive_trial():
    """Strictly additive genotype + environment + block data, no interaction or error."""
    g_eff = {"G1": 0.0, "G2": 3.0, "G3": 6.0}
    rows = []
    for j, e in enumerate([0.0, 10.0, 20.0]):
        for k in range(2):
            block = (j + 1) * k * 0.5
            for geno, g in g_eff.items():
                rows.append({"geno": geno, "env": f"E{j + 1}", "rep": str(k + 1),
                             "yield": 10.0 + g + e + block})
    return pd.DataFrame(rows)


@pytest.fixture
def dominant_trial():
    return make_dominant_trial()


@pytest.fixture
def wide_trial():
    return make_wide_trial()


@pytest.fixture
def additive_trial():
    return make_additive_trial()


@pytest.fixture
def multi_trait_trial():
    """Five genotypes, two environments, two replications, two traits."""
    rng = np.random.default_rng(7)
    rows = []
    base_yield = {"G1": 30, "G2": 25, "G3": 35, "G4": 20, "G5": 28}
    base_dm = {"G1": 22, "G2": 27, "G3": 24, "G4": 30, "G5": 21}
    for geno in base_yield:
        for env, shift in (("E1", 0.0), ("E2", 4.0)):
            for rep in ("1", "2"):
                rows.append({
                    "geno": geno, "env": env, "rep": rep,
                    "yield": base_yield[geno] + shift + rng.normal(0, 0.5),
                    "dm": base_dm[geno] + shift / 2 + rng.normal(0, 0.5),
                })
    return pd.DataFrame(rows)
