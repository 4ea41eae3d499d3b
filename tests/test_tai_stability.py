import numpy as np
import pandas as pd
import pytest
import scipy.stats as stats

from met_analysis.breeding.tai_stability import (
    TaiStabilityAnalyzer,
    compute_stability_analysis,
    correct_residual,
    tai_parameters,
)
from met_analysis.core.errors import ConfigurationError, StructuralError


def _run(df, **kwargs):
    return compute_stability_analysis(df, "yield", "geno", "env", "rep", **kwargs)


def test_parameters_of_dominant_trial(dominant_trial):
    res = _run(dominant_trial)
    assert list(res.parameters.index) == ["A", "B", "C"]
    assert res.alpha["A"] == pytest.approx(300 / 594)
    assert res.alpha["B"] == pytest.approx(-300 / 594)
    assert res.alpha["C"] == pytest.approx(0.0, abs=1e-10)
    # A's raw lambda is slightly negative and is truncated
    assert res.lambda_["A"] == 0.0
    assert res.lambda_["B"] == pytest.approx(1.5 * (52 - 25 * 300 / 297))
    assert res.lambda_["C"] == pytest.approx(40.5)


def test_anova_of_dominant_trial(dominant_trial):
    anova = _run(dominant_trial).anova
    assert list(anova.index) == ["Genotypes", "Environments", "Blocks within Env", "G x E", "Residual"]
    assert list(anova["df"]) == [2, 2, 3, 4, 6]
    assert anova.loc["Environments", "MS"] == pytest.approx(600.0)
    assert anova.loc["Blocks within Env", "MS"] == pytest.approx(6.0)
    assert anova.loc["Residual", "MS"] == pytest.approx(2.0)
    # environments are tested against blocks
    assert anova.loc["Environments", "F"] == pytest.approx(100.0)
    assert anova.loc["Genotypes", "F"] == pytest.approx(anova.loc["Genotypes", "MS"] / 2.0)
    assert np.isnan(anova.loc["Residual", "F"])


def test_prediction_interval_unavailable(dominant_trial):
    res = _run(dominant_trial)
    assert [w.code for w in res.warnings] == ["prediction_interval"]
    assert res.alpha_limit is None
    assert res.alpha_max == pytest.approx(1.05 * 300 / 594)


def test_lambda_range_and_limits(dominant_trial):
    res = _run(dominant_trial, conf=0.95)
    assert len(res.lambda_range) == 101
    assert res.lambda_range[0] == 0.0
    assert res.lambda_range[-1] == pytest.approx(40.5 * 1.1)
    low, high = res.lambda_limits
    assert low == pytest.approx(stats.f.ppf(0.025, 1, 9))
    assert high == pytest.approx(stats.f.ppf(0.975, 1, 9))


def test_inference_labels(dominant_trial):
    params = _run(dominant_trial).parameters
    assert params.loc["A", "Inference"] == "Low deviations"
    assert params.loc["B", "Inference"] == "Unstable (high deviations)"
    assert params.loc["C", "Inference"] == "Unstable (high deviations)"


def test_prediction_envelope_on_wide_trial(wide_trial):
    res = _run(wide_trial)
    assert res.warnings == []
    assert res.alpha_limit is not None
    assert len(res.alpha_limit) == 101
    assert res.alpha_limit[0] == 0.0
    assert np.all(np.diff(res.alpha_limit) >= 0)
    assert res.alpha_max >= res.alpha.abs().max()
    assert set(res.parameters["Inference"]) <= {
        "Average stability", "Above-average response", "Below-average response",
        "Unstable (high deviations)", "Low deviations",
    }


def test_missing_value_is_estimated(wide_trial):
    df = wide_trial.drop(index=7)
    res = _run(df)
    assert res.n_estimated == 1
    assert res.p_estimated == pytest.approx(1 / 60)
    assert res.anova.loc["Residual", "df"] == 29
    messages = [w.message for w in res.warnings if w.code == "imputation"]
    assert messages == ["The data set is unbalanced, 1.67% missing values estimated."]


def test_too_many_missing_values(wide_trial):
    # one plot from seven different cells
    df = wide_trial.drop(index=[0, 3, 6, 9, 12, 15, 18])
    with pytest.raises(StructuralError, match="Too many missing values"):
        _run(df)
    res = _run(df, maxp=0.2)
    assert res.n_estimated == 7


def test_correct_residual():
    anova = pd.DataFrame({"df": [2.0, 20.0], "SS": [50.0, 120.0], "MS": [25.0, 6.0]},
                         index=["Genotypes", "Residual"])
    out = correct_residual(anova, 3)
    assert out.loc["Residual", "df"] == 17
    assert out.loc["Residual", "MS"] == pytest.approx(120 / 17)
    assert anova.loc["Residual", "df"] == 20
    assert correct_residual(anova, 0).equals(anova)


def test_lambda_is_never_negative():
    rng = np.random.default_rng(11)
    rows = [
        {"geno": f"G{i}", "env": f"E{j}", "rep": str(k), "yield": rng.normal(20, 3)}
        for i in range(6) for j in range(4) for k in range(3)
    ]
    res = _run(pd.DataFrame(rows))
    assert (res.lambda_ >= 0).all()


def test_one_environment_is_not_met(dominant_trial):
    with pytest.raises(StructuralError, match="This is not a MET experiment."):
        _run(dominant_trial[dominant_trial["env"] == "E1"])


def test_two_genotypes_are_not_enough(dominant_trial):
    with pytest.raises(StructuralError, match="at least 3 genotypes and 3 environments"):
        _run(dominant_trial[dominant_trial["geno"] != "C"])


def test_empty_cell(dominant_trial):
    df = dominant_trial[~((dominant_trial["geno"] == "B") & (dominant_trial["env"] == "E3"))]
    with pytest.raises(StructuralError, match="zero frequency"):
        _run(df)


def test_single_replication(dominant_trial):
    with pytest.raises(StructuralError, match="only one replication"):
        _run(dominant_trial[dominant_trial["rep"] == "1"])


def test_bad_arguments(dominant_trial):
    with pytest.raises(ConfigurationError):
        _run(dominant_trial, conf=1.5)
    with pytest.raises(ConfigurationError, match="not found"):
        compute_stability_analysis(dominant_trial, "yield", "geno", "site", "rep")


def test_numeric_identifiers_are_treated_as_labels(dominant_trial):
    df = dominant_trial.assign(rep=dominant_trial["rep"].astype(int))
    res = _run(df)
    assert res.trial.n_rep == 2
    assert res.alpha["A"] == pytest.approx(300 / 594)


def test_plot_and_report(wide_trial):
    analyzer = TaiStabilityAnalyzer(wide_trial, "yield", "geno", "env", "rep")
    analyzer.validate()
    analyzer.run_analysis()
    assert analyzer.generate_plot().read(4) == b"\x89PNG"
    assert analyzer.create_report(title="Yield").read(2) == b"PK"


def test_result_as_dict(dominant_trial):
    data = _run(dominant_trial).to_dict()
    assert data["alpha_limit"] is None
    assert data["anova"]["Residual"]["F"] is None
    assert [p["genotype"] for p in data["parameters"]] == ["A", "B", "C"]
    assert data["warnings"][0]["code"] == "prediction_interval"


def test_environment_specific_block_labels(wide_trial):
    shared = _run(wide_trial.drop(index=7))
    relabelled = wide_trial.assign(rep=wide_trial["env"] + "-" + wide_trial["rep"])
    own = _run(relabelled.drop(index=7))
    assert own.anova.loc["Residual", "df"] == 29
    assert np.allclose(own.alpha, shared.alpha)
    assert np.allclose(own.lambda_, shared.lambda_)


def test_numeric_genotype_ids_in_numeric_order(dominant_trial):
    df = dominant_trial.assign(geno=dominant_trial["geno"].map({"A": 10, "B": 2, "C": 1}))
    res = _run(df)
    assert list(res.parameters.index) == ["1", "2", "10"]
    assert res.alpha["10"] == pytest.approx(300 / 594)


def test_alpha_undefined_when_environment_and_block_ms_coincide():
    int_eff = pd.DataFrame([[1.0, -1.0, 0.0], [-1.0, 1.0, 0.0], [0.0, 0.0, 0.0]])
    env_mean = pd.Series([1.0, 2.0, 3.0])
    with pytest.raises(StructuralError, match="MS for environments equals MS for blocks"):
        tai_parameters(int_eff, env_mean, 2.0, 6.0, 6.0, 1.0, 3, 3, 2)
