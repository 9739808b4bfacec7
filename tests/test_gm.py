from __future__ import annotations

from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest

from psych_interpreter import DataShapeError, extract
from psych_interpreter.interpreters.gm import (
    build_diagnostics_gm,
    build_main_prompt_gm,
    cluster_separation,
    default_result_gm,
    extract_cluster_lines,
    pattern_strategies_gm,
    validate_parsed_gm,
)
from psych_interpreter.recovery import recover_response
from psych_interpreter.report.gm import distinguishing_variables

CLUSTERS = ["Cluster_1", "Cluster_2", "Cluster_3"]


def test_extract_derives_assignments_from_memberships(gm_fit, gm_variable_info) -> None:
    data = extract(gm_fit, gm_variable_info, "gm")

    assert data.component_names == tuple(CLUSTERS)
    assert data.variable_names == ("extraversion", "neuroticism", "openness")
    assert list(data["classification"]) == [1, 1, 2, 2, 2, 3]
    assert data["uncertainty"] == pytest.approx([0.05, 0.10, 0.15, 0.10, 0.25, 0.10])
    assert data["cluster_uncertainty"]["Cluster_2"] == pytest.approx(0.5 / 3)
    assert data["cluster_sizes"]["Cluster_3"] == pytest.approx(20.0)
    assert data["covariance_type"] == "VVV"
    assert data["bic"] == pytest.approx(-1234.5678)
    assert data["covariances"].shape == (3, 3, 3)


def test_extract_fills_defaults_for_minimal_input(gm_fit, gm_variable_info) -> None:
    data = extract({"means": gm_fit["means"]}, gm_variable_info, "gm")
    assert data["proportions"] == pytest.approx({c: 1 / 3 for c in CLUSTERS})
    assert data["n_observations"] is None
    assert data["cluster_sizes"] is None
    assert data["cluster_uncertainty"] is None
    assert data["covariance_type"] == "VVV"


def test_weighted_sizes_use_membership_sums(gm_fit, gm_variable_info) -> None:
    data = extract(gm_fit, gm_variable_info, "gm", weight_by_uncertainty=True)
    assert data["cluster_sizes"]["Cluster_1"] == pytest.approx(2.25)


def test_fitted_mixture_model_attributes(gm_variable_info) -> None:
    model = SimpleNamespace(
        means_=np.array([[1.0, -0.5, 0.2], [-1.0, 0.5, -0.2]]),
        weights_=np.array([0.6, 0.4]),
        covariance_type="diag",
        covariances_=np.array([[1.0, 2.0, 0.5], [0.5, 1.0, 1.0]]),
        feature_names_in_=np.array(["extraversion", "neuroticism", "openness"]),
    )
    data = extract(model, gm_variable_info, "gm")
    assert data.component_names == ("Cluster_1", "Cluster_2")
    assert data["means"].loc["neuroticism", "Cluster_2"] == pytest.approx(0.5)
    assert data["covariance_type"] == "VVI"
    assert data["covariances"][0] == pytest.approx(np.diag([1.0, 2.0, 0.5]))


def test_missing_means_fail_requirements(gm_variable_info) -> None:
    with pytest.raises(DataShapeError, match="means"):
        extract({"proportions": [0.5, 0.5]}, gm_variable_info, "gm")


def test_bad_shapes_are_reported(gm_fit, gm_variable_info) -> None:
    with pytest.raises(DataShapeError, match="proportions"):
        extract({**gm_fit, "proportions": [0.5, 0.5]}, gm_variable_info, "gm")
    with pytest.raises(DataShapeError, match="memberships"):
        extract({**gm_fit, "memberships": np.ones((4, 2))}, gm_variable_info, "gm")
    with pytest.raises(DataShapeError, match="Covariances"):
        extract({**gm_fit, "covariances": np.ones((2, 2))}, gm_variable_info, "gm")


def test_profile_variables_are_checked_and_restrict_the_prompt(gm_fit, gm_variable_info) -> None:
    with pytest.raises(DataShapeError, match="height"):
        extract(gm_fit, gm_variable_info, "gm", profile_variables=["height"])
    with pytest.raises(DataShapeError, match="list of variable names"):
        extract(gm_fit, gm_variable_info, "gm", profile_variables="openness")

    data = extract(gm_fit, gm_variable_info, "gm", profile_variables=["openness", "extraversion"])
    assert data["profile_variables"] == ("extraversion", "openness")
    prompt = build_main_prompt_gm(data, None, 150)
    assert "neuroticism:" not in prompt


def test_main_prompt_describes_profiles_with_magnitude_hints(gm_fit, gm_variable_info) -> None:
    prompt = build_main_prompt_gm(extract(gm_fit, gm_variable_info, "gm"), None, 150, "Student sample")

    assert "# ADDITIONAL CONTEXT\nStudent sample" in prompt
    assert "3 variables and 100 observations" in prompt
    assert "Covariance structure: VVV" in prompt
    assert "Cluster_1 (40.0% of observations)" in prompt
    assert "extraversion: 2.500 (high)" in prompt
    assert "openness: -2.400 (very low)" in prompt
    assert "neuroticism: 1.500 (moderate)" in prompt
    assert "neuroticism: -1.200 (low)" in prompt
    assert "openness: 0.100\n" in prompt
    assert prompt.index("# CLUSTER PROFILES") < prompt.index("# OUTPUT INSTRUCTIONS")


def test_validator_accepts_key_aliases_and_bare_strings() -> None:
    parsed = {
        "Cluster 1": {"label": "Outgoing", "interpretation": "Sociable and calm."},
        "cluster_2": "Reserved and worried.",
    }
    out = validate_parsed_gm(parsed, CLUSTERS, 0.5)
    assert out["Cluster_1"] == {"label": "Outgoing", "interpretation": "Sociable and calm."}
    assert out["Cluster_2"] == {"label": "Cluster 2", "interpretation": "Reserved and worried."}
    assert "Cluster_3" not in out

    assert validate_parsed_gm({"Cluster 10": "other"}, ["Cluster_1"], 0.5) is None


def test_cluster_line_strategy_recovers_plain_lists() -> None:
    text = "Cluster 1: Outgoing and stable.\n- Cluster_2 - Reserved people\n"
    found = extract_cluster_lines(text, CLUSTERS)
    assert found["Cluster_1"]["interpretation"] == "Outgoing and stable."
    assert found["Cluster_2"]["interpretation"] == "Reserved people"
    assert "Cluster_3" not in found

    recovered = recover_response(
        text,
        CLUSTERS,
        validate=validate_parsed_gm,
        strategies=pattern_strategies_gm(),
        default=default_result_gm,
    )
    assert recovered.tier == "pattern"
    assert recovered["Cluster_3"].label == "Cluster 3"
    assert recovered.fallback_ids == tuple(CLUSTERS)


def test_bold_cluster_aliases_are_recovered_by_pattern_tier() -> None:
    text = "**Cluster 1**: outgoing and calm\n**Cluster 2**: anxious and withdrawn"
    recovered = recover_response(
        text,
        CLUSTERS[:2],
        validate=validate_parsed_gm,
        strategies=pattern_strategies_gm(),
        default=default_result_gm,
    )
    assert recovered.tier == "pattern"
    assert recovered["Cluster_1"].interpretation == "outgoing and calm"
    assert recovered["Cluster_2"].source == "pattern"


def test_truncated_json_with_spaced_cluster_keys_keeps_complete_entries() -> None:
    text = (
        '{"Cluster 1": {"label": "Calm", "interpretation": "Outgoing."}, '
        '"Cluster 2": {"label": "Worried", "interpretation": "Worr'
    )
    recovered = recover_response(
        text,
        CLUSTERS[:2],
        validate=validate_parsed_gm,
        strategies=pattern_strategies_gm(),
        default=default_result_gm,
    )
    assert recovered.tier == "pattern"
    assert recovered["Cluster_1"].label == "Calm"
    assert recovered["Cluster_1"].source == "pattern"
    assert recovered["Cluster_2"].source == "placeholder"


def test_zero_based_classification_maps_to_the_right_cluster(gm_fit, gm_variable_info) -> None:
    one_based = extract(gm_fit, gm_variable_info, "gm")
    zero_based = extract(
        {**gm_fit, "classification": np.asarray(one_based["classification"]) - 1}, gm_variable_info, "gm"
    )
    assert list(zero_based["classification"]) == [1, 1, 2, 2, 2, 3]
    assert zero_based["cluster_uncertainty"]["Cluster_2"] == pytest.approx(0.5 / 3)
    assert zero_based["cluster_uncertainty"]["Cluster_3"] == pytest.approx(0.10)


def test_diagnostics_for_well_behaved_fit(gm_fit, gm_variable_info) -> None:
    diagnostics = build_diagnostics_gm(extract(gm_fit, gm_variable_info, "gm"))
    assert diagnostics.warnings == ()
    assert any("VVV" in n for n in diagnostics.notes)
    assert diagnostics.statistics["min_separation"] == pytest.approx(2.98, abs=0.01)
    assert diagnostics.statistics["avg_uncertainty"] == pytest.approx(0.125)
    assert diagnostics.statistics["bic"] == pytest.approx(-1234.57)
    assert set(diagnostics.tables) == {"separation", "profiles"}

    clean = build_diagnostics_gm(extract({**gm_fit, "covariance_type": "EEE"}, gm_variable_info, "gm"))
    assert clean.notes == ("Clustering appears well-defined with good separation",)


def test_diagnostics_flag_small_and_unbalanced_clusters(gm_fit, gm_variable_info) -> None:
    small = build_diagnostics_gm(extract({**gm_fit, "n_observations": 20}, gm_variable_info, "gm"))
    assert "Small clusters detected: Cluster_3 (n=4)" in small.warnings

    skewed = build_diagnostics_gm(extract({**gm_fit, "proportions": [0.8, 0.15, 0.05]}, gm_variable_info, "gm"))
    assert "Highly unbalanced cluster sizes (ratio: 16.0:1)" in skewed.warnings


def test_diagnostics_flag_uncertainty_and_overlap(gm_fit, gm_variable_info) -> None:
    fuzzy = {**gm_fit, "memberships": np.tile([0.4, 0.35, 0.25], (6, 1))}
    diagnostics = build_diagnostics_gm(extract(fuzzy, gm_variable_info, "gm"))
    assert any("High average uncertainty" in w for w in diagnostics.warnings)
    assert any("100.0% of observations" in w for w in diagnostics.warnings)
    assert any(n.startswith("Clusters with high uncertainty: Cluster_1") for n in diagnostics.notes)

    close = pd.DataFrame(
        {"Cluster_1": [0.0, 0.0, 0.0], "Cluster_2": [0.5, 0.0, 0.0], "Cluster_3": [5.0, 5.0, 5.0]},
        index=gm_fit["means"].index,
    )
    overlap = build_diagnostics_gm(extract({**gm_fit, "means": close}, gm_variable_info, "gm"))
    assert any(w.startswith("Poor cluster separation") for w in overlap.warnings)
    assert "Overlapping cluster pairs: Cluster_1-Cluster_2" in overlap.notes


def test_separation_falls_back_to_euclidean_for_singular_covariance(gm_fit) -> None:
    means = gm_fit["means"]
    separation = cluster_separation(means, np.zeros((3, 3, 3)))
    expected = float(np.linalg.norm(means["Cluster_1"] - means["Cluster_2"]))
    assert separation.loc["Cluster_1", "Cluster_2"] == pytest.approx(expected)
    assert separation.loc["Cluster_2", "Cluster_1"] == pytest.approx(expected)
    assert separation.loc["Cluster_1", "Cluster_1"] == 0.0


def test_distinguishing_variables_rank_by_departure(gm_fit) -> None:
    top = distinguishing_variables(gm_fit["means"], top_n=1)
    assert top["Cluster_1"][0][0] == "extraversion"
    assert top["Cluster_3"][0][0] == "openness"
