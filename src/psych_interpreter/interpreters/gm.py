from __future__ import annotations

import logging
import re
from functools import partial
from typing import Any, Mapping, Sequence

import numpy as np
import pandas as pd

from ..errors import DataShapeError
from ..models import DiagnosticsSummary, ExtractedAnalysisData, RecoveredResult
from ..recovery import (
    PLACEHOLDER_INTERPRETATION,
    Strategy,
    extract_bare_values,
    extract_key_value_objects,
    extract_markdown_headings,
    validate_component_mapping,
)
from ..report.gm import build_report_gm
from ._util import align_variable_info, as_2d_frame, default_names, descriptions, get_field, word_target
from .base import AnalysisCapabilitySet

logger = logging.getLogger(__name__)

# scikit-learn covariance_type -> mclust model name
SKLEARN_COVARIANCE_TYPES = {"full": "VVV", "tied": "EEE", "diag": "VVI", "spherical": "VII"}
MIN_SEPARATION = 2.0
MAX_SIZE_RATIO = 5.0
HIGH_UNCERTAINTY_SHARE = 30.0


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def _means_source(fit_results: Any) -> tuple[Any, bool]:
    """Return (means, clusters_are_rows)."""
    means = get_field(fit_results, "means")
    if means is not None:
        return means, False
    means = get_field(fit_results, "means_")
    if means is not None:
        return means, True
    return None, False


def validate_requirements_gm(fit_results: Any, variable_info: Any, params: Mapping[str, Any]) -> None:
    means, _ = _means_source(fit_results)
    if means is None:
        raise DataShapeError(
            "Gaussian mixture input must provide cluster means: a 'means' entry (variables x clusters) "
            f"or a fitted model exposing means_ (clusters x variables); got {type(fit_results).__name__}"
        )
    profile = params.get("profile_variables")
    if profile is not None and (isinstance(profile, str) or not all(isinstance(v, str) for v in profile)):
        raise DataShapeError("profile_variables must be a list of variable names")


def _covariances(raw: Any, sklearn_type: str | None, k: int, d: int) -> np.ndarray:
    if raw is None:
        return np.stack([np.eye(d) for _ in range(k)])
    arr = np.asarray(raw, dtype=float)
    if sklearn_type == "tied":
        return np.stack([arr for _ in range(k)])
    if sklearn_type == "diag":
        return np.stack([np.diag(row) for row in arr])
    if sklearn_type == "spherical":
        return np.stack([np.eye(d) * v for v in arr.reshape(-1)])
    if arr.shape == (k, d, d):
        return arr
    if arr.shape == (d, d, k):
        return np.moveaxis(arr, -1, 0)
    if arr.shape == (d, d):
        return np.stack([arr for _ in range(k)])
    raise DataShapeError(
        f"Covariances must have shape ({k}, {d}, {d}) for {k} clusters and {d} variables, got {arr.shape}"
    )


def extract_gm(fit_results: Any, variable_info: Any, params: Mapping[str, Any]) -> ExtractedAnalysisData:
    raw_means, clusters_are_rows = _means_source(fit_results)
    if raw_means is None:
        validate_requirements_gm(fit_results, variable_info, params)
    means = as_2d_frame(raw_means, what="cluster means")
    if clusters_are_rows:
        means = means.T
        names = get_field(fit_results, "feature_names_in_")
        if names is not None and len(names) == len(means.index):
            means.index = [str(n) for n in names]

    if list(means.index) == [str(i) for i in range(len(means.index))]:
        if isinstance(variable_info, pd.DataFrame) and "variable" in variable_info.columns and len(variable_info) == len(means):
            means.index = variable_info["variable"].astype(str).tolist()
        else:
            means.index = default_names(range(len(means.index)), "V")
    means.columns = default_names(list(means.columns), "Cluster", sep="_")

    variable_names = list(means.index)
    cluster_names = list(means.columns)
    d, k = len(variable_names), len(cluster_names)
    info = align_variable_info(variable_info, variable_names)

    sk_type = get_field(fit_results, "covariance_type")
    covariance_type = SKLEARN_COVARIANCE_TYPES.get(str(sk_type), sk_type) or get_field(fit_results, "modelName") or "VVV"
    covariances = _covariances(
        get_field(fit_results, "covariances", "covariances_"),
        str(sk_type) if sk_type in SKLEARN_COVARIANCE_TYPES else None,
        k,
        d,
    )

    proportions = get_field(fit_results, "proportions", "weights_", "pro")
    proportions = np.full(k, 1.0 / k) if proportions is None else np.asarray(proportions, dtype=float).reshape(-1)
    if proportions.shape != (k,):
        raise DataShapeError(f"proportions must have {k} entries (one per cluster), got {proportions.size}")

    memberships = get_field(fit_results, "memberships", "z")
    if memberships is not None:
        memberships = np.asarray(memberships, dtype=float)
        if memberships.ndim != 2 or memberships.shape[1] != k:
            raise DataShapeError(f"memberships must be an (n_observations x {k}) matrix, got shape {memberships.shape}")
    classification = get_field(fit_results, "classification")
    if classification is not None:
        classification = np.asarray(classification).reshape(-1)
        if classification.dtype.kind in "iuf" and classification.size and classification.min() == 0:
            # scikit-learn labels clusters from 0
            classification = classification + 1
    elif memberships is not None:
        classification = memberships.argmax(axis=1) + 1
    uncertainty = get_field(fit_results, "uncertainty")
    if uncertainty is not None:
        uncertainty = np.asarray(uncertainty, dtype=float).reshape(-1)
    elif memberships is not None:
        uncertainty = 1.0 - memberships.max(axis=1)

    n_observations = get_field(fit_results, "n_observations", "n")
    if n_observations is None:
        for arr in (classification, uncertainty, memberships):
            if arr is not None:
                n_observations = len(arr)
                break
    n_observations = int(n_observations) if n_observations is not None else None

    profile_variables = params.get("profile_variables")
    if profile_variables is not None:
        unknown = [v for v in profile_variables if v not in variable_names]
        if unknown:
            raise DataShapeError(f"profile_variables not found in the model: {', '.join(unknown)}")
        profile_variables = [v for v in variable_names if v in set(profile_variables)]

    weight = bool(params["weight_by_uncertainty"])
    if n_observations is None:
        sizes = None
    elif weight and memberships is not None:
        sizes = dict(zip(cluster_names, memberships.sum(axis=0).astype(float)))
    else:
        sizes = dict(zip(cluster_names, (proportions * n_observations).astype(float)))

    cluster_uncertainty = None
    if uncertainty is not None and classification is not None and len(uncertainty) == len(classification):
        cluster_uncertainty = {}
        for i, name in enumerate(cluster_names, start=1):
            mask = _cluster_mask(classification, i, name)
            cluster_uncertainty[name] = float(np.nanmean(uncertainty[mask])) if mask.any() else float("nan")

    def _stat(*names: str) -> float | None:
        value = get_field(fit_results, *names)
        return None if value is None else float(value)

    return ExtractedAnalysisData(
        {
            "analysis_type": "gm",
            "n_components": k,
            "n_variables": d,
            "variable_names": variable_names,
            "component_names": cluster_names,
            "means": means,
            "covariances": covariances,
            "proportions": dict(zip(cluster_names, proportions.astype(float))),
            "memberships": memberships,
            "classification": classification,
            "uncertainty": uncertainty,
            "cluster_uncertainty": cluster_uncertainty,
            "cluster_sizes": sizes,
            "covariance_type": str(covariance_type),
            "n_observations": n_observations,
            "bic": _stat("bic"),
            "loglik": _stat("loglik"),
            "icl": _stat("icl"),
            "variable_info": info,
            "min_cluster_size": int(params["min_cluster_size"]),
            "separation_threshold": float(params["separation_threshold"]),
            "profile_variables": profile_variables,
            "weight_by_uncertainty": weight,
        }
    )


def _cluster_mask(classification: np.ndarray, index: int, name: str) -> np.ndarray:
    """Numeric assignments are 1-based here; 0-based labels were shifted during extraction."""
    if classification.dtype.kind in "iuf":
        return classification == index
    return classification.astype(str) == name


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """You are an expert in clustering analysis, Gaussian mixture models and psychological profiling. You interpret cluster profiles from the mean values of the variables in each cluster.

Guidelines for interpretation:
1. Focus on what distinguishes each cluster
2. Identify the psychological or behavioral pattern that defines each group
3. Compare clusters with each other to highlight differences
4. Avoid statistical jargon; use clear, accessible language
5. Weigh the practical significance of differences, not only their size
6. Cluster assignments carry uncertainty; lean on well-separated clusters

You will receive variable descriptions, the mean of each variable per cluster, cluster sizes and, when available, the average assignment uncertainty per cluster. Respond with a JSON object keyed by cluster name.
"""


def build_system_prompt_gm() -> str:
    return SYSTEM_PROMPT


def _mean_hint(value: float) -> str:
    if value > 2:
        return " (high)"
    if value < -2:
        return " (very low)"
    if value > 1:
        return " (moderate)"
    if value < -1:
        return " (low)"
    return ""


def _profiles_section(data: ExtractedAnalysisData) -> str:
    means: pd.DataFrame = data["means"]
    shown = data["profile_variables"] or list(data["variable_names"])
    cluster_uncertainty = data["cluster_uncertainty"] or {}
    lines = ["# CLUSTER PROFILES", ""]
    for name in data["component_names"]:
        size = data["proportions"][name]
        lines.append(f"{name} ({size * 100:.1f}% of observations)")
        unc = cluster_uncertainty.get(name)
        if unc is not None and not np.isnan(unc):
            lines.append(f"  Average uncertainty: {unc:.3f}")
        lines.append("  Variable means:")
        for var in shown:
            value = float(means.loc[var, name])
            lines.append(f"    {var}: {value:.3f}{_mean_hint(value)}")
        lines.append("")
    lines.append("Values are cluster means; focus on the variables that differ most between clusters.")
    return "\n".join(lines) + "\n"


def _output_section(data: ExtractedAnalysisData, word_limit: int) -> str:
    clusters = list(data["component_names"])
    shown = clusters[:2]
    body = ",\n".join(
        f'  "{c}": {{\n    "label": "Short descriptive name",\n    "interpretation": "Interpretation here"\n  }}'
        for c in shown
    )
    if len(clusters) > len(shown):
        body += ",\n  ..."
    lines = [
        "# OUTPUT INSTRUCTIONS",
        "Respond with ONLY a JSON object of this structure:",
        "",
        "```json",
        "{",
        body,
        "}",
        "```",
        "",
        "Requirements:",
        f"- Include every cluster as a key, using its exact name: {', '.join(clusters)}",
        f"- Each interpretation should be {word_target(word_limit)} words",
        "- Labels: 2-4 words",
        "- Describe what distinguishes each cluster from the others",
        "- Describe profiles in psychological or behavioral terms; be specific rather than generic",
        "- Use the variable descriptions to give the profiles meaning",
    ]
    if data["cluster_uncertainty"]:
        lines.append("- Give more confidence to clusters with lower uncertainty")
    return "\n".join(lines) + "\n"


def build_main_prompt_gm(
    data: ExtractedAnalysisData,
    variable_info: pd.DataFrame | None,
    word_limit: int,
    extra_context: str | None = None,
    guidelines: str | None = None,
) -> str:
    if guidelines:
        sections = [guidelines.strip() + "\n"]
    else:
        sections = [
            "# INTERPRETATION GUIDELINES\n"
            "- Name each cluster after the profile that sets it apart\n"
            "- Explain the profile using the variables with the most extreme means\n"
            f"- Aim for {word_target(word_limit)} words per interpretation\n"
        ]
    if extra_context:
        sections.append(f"# ADDITIONAL CONTEXT\n{extra_context.strip()}\n")
    n_obs = data["n_observations"]
    info = (
        f"Interpret the following {data['n_components']} clusters from a Gaussian mixture model with "
        f"{data['n_variables']} variables" + (f" and {n_obs} observations." if n_obs else ".")
    )
    sections.append(f"# MODEL INFORMATION\n{info}\nCovariance structure: {data['covariance_type']}\n")
    desc = descriptions(variable_info if variable_info is not None else data["variable_info"])
    shown = data["profile_variables"] or list(data["variable_names"])
    sections.append("# VARIABLE DESCRIPTIONS\n" + "\n".join(f"- {v}: {desc.get(v, '') or v}" for v in shown) + "\n")
    sections.append(_profiles_section(data))
    sections.append(_output_section(data, word_limit))
    return "\n".join(sections)


# ---------------------------------------------------------------------------
# Recovery hooks
# ---------------------------------------------------------------------------

_CLUSTER_ID_RE = re.compile(r"(?i)^cluster[_\s]*(\d+)$")


def _alias_pattern(component_id: str) -> str:
    match = _CLUSTER_ID_RE.match(component_id)
    if match:
        return r"(?i:cluster[_\s]*" + match.group(1) + r")(?!\d)"
    return re.escape(component_id) + r"(?!\w)"


def _find_key(parsed: Mapping[str, Any], component_id: str) -> Any:
    if component_id in parsed:
        return parsed[component_id]
    pattern = re.compile("^" + _alias_pattern(component_id) + "$")
    for key, value in parsed.items():
        if pattern.match(str(key).strip()):
            return value
    return None


def validate_parsed_gm(parsed: Any, expected_ids: Sequence[str], threshold: float) -> dict[str, dict[str, str]] | None:
    """Accept ``Cluster 1`` style key aliases and bare-string values as well as label/interpretation objects."""
    if not isinstance(parsed, Mapping):
        return None
    normalized: dict[str, Any] = {}
    for cid in expected_ids:
        value = _find_key(parsed, cid)
        if value is None:
            continue
        if isinstance(value, str):
            value = {"label": cid.replace("_", " "), "interpretation": value}
        normalized[cid] = value
    return validate_component_mapping(normalized, expected_ids, threshold)


def extract_cluster_lines(text: str, expected_ids: Sequence[str]) -> dict[str, dict[str, str]]:
    """``Cluster 1: text`` / ``- Cluster_1 - text`` on a single line."""
    out: dict[str, dict[str, str]] = {}
    for cid in expected_ids:
        match = re.search(
            r"^[ \t]*(?:[-*>]+[ \t]*)?" + _alias_pattern(cid) + r"[ \t]*[:\-][ \t]*(?P<text>[^\n]+)",
            text,
            re.MULTILINE,
        )
        if match and match.group("text").strip():
            out[cid] = {"label": cid.replace("_", " "), "interpretation": match.group("text").strip().strip('"')}
    return out


def pattern_strategies_gm() -> tuple[Strategy, ...]:
    """The shared strategies with `Cluster 1` style aliases, then one-line cluster entries."""
    aliased = tuple(
        partial(strategy, id_pattern=_alias_pattern)
        for strategy in (extract_key_value_objects, extract_bare_values, extract_markdown_headings)
    )
    return aliased + (extract_cluster_lines,)


def default_component_name_gm(index: int) -> str:
    return f"Cluster {index}"


def default_result_gm(expected_ids: Sequence[str]) -> dict[str, dict[str, str]]:
    return {
        cid: {"label": default_component_name_gm(i), "interpretation": PLACEHOLDER_INTERPRETATION}
        for i, cid in enumerate(expected_ids, start=1)
    }


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------


def cluster_separation(means: pd.DataFrame, covariances: np.ndarray) -> pd.DataFrame:
    """
    Pairwise Mahalanobis distances between cluster means under the pair's averaged covariance.

    Falls back to Euclidean distance for a pair whose averaged covariance is singular.
    """
    names = list(means.columns)
    k = len(names)
    out = np.zeros((k, k))
    values = means.to_numpy(dtype=float)
    for i in range(k - 1):
        for j in range(i + 1, k):
            diff = values[:, i] - values[:, j]
            avg_cov = (covariances[i] + covariances[j]) / 2.0
            try:
                dist = float(np.sqrt(diff @ np.linalg.solve(avg_cov, diff)))
            except np.linalg.LinAlgError:
                dist = float(np.sqrt(np.sum(diff ** 2)))
            out[i, j] = out[j, i] = dist
    return pd.DataFrame(out, index=names, columns=names)


def build_diagnostics_gm(data: ExtractedAnalysisData) -> DiagnosticsSummary:
    names = list(data["component_names"])
    stats: dict[str, Any] = {
        "n_clusters": data["n_components"],
        "n_variables": data["n_variables"],
        "n_observations": data["n_observations"],
        "covariance_type": data["covariance_type"],
    }
    for key in ("bic", "loglik", "icl"):
        if data[key] is not None and not np.isnan(data[key]):
            stats[key] = round(data[key], 2)
    warnings: list[str] = []
    notes: list[str] = []
    tables: dict[str, pd.DataFrame] = {}

    proportions = np.array([data["proportions"][n] for n in names])
    if data["n_observations"]:
        sizes = proportions * data["n_observations"]
        small = [f"{n} (n={int(round(s))})" for n, s in zip(names, sizes) if s < data["min_cluster_size"]]
        if small:
            warnings.append(f"Small clusters detected: {', '.join(small)}")
    if proportions.min() > 0:
        ratio = float(proportions.max() / proportions.min())
        stats["size_ratio"] = round(ratio, 2)
        if ratio > MAX_SIZE_RATIO:
            warnings.append(f"Highly unbalanced cluster sizes (ratio: {ratio:.1f}:1)")

    threshold = data["separation_threshold"]
    uncertainty = data["uncertainty"]
    if uncertainty is not None and len(uncertainty):
        avg = float(np.nanmean(uncertainty))
        high_pct = float(np.nanmean(uncertainty > threshold) * 100)
        stats["avg_uncertainty"] = round(avg, 3)
        stats["high_uncertainty_pct"] = round(high_pct, 1)
        if avg > threshold:
            warnings.append(f"High average uncertainty ({avg:.3f}) suggests overlapping clusters")
        if high_pct > HIGH_UNCERTAINTY_SHARE:
            warnings.append(f"{high_pct:.1f}% of observations have uncertain cluster assignments")
        per_cluster = data["cluster_uncertainty"] or {}
        uncertain = [f"{n} ({u:.3f})" for n, u in per_cluster.items() if not np.isnan(u) and u > threshold]
        if uncertain:
            notes.append(f"Clusters with high uncertainty: {', '.join(uncertain)}")

    if len(names) >= 2:
        separation = cluster_separation(data["means"], data["covariances"])
        tables["separation"] = separation
        upper = separation.to_numpy()[np.triu_indices(len(names), k=1)]
        min_sep = float(upper.min())
        stats["min_separation"] = round(min_sep, 2)
        if min_sep < MIN_SEPARATION:
            warnings.append(f"Poor cluster separation detected (minimum distance: {min_sep:.2f})")
            pairs = [
                f"{names[i]}-{names[j]}"
                for i in range(len(names) - 1)
                for j in range(i + 1, len(names))
                if separation.iat[i, j] < MIN_SEPARATION
            ]
            notes.append(f"Overlapping cluster pairs: {', '.join(pairs)}")

    if data["covariance_type"] == "VVV":
        notes.append("Using the most complex covariance structure (VVV); consider simpler models if overfitting")
    elif data["covariance_type"] == "EII":
        notes.append("Using the simplest covariance structure (EII); clusters are spherical with equal variance")

    if not warnings and not notes:
        notes.append("Clustering appears well-defined with good separation")

    tables["profiles"] = data["means"].copy()
    return DiagnosticsSummary(statistics=stats, warnings=tuple(warnings), notes=tuple(notes), tables=tables)


# ---------------------------------------------------------------------------
# Collaborator payloads
# ---------------------------------------------------------------------------


def export_payload_gm(result: Any) -> dict[str, Any]:
    data = result.data
    clusters = []
    for name in data["component_names"]:
        entry = result.recovered[name]
        clusters.append(
            {
                "cluster": name,
                "label": entry.label,
                "interpretation": entry.interpretation,
                "was_fallback": entry.was_fallback,
                "proportion": data["proportions"][name],
                "size": None if data["cluster_sizes"] is None else data["cluster_sizes"][name],
            }
        )
    return {
        "analysis_type": "gm",
        "covariance_type": data["covariance_type"],
        "clusters": clusters,
        "warnings": list(result.diagnostics.warnings),
        "tokens": {"input": result.tokens.input_tokens, "output": result.tokens.output_tokens},
    }


def plot_payload_gm(data: ExtractedAnalysisData, recovered: RecoveredResult) -> dict[str, Any]:
    means: pd.DataFrame = data["means"].copy()
    if data["profile_variables"]:
        means = means.loc[list(data["profile_variables"])]
    means.columns = [f"{c}: {recovered[c].label}" if c in recovered else c for c in means.columns]
    return {"kind": "cluster_profiles", "matrix": means, "proportions": dict(data["proportions"])}


CAPABILITIES = AnalysisCapabilitySet(
    analysis_type="gm",
    component_label="cluster",
    description="Gaussian mixture cluster profiles",
    extract=extract_gm,
    build_system_prompt=build_system_prompt_gm,
    build_main_prompt=build_main_prompt_gm,
    validate_parsed=validate_parsed_gm,
    pattern_strategies=pattern_strategies_gm,
    default_result=default_result_gm,
    build_diagnostics=build_diagnostics_gm,
    build_report=build_report_gm,
    validate_requirements=validate_requirements_gm,
    default_component_name=default_component_name_gm,
    export_payload=export_payload_gm,
    plot_payload=plot_payload_gm,
)
