from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

import numpy as np
import pandas as pd

from ..errors import DataShapeError
from ..models import ComponentInterpretation, DiagnosticsSummary, ExtractedAnalysisData, RecoveredResult
from ..report.fa import build_report_fa
from ..recovery import DEFAULT_STRATEGIES, PLACEHOLDER_INTERPRETATION, Strategy, validate_component_mapping
from ..text import format_loading, format_percent
from ._util import align_variable_info, as_2d_frame, default_names, descriptions, get_field, word_target
from .base import AnalysisCapabilitySet

logger = logging.getLogger(__name__)

UNDEFINED_LABEL = "undefined"
UNDEFINED_INTERPRETATION = "NA"
EMERGENCY_SUFFIX = " (n.s.)"


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def _loadings_source(fit_results: Any) -> tuple[Any, Any, list[str] | None]:
    """Return (loadings, factor correlations, variable names) from any supported fitted-model shape."""
    if isinstance(fit_results, (pd.DataFrame, np.ndarray, list, tuple)):
        return fit_results, None, None
    if isinstance(fit_results, Mapping):
        loadings = get_field(fit_results, "loadings")
        if loadings is None:
            raise DataShapeError(
                "Factor analysis input must contain a 'loadings' entry (variables x factors); "
                f"got keys: {', '.join(map(str, fit_results.keys())) or 'none'}"
            )
        return loadings, get_field(fit_results, "factor_cor_mat", "Phi", "phi"), None
    # factor_analyzer.FactorAnalyzer style
    loadings = get_field(fit_results, "loadings_", "loadings")
    if loadings is not None:
        return loadings, get_field(fit_results, "phi_", "Phi", "factor_cor_mat"), None
    # scikit-learn FactorAnalysis / PCA style: components_ is factors x variables
    components = get_field(fit_results, "components_")
    if components is not None:
        names = get_field(fit_results, "feature_names_in_")
        return np.asarray(components, dtype=float).T, None, list(names) if names is not None else None
    raise DataShapeError(
        f"Unsupported factor analysis input of type {type(fit_results).__name__}. Expected a loadings "
        "DataFrame or array, a mapping with 'loadings', or a fitted model exposing loadings_ or components_."
    )


def _factor_summary(column: pd.Series, cutoff: float, n_emergency: int, sort_loadings: bool) -> dict[str, Any]:
    magnitude = column.abs()
    significant = column[magnitude >= cutoff]
    used_emergency = False
    if significant.empty and n_emergency > 0:
        top = magnitude.sort_values(ascending=False, kind="mergesort").index[:n_emergency]
        significant = column.loc[top]
        used_emergency = True
    if sort_loadings:
        significant = significant.reindex(significant.abs().sort_values(ascending=False, kind="mergesort").index)
    return {
        "variables": tuple((str(v), float(x)) for v, x in significant.items()),
        "used_emergency_rule": used_emergency,
        "is_undefined": significant.empty,
    }


def extract_fa(fit_results: Any, variable_info: Any, params: Mapping[str, Any]) -> ExtractedAnalysisData:
    raw_loadings, phi, feature_names = _loadings_source(fit_results)
    loadings = as_2d_frame(raw_loadings, what="loadings")

    if feature_names is not None and len(feature_names) == len(loadings.index):
        loadings.index = [str(n) for n in feature_names]
    elif list(loadings.index) == [str(i) for i in range(len(loadings.index))]:
        # unnamed rows take their names from the metadata table when it lines up
        if isinstance(variable_info, pd.DataFrame) and "variable" in variable_info.columns and len(variable_info) == len(loadings):
            loadings.index = variable_info["variable"].astype(str).tolist()
        else:
            loadings.index = default_names(range(len(loadings.index)), "V")
    loadings.columns = default_names(list(loadings.columns), "F")

    variable_names = list(loadings.index)
    factor_names = list(loadings.columns)
    info = align_variable_info(variable_info, variable_names)

    factor_cor_mat = None
    if phi is not None:
        factor_cor_mat = as_2d_frame(phi, what="factor correlation matrix")
        k = len(factor_names)
        if factor_cor_mat.shape != (k, k):
            raise DataShapeError(
                f"Factor correlation matrix must be {k}x{k} to match the loadings, got "
                f"{factor_cor_mat.shape[0]}x{factor_cor_mat.shape[1]}"
            )
        factor_cor_mat.index = factor_names
        factor_cor_mat.columns = factor_names

    cutoff = float(params["cutoff"])
    n_emergency = int(params["n_emergency"])
    sort_loadings = bool(params["sort_loadings"])
    n_variables = len(variable_names)
    summaries = {f: _factor_summary(loadings[f], cutoff, n_emergency, sort_loadings) for f in factor_names}
    variance = {f: float((loadings[f] ** 2).sum() / n_variables) for f in factor_names}

    return ExtractedAnalysisData(
        {
            "analysis_type": "fa",
            "n_components": len(factor_names),
            "n_variables": n_variables,
            "variable_names": variable_names,
            "component_names": factor_names,
            "loadings": loadings,
            "factor_cor_mat": factor_cor_mat,
            "variable_info": info,
            "cutoff": cutoff,
            "n_emergency": n_emergency,
            "hide_low_loadings": bool(params["hide_low_loadings"]),
            "sort_loadings": sort_loadings,
            "factor_summaries": summaries,
            "variance_explained": variance,
        }
    )


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """# ROLE
You are an expert psychometrician specializing in exploratory factor analysis.

# TASK
Interpret a factor solution: identify and name the construct behind each factor, explain which variables define it and where its boundaries lie, and describe how the factors relate to each other.

# KEY DEFINITIONS
- **Loading**: correlation (-1 to +1) between a variable and a factor
- **Significant loading**: a loading whose absolute value is at or above the cutoff
- **Convergent validity**: variables measuring the same construct load together
- **Discriminant validity**: factors represent meaningfully distinct constructs
- **Factor correlation**: strength of the relationship between two factors
- **Variance explained**: share of total variance captured by a factor
- **Emergency rule**: when no loading meets the cutoff, the highest absolute loadings are used instead
"""


def build_system_prompt_fa() -> str:
    return SYSTEM_PROMPT


def _guidelines(word_limit: int) -> str:
    target = word_target(word_limit)
    return (
        "# INTERPRETATION GUIDELINES\n\n"
        "## Factor Naming\n"
        "- Identify the underlying construct each factor represents\n"
        "- Create a 2-4 word name that captures it\n"
        "- Ground names in domain knowledge and the additional context\n\n"
        "## Factor Interpretation\n"
        "- Explain why the significantly loading variables belong together\n"
        "- Consider strong positive and negative loadings as well as notable weak ones\n"
        "- Describe what the factor measures\n"
        "- Use the factor correlations and cross-loadings to relate factors to each other\n\n"
        "## Output Requirements\n"
        f"- Aim for {target} words per interpretation\n"
        "- Be concise, precise and domain-appropriate\n"
    )


def _loadings_section(data: ExtractedAnalysisData) -> str:
    loadings: pd.DataFrame = data["loadings"]
    cutoff = data["cutoff"]
    lines = [
        "# FACTOR LOADINGS",
        f"Cutoff: |loading| >= {cutoff} is significant",
    ]
    if data["n_emergency"] > 0:
        lines.append(f"Emergency rule: the top {data['n_emergency']} variables are used when a factor has no significant loadings")
    lines.append("")
    for factor in data["component_names"]:
        column = loadings[factor]
        if data["hide_low_loadings"]:
            shown = pd.Series(dict(data["factor_summaries"][factor]["variables"]), dtype=float)
        else:
            shown = column
        if data["sort_loadings"]:
            shown = shown.reindex(shown.abs().sort_values(ascending=False, kind="mergesort").index)
        entries = ", ".join(f"{var}={format_loading(val)}" for var, val in shown.items())
        lines.append(f"{factor}: {entries or '(no loadings shown)'}")
    variance = " ".join(f"{f}={format_percent(v)}" for f, v in data["variance_explained"].items())
    lines.append("")
    lines.append(f"Variance explained: {variance}")
    return "\n".join(lines) + "\n"


def _correlations_section(data: ExtractedAnalysisData) -> str:
    phi: pd.DataFrame | None = data["factor_cor_mat"]
    if phi is None:
        return ""
    lines = ["# FACTOR CORRELATIONS"]
    for factor in phi.index:
        others = ", ".join(f"{o}={format_loading(phi.loc[factor, o])}" for o in phi.columns if o != factor)
        if others:
            lines.append(f"{factor} with: {others}")
    return "\n".join(lines) + "\n"


def _output_format_section(data: ExtractedAnalysisData, word_limit: int) -> str:
    factors = list(data["component_names"])
    body = ",\n".join(
        f'  "{f}": {{\n    "label": "Generate name",\n    "interpretation": "Generate interpretation"\n  }}'
        for f in factors
    )
    undefined = [f for f in factors if data["factor_summaries"][f]["is_undefined"]]
    lines = [
        "# OUTPUT FORMAT",
        "Respond with ONLY valid JSON, using the factor names as object keys:",
        "",
        "```json",
        "{",
        body,
        "}",
        "```",
        "",
        "# CRITICAL REQUIREMENTS",
        f"- Include all {len(factors)} factors as keys, using their exact names: {', '.join(factors)}",
        "- Valid JSON syntax (quotes, commas, brackets)",
        "- No text before or after the JSON",
        "- Labels: 2-4 words",
        f"- Interpretations: {word_target(word_limit)} words each",
    ]
    if undefined:
        lines.append(
            f'- These factors have no significant loadings; respond with "{UNDEFINED_LABEL}" as label and '
            f'"{UNDEFINED_INTERPRETATION}" as interpretation: {", ".join(undefined)}'
        )
    return "\n".join(lines) + "\n"


def build_main_prompt_fa(
    data: ExtractedAnalysisData,
    variable_info: pd.DataFrame | None,
    word_limit: int,
    extra_context: str | None = None,
    guidelines: str | None = None,
) -> str:
    sections = [guidelines.strip() + "\n" if guidelines else _guidelines(word_limit)]
    if extra_context:
        sections.append(f"# ADDITIONAL CONTEXT\n{extra_context.strip()}\n")
    sections.append(
        "# MODEL INFORMATION\n"
        f"Exploratory factor analysis with {data['n_components']} factors and {data['n_variables']} variables.\n"
    )
    desc = descriptions(variable_info if variable_info is not None else data["variable_info"])
    sections.append(
        "# VARIABLE DESCRIPTIONS\n" + "\n".join(f"- {v}: {desc.get(v, '') or v}" for v in data["variable_names"]) + "\n"
    )
    sections.append(_loadings_section(data))
    correlations = _correlations_section(data)
    if correlations:
        sections.append(correlations)
    sections.append(_output_format_section(data, word_limit))
    return "\n".join(sections)


# ---------------------------------------------------------------------------
# Recovery hooks
# ---------------------------------------------------------------------------


def validate_parsed_fa(parsed: Any, expected_ids: Sequence[str], threshold: float) -> dict[str, dict[str, str]] | None:
    return validate_component_mapping(parsed, expected_ids, threshold)


def pattern_strategies_fa() -> tuple[Strategy, ...]:
    return DEFAULT_STRATEGIES


def default_component_name_fa(index: int) -> str:
    return f"Factor {index}"


def default_result_fa(expected_ids: Sequence[str]) -> dict[str, dict[str, str]]:
    return {
        cid: {"label": default_component_name_fa(i), "interpretation": PLACEHOLDER_INTERPRETATION}
        for i, cid in enumerate(expected_ids, start=1)
    }


def postprocess_fa(recovered: RecoveredResult, data: ExtractedAnalysisData) -> RecoveredResult:
    """Force undefined factors to the fixed undefined label and mark emergency-rule factors as not significant."""
    updates: dict[str, ComponentInterpretation] = {}
    for factor, summary in data["factor_summaries"].items():
        entry = recovered.components.get(factor)
        if entry is None:
            continue
        if summary["is_undefined"]:
            updates[factor] = ComponentInterpretation(UNDEFINED_LABEL, UNDEFINED_INTERPRETATION, entry.source)
        elif summary["used_emergency_rule"] and entry.source != "placeholder" and not entry.label.endswith(EMERGENCY_SUFFIX):
            updates[factor] = ComponentInterpretation(entry.label + EMERGENCY_SUFFIX, entry.interpretation, entry.source)
    return recovered.replace(updates) if updates else recovered


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------


def find_cross_loadings(loadings: pd.DataFrame, cutoff: float, variable_info: pd.DataFrame | None = None) -> pd.DataFrame:
    """Variables loading at or above ``cutoff`` on more than one factor."""
    desc = descriptions(variable_info)
    rows = []
    for var, row in loadings.iterrows():
        hits = row[row.abs() >= cutoff]
        if len(hits) > 1:
            hits = hits.reindex(hits.abs().sort_values(ascending=False, kind="mergesort").index)
            rows.append(
                {
                    "variable": var,
                    "description": desc.get(var, ""),
                    "loadings": ", ".join(f"{f} ({format_loading(v)})" for f, v in hits.items()),
                }
            )
    return pd.DataFrame(rows, columns=["variable", "description", "loadings"])


def find_no_loadings(loadings: pd.DataFrame, cutoff: float, variable_info: pd.DataFrame | None = None) -> pd.DataFrame:
    """Variables with no loading at or above ``cutoff``; the highest absolute loading is shown."""
    desc = descriptions(variable_info)
    rows = []
    for var, row in loadings.iterrows():
        if (row.abs() >= cutoff).any():
            continue
        top = row.abs().idxmax()
        rows.append(
            {
                "variable": var,
                "description": desc.get(var, ""),
                "highest_loading": f"{top} = {format_loading(row[top])}",
            }
        )
    return pd.DataFrame(rows, columns=["variable", "description", "highest_loading"])


def build_diagnostics_fa(data: ExtractedAnalysisData) -> DiagnosticsSummary:
    loadings: pd.DataFrame = data["loadings"]
    cutoff = data["cutoff"]
    info = data["variable_info"]
    cross = find_cross_loadings(loadings, cutoff, info)
    none = find_no_loadings(loadings, cutoff, info)

    warnings: list[str] = []
    notes: list[str] = []
    if not cross.empty:
        warnings.append(
            f"{len(cross)} variable(s) load on more than one factor (>= {cutoff}): {', '.join(cross['variable'])}"
        )
    if not none.empty:
        warnings.append(
            f"{len(none)} variable(s) have no loading >= {cutoff} on any factor: {', '.join(none['variable'])}"
        )
    summaries = data["factor_summaries"]
    emergency = [f for f, s in summaries.items() if s["used_emergency_rule"]]
    undefined = [f for f, s in summaries.items() if s["is_undefined"]]
    if emergency:
        notes.append(
            f"No significant loadings for {', '.join(emergency)}; the top {data['n_emergency']} loadings were used instead."
        )
    if undefined:
        warnings.append(f"Factor(s) without any loadings to interpret: {', '.join(undefined)}")

    variance = data["variance_explained"]
    return DiagnosticsSummary(
        statistics={
            "n_factors": data["n_components"],
            "n_variables": data["n_variables"],
            "cutoff": cutoff,
            "variance_explained": dict(variance),
            "total_variance_explained": float(sum(variance.values())),
            "n_cross_loadings": len(cross),
            "n_no_loadings": len(none),
            "emergency_factors": emergency,
            "undefined_factors": undefined,
        },
        warnings=tuple(warnings),
        notes=tuple(notes),
        tables={"cross_loadings": cross, "no_loadings": none},
    )


# ---------------------------------------------------------------------------
# Collaborator payloads
# ---------------------------------------------------------------------------


def export_payload_fa(result: Any) -> dict[str, Any]:
    data = result.data
    factors = []
    for factor in data["component_names"]:
        entry = result.recovered[factor]
        factors.append(
            {
                "factor": factor,
                "label": entry.label,
                "interpretation": entry.interpretation,
                "was_fallback": entry.was_fallback,
                "variance_explained": data["variance_explained"][factor],
                "significant_variables": [v for v, _ in data["factor_summaries"][factor]["variables"]],
            }
        )
    return {
        "analysis_type": "fa",
        "cutoff": data["cutoff"],
        "factors": factors,
        "warnings": list(result.diagnostics.warnings),
        "tokens": {"input": result.tokens.input_tokens, "output": result.tokens.output_tokens},
    }


def plot_payload_fa(data: ExtractedAnalysisData, recovered: RecoveredResult) -> dict[str, Any]:
    loadings: pd.DataFrame = data["loadings"].copy()
    loadings.columns = [f"{f}: {recovered[f].label}" if f in recovered else f for f in loadings.columns]
    return {"kind": "loadings_heatmap", "matrix": loadings, "cutoff": data["cutoff"]}


CAPABILITIES = AnalysisCapabilitySet(
    analysis_type="fa",
    component_label="factor",
    description="Exploratory factor analysis loadings",
    extract=extract_fa,
    build_system_prompt=build_system_prompt_fa,
    build_main_prompt=build_main_prompt_fa,
    validate_parsed=validate_parsed_fa,
    pattern_strategies=pattern_strategies_fa,
    default_result=default_result_fa,
    build_diagnostics=build_diagnostics_fa,
    build_report=build_report_fa,
    postprocess_result=postprocess_fa,
    default_component_name=default_component_name_fa,
    export_payload=export_payload_fa,
    plot_payload=plot_payload_fa,
)
