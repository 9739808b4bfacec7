from __future__ import annotations

import numpy as np
import pandas as pd

from ..models import ReportContext
from .formatting import ReportFormatter, diagnostics_lines, fallback_lines, header_lines


def _size_text(context: ReportContext, name: str) -> str:
    data = context.data
    pct = data["proportions"][name] * 100
    sizes = data["cluster_sizes"]
    if sizes is None:
        return f"{pct:.1f}%"
    return f"n={int(round(sizes[name]))}, {pct:.1f}%"


def _names_section(fmt: ReportFormatter, context: ReportContext) -> list[str]:
    lines = fmt.section("Suggested Cluster Names")
    for i, name in enumerate(context.data["component_names"], start=1):
        label = context.recovered[name].label
        lines.append(f"- {fmt.bold(f'Cluster {i} ({_size_text(context, name)}):')} {fmt.italic(label)}")
    return lines


def _interpretations_section(fmt: ReportFormatter, context: ReportContext) -> list[str]:
    data = context.data
    cluster_uncertainty = data["cluster_uncertainty"] or {}
    lines = fmt.section("Cluster Interpretations")
    for name in data["component_names"]:
        entry = context.recovered[name]
        lines.extend(fmt.section(f"{name}: {entry.label} ({_size_text(context, name)})", depth=2))
        unc = cluster_uncertainty.get(name)
        if unc is not None and not np.isnan(unc):
            lines.append(fmt.keyval("Average uncertainty", f"{unc:.3f}"))
            lines.append("")
        lines.append(fmt.paragraph(entry.interpretation))
    return lines


def distinguishing_variables(means: pd.DataFrame, top_n: int = 3) -> dict[str, list[tuple[str, float]]]:
    """Per cluster, the variables whose mean departs most from the average of the other clusters."""
    out: dict[str, list[tuple[str, float]]] = {}
    for name in means.columns:
        diff = means[name] - means.drop(columns=[name]).mean(axis=1)
        top = diff.abs().sort_values(ascending=False, kind="mergesort").index[:top_n]
        out[name] = [(str(v), float(diff[v])) for v in top]
    return out


def _distinguishing_section(fmt: ReportFormatter, context: ReportContext) -> list[str]:
    means: pd.DataFrame = context.data["means"]
    if means.shape[1] < 2:
        return []
    lines = fmt.section("Key Distinguishing Variables")
    for name, top in distinguishing_variables(means).items():
        parts = ", ".join(f"{var} ({'+' if diff >= 0 else ''}{diff:.2f})" for var, diff in top)
        lines.append(fmt.bullet(f"{fmt.bold(name + ':')} {parts}"))
    return lines


def build_report_gm(
    context: ReportContext,
    *,
    format: str = "plain",
    heading_level: int = 1,
    suppress_heading: bool = False,
    max_line_length: int = 80,
) -> str:
    fmt = ReportFormatter(format=format, heading_level=heading_level, max_line_length=max_line_length)
    data = context.data
    facts: list[tuple[str, object]] = [
        ("Number of clusters", data["n_components"]),
        ("Covariance structure", data["covariance_type"]),
    ]
    if data["n_observations"]:
        facts.append(("Observations", data["n_observations"]))
    if data["bic"] is not None:
        facts.append(("BIC", f"{data['bic']:.2f}"))
    lines = header_lines(fmt, "Gaussian Mixture Model Interpretation", context, facts, suppress_heading=suppress_heading)
    lines.extend(_names_section(fmt, context))
    lines.extend(_interpretations_section(fmt, context))
    lines.extend(diagnostics_lines(fmt, context.diagnostics))
    lines.extend(_distinguishing_section(fmt, context))
    lines.extend(fallback_lines(fmt, context, "cluster"))
    return fmt.render(lines)
