from __future__ import annotations

import pandas as pd

from ..models import ReportContext
from ..text import format_loading, format_percent
from .formatting import ReportFormatter, diagnostics_lines, fallback_lines, header_lines


def _names_section(fmt: ReportFormatter, context: ReportContext) -> list[str]:
    data = context.data
    variance = data["variance_explained"]
    lines = fmt.section("Suggested Factor Names")
    for i, factor in enumerate(data["component_names"], start=1):
        label = context.recovered[factor].label
        head = fmt.bold(f"Factor {i} ({factor}, {format_percent(variance[factor])}):")
        lines.append(f"- {head} {fmt.italic(label)}")
    lines.append("")
    lines.append(fmt.bold(f"Total variance explained by all factors: {format_percent(sum(variance.values()))}"))
    return lines


def _correlations_section(fmt: ReportFormatter, context: ReportContext) -> list[str]:
    phi: pd.DataFrame | None = context.data["factor_cor_mat"]
    if phi is None:
        return []
    lines = fmt.section("Factor Correlations")
    for factor in phi.index:
        others = ", ".join(f"{o} = {format_loading(phi.loc[factor, o])}" for o in phi.columns if o != factor)
        if others:
            lines.append(fmt.bullet(f"{fmt.bold(factor + ':')} {others}"))
    return lines


def _details_section(fmt: ReportFormatter, context: ReportContext) -> list[str]:
    data = context.data
    desc = dict(zip(data["variable_info"]["variable"], data["variable_info"]["description"]))
    lines = fmt.section("Detailed Factor Interpretations")
    for i, factor in enumerate(data["component_names"], start=1):
        entry = context.recovered[factor]
        summary = data["factor_summaries"][factor]
        lines.extend(fmt.section(f"Factor {i} ({factor}): {entry.label}", depth=2))
        if summary["used_emergency_rule"]:
            lines.append(fmt.keyval("Loadings", f"none >= {data['cutoff']}; top {data['n_emergency']} shown (emergency rule)"))
        else:
            lines.append(fmt.keyval("Significant loadings", str(len(summary["variables"]))))
        lines.append(fmt.keyval("Variance explained", format_percent(data["variance_explained"][factor])))
        lines.append("")
        for var, value in summary["variables"]:
            text = desc.get(var, "")
            name = fmt.bold(var)
            lines.append(fmt.bullet(f"{name} ({text}): {format_loading(value)}" if text else f"{name}: {format_loading(value)}"))
        lines.append("")
        lines.append(fmt.bold("Interpretation:"))
        lines.append(fmt.paragraph(entry.interpretation))
    return lines


def _loading_problem_sections(fmt: ReportFormatter, context: ReportContext) -> list[str]:
    tables = context.diagnostics.tables
    cutoff = context.data["cutoff"]
    lines: list[str] = []
    cross = tables.get("cross_loadings")
    if cross is not None and not cross.empty:
        lines.extend(fmt.section("Cross-Loading Variables"))
        lines.append(f"Variables loading on multiple factors (>= {cutoff}):")
        lines.append("")
        for row in cross.itertuples(index=False):
            label = f"{fmt.bold(row.variable)} ({row.description})" if row.description else fmt.bold(row.variable)
            lines.append(fmt.bullet(f"{label}: {row.loadings}"))
    none = tables.get("no_loadings")
    if none is not None and not none.empty:
        lines.extend(fmt.section("Variables Not Covered by Any Factor"))
        lines.append(f"Variables with no absolute loading >= {cutoff} (highest shown):")
        lines.append("")
        for row in none.itertuples(index=False):
            label = f"{fmt.bold(row.variable)} ({row.description})" if row.description else fmt.bold(row.variable)
            lines.append(fmt.bullet(f"{label}: {row.highest_loading}"))
    return lines


def build_report_fa(
    context: ReportContext,
    *,
    format: str = "plain",
    heading_level: int = 1,
    suppress_heading: bool = False,
    max_line_length: int = 80,
) -> str:
    fmt = ReportFormatter(format=format, heading_level=heading_level, max_line_length=max_line_length)
    data = context.data
    lines = header_lines(
        fmt,
        "Factor Analysis Interpretation",
        context,
        [("Number of factors", data["n_components"]), ("Loading cutoff", data["cutoff"])],
        suppress_heading=suppress_heading,
    )
    lines.extend(_names_section(fmt, context))
    lines.extend(_correlations_section(fmt, context))
    lines.extend(_details_section(fmt, context))
    lines.extend(_loading_problem_sections(fmt, context))
    lines.extend(diagnostics_lines(fmt, context.diagnostics))
    lines.extend(fallback_lines(fmt, context, "factor"))
    return fmt.render(lines)
