from __future__ import annotations

from typing import Any, Mapping, Sequence

from ..models import TokenUsage
from .formatting import ReportFormatter


def _formatting_details(formatting: Mapping[str, Any]) -> list[str]:
    details: list[str] = []
    if formatting.get("case", "original") != "original":
        details.append(f"Case: {formatting['case']}")
    sep = formatting.get("sep", " ")
    if sep != " ":
        details.append(f"Separator: '{sep or 'none'}'")
    if formatting.get("remove_articles"):
        details.append("Articles removed")
    if formatting.get("remove_prepositions"):
        details.append("Prepositions removed")
    if formatting.get("abbreviate"):
        details.append("Abbreviation enabled")
    if formatting.get("max_chars") is not None:
        details.append(f"Max chars: {formatting['max_chars']}")
    return details


def build_report_label(
    labels: Mapping[str, str],
    *,
    label_type: str,
    formatting: Mapping[str, Any],
    tokens: TokenUsage,
    llm_provider: str | None = None,
    llm_model: str | None = None,
    fallback_ids: Sequence[str] = (),
    reformatted: bool = False,
    format: str = "plain",
    heading_level: int = 1,
    suppress_heading: bool = False,
    max_line_length: int = 80,
) -> str:
    fmt = ReportFormatter(format=format, heading_level=heading_level, max_line_length=max_line_length)
    lines: list[str] = [] if suppress_heading else fmt.title("Variable Labels")

    lines.append(fmt.keyval("Label type", label_type))
    if formatting.get("max_words") is not None:
        lines.append(fmt.keyval("Max words", formatting["max_words"]))
    lines.append(fmt.keyval("Variables labeled", len(labels)))
    if llm_provider:
        lines.append(fmt.keyval("LLM used", f"{llm_provider} - {llm_model or 'default'}"))
    lines.append(fmt.keyval("Tokens", f"input {tokens.input_tokens}, output {tokens.output_tokens}"))

    lines.extend(fmt.section("Formatting applied"))
    details = _formatting_details(formatting)
    if details:
        lines.extend(fmt.bullet(d) for d in details)
    else:
        lines.append(fmt.italic("No special formatting applied"))

    lines.extend(fmt.section("Generated labels"))
    width = max((len(v) for v in labels), default=8)
    if fmt.markdown:
        lines.append("| Variable | Label |")
        lines.append("|---|---|")
        lines.extend(f"| {var} | {label} |" for var, label in labels.items())
    else:
        lines.append(f"{'Variable'.ljust(width)}  Label")
        lines.append(f"{'-' * width}  {'-' * max((len(v) for v in labels.values()), default=5)}")
        lines.extend(f"{var.ljust(width)}  {label}" for var, label in labels.items())

    if fallback_ids:
        lines.extend(fmt.section("Low-confidence labels"))
        lines.append(
            fmt.paragraph(
                "The following variables could not be read from a well-formed response and were "
                f"recovered by pattern matching or derived from their descriptions: {', '.join(fallback_ids)}."
            )
        )
    if reformatted:
        lines.append("")
        lines.append(fmt.italic("Labels were reformatted from the original LLM output."))
    return fmt.render(lines)
