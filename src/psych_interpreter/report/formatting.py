from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from ..config import OutputFormat
from ..errors import ParameterValidationError
from ..models import DiagnosticsSummary, ReportContext
from ..text import wrap_text


@dataclass(frozen=True)
class ReportFormatter:
    """
    Renders report elements in either plain or markdown mode.

    Every section builder writes through one of these so both modes stay in step.
    Plain mode underlines titles and wraps prose to ``max_line_length``; markdown mode
    uses ``#`` headings starting at ``heading_level`` and ``**bold**`` emphasis.
    """

    format: str = OutputFormat.PLAIN.value
    heading_level: int = 1
    max_line_length: int = 80

    def __post_init__(self) -> None:
        fmt = self.format.value if isinstance(self.format, OutputFormat) else str(self.format)
        if fmt not in {f.value for f in OutputFormat}:
            raise ParameterValidationError(
                f"Unknown report format '{fmt}'. Supported: {', '.join(f.value for f in OutputFormat)}"
            )
        object.__setattr__(self, "format", fmt)

    @property
    def markdown(self) -> bool:
        return self.format == OutputFormat.MARKDOWN.value

    def title(self, text: str) -> list[str]:
        if self.markdown:
            return [f"{'#' * self.heading_level} {text}", ""]
        return [text.upper(), "=" * len(text), ""]

    def section(self, text: str, depth: int = 1) -> list[str]:
        if self.markdown:
            level = min(6, self.heading_level + depth)
            return ["", f"{'#' * level} {text}", ""]
        rule = "-" if depth <= 1 else "~"
        return ["", text.upper() if depth <= 1 else text, rule * len(text), ""]

    def bold(self, text: str) -> str:
        return f"**{text}**" if self.markdown else text

    def italic(self, text: str) -> str:
        return f"*{text}*" if self.markdown else text

    def keyval(self, key: str, value: object) -> str:
        if self.markdown:
            return f"**{key}:** {value}  "
        return f"{key}: {value}"

    def bullet(self, text: str) -> str:
        line = f"- {text}"
        return line if self.markdown else wrap_text(line, self.max_line_length)

    def paragraph(self, text: str) -> str:
        return text if self.markdown else wrap_text(text, self.max_line_length)

    def render(self, lines: Iterable[str]) -> str:
        out: list[str] = []
        for line in lines:
            # collapse runs of blank lines
            if not line.strip() and out and not out[-1].strip():
                continue
            out.append(line)
        return "\n".join(out).strip() + "\n"


def header_lines(fmt: ReportFormatter, title: str, context: ReportContext, facts: Iterable[tuple[str, object]], *, suppress_heading: bool = False) -> list[str]:
    lines: list[str] = [] if suppress_heading else fmt.title(title)
    for key, value in facts:
        lines.append(fmt.keyval(key, value))
    if context.llm_provider:
        lines.append(fmt.keyval("LLM used", f"{context.llm_provider} - {context.llm_model or 'default'}"))
        lines.append(fmt.keyval("Tokens", f"input {context.tokens.input_tokens}, output {context.tokens.output_tokens}"))
    if context.elapsed_seconds is not None:
        lines.append(fmt.keyval("Elapsed", f"{context.elapsed_seconds:.1f}s"))
    return lines


def diagnostics_lines(fmt: ReportFormatter, diagnostics: DiagnosticsSummary, title: str = "Diagnostics") -> list[str]:
    if not diagnostics.warnings and not diagnostics.notes:
        return []
    lines = fmt.section(title)
    if diagnostics.warnings:
        lines.append(fmt.bold("Warnings:"))
        lines.extend(fmt.bullet(w) for w in diagnostics.warnings)
        lines.append("")
    if diagnostics.notes:
        lines.append(fmt.bold("Notes:"))
        lines.extend(fmt.bullet(n) for n in diagnostics.notes)
    return lines


def fallback_lines(fmt: ReportFormatter, context: ReportContext, component_label: str) -> list[str]:
    lines: list[str] = []
    fallback = context.recovered.fallback_ids
    if fallback:
        lines.extend(fmt.section("Low-confidence interpretations"))
        lines.append(
            fmt.paragraph(
                f"The following {component_label}s could not be read from a well-formed response "
                f"and were recovered by pattern matching or replaced by placeholders: {', '.join(fallback)}."
            )
        )
    for notice in context.notices:
        lines.append("")
        lines.append(fmt.paragraph(fmt.italic(notice)))
    return lines
