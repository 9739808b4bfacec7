from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Callable, Optional

from ..errors import CapabilityNotImplemented


# Signatures, by operation:
#   extract(fit_results, variable_info, params) -> ExtractedAnalysisData
#   build_system_prompt() -> str
#   build_main_prompt(data, variable_info, word_limit, extra_context, guidelines=None) -> str
#   validate_parsed(parsed, expected_ids, threshold) -> dict[str, dict[str, str]] | None
#   pattern_strategies() -> Sequence[Strategy]
#   default_result(expected_ids) -> dict[str, dict[str, str]]
#   build_diagnostics(data) -> DiagnosticsSummary
#   build_report(context, *, format, heading_level, suppress_heading, max_line_length) -> str
#   validate_requirements(fit_results, variable_info, params) -> None
#   postprocess_result(recovered, data) -> RecoveredResult
#   default_component_name(index) -> str
#   export_payload(result) -> dict
#   plot_payload(data, recovered) -> dict
MANDATORY_OPERATIONS = (
    "extract",
    "build_system_prompt",
    "build_main_prompt",
    "validate_parsed",
    "pattern_strategies",
    "default_result",
    "build_diagnostics",
    "build_report",
)

OPTIONAL_OPERATIONS = (
    "validate_requirements",
    "postprocess_result",
    "default_component_name",
    "export_payload",
    "plot_payload",
)


@dataclass(frozen=True)
class AnalysisCapabilitySet:
    """
    The pluggable operations one analysis family supplies.

    Registration does not check completeness. A missing mandatory operation is only
    reported when something asks for it through :meth:`require`.
    """

    analysis_type: str
    component_label: str = "component"
    description: str = ""

    extract: Optional[Callable[..., Any]] = None
    build_system_prompt: Optional[Callable[..., Any]] = None
    build_main_prompt: Optional[Callable[..., Any]] = None
    validate_parsed: Optional[Callable[..., Any]] = None
    pattern_strategies: Optional[Callable[..., Any]] = None
    default_result: Optional[Callable[..., Any]] = None
    build_diagnostics: Optional[Callable[..., Any]] = None
    build_report: Optional[Callable[..., Any]] = None

    validate_requirements: Optional[Callable[..., Any]] = None
    postprocess_result: Optional[Callable[..., Any]] = None
    default_component_name: Optional[Callable[..., Any]] = None
    export_payload: Optional[Callable[..., Any]] = None
    plot_payload: Optional[Callable[..., Any]] = None

    def require(self, operation: str) -> Callable[..., Any]:
        if operation not in MANDATORY_OPERATIONS and operation not in OPTIONAL_OPERATIONS:
            raise CapabilityNotImplemented(
                f"Unknown capability operation '{operation}'. "
                f"Known operations: {', '.join(MANDATORY_OPERATIONS + OPTIONAL_OPERATIONS)}",
                analysis_type=self.analysis_type,
                operation=operation,
            )
        fn = getattr(self, operation)
        if fn is None:
            raise CapabilityNotImplemented(
                f"Analysis type '{self.analysis_type}' does not implement operation '{operation}'.",
                analysis_type=self.analysis_type,
                operation=operation,
            )
        return fn

    def optional(self, operation: str) -> Optional[Callable[..., Any]]:
        if operation not in OPTIONAL_OPERATIONS:
            raise ValueError(f"'{operation}' is not an optional operation")
        return getattr(self, operation)

    def missing_operations(self) -> tuple[str, ...]:
        return tuple(op for op in MANDATORY_OPERATIONS if getattr(self, op) is None)

    @property
    def is_complete(self) -> bool:
        return not self.missing_operations()

    def implemented_operations(self) -> tuple[str, ...]:
        names = {f.name for f in fields(self)}
        return tuple(
            op for op in MANDATORY_OPERATIONS + OPTIONAL_OPERATIONS if op in names and getattr(self, op) is not None
        )
