from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Optional

import numpy as np
import pandas as pd

from .errors import DataShapeError


UNIVERSAL_FIELDS = ("analysis_type", "n_components", "n_variables", "variable_names", "component_names")


def _freeze(mapping: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


def _deep_freeze(value: Any) -> Any:
    """Read-only copy of a nested field value. pandas objects are copied again on every read."""
    if isinstance(value, (pd.DataFrame, pd.Series)):
        return value.copy()
    if isinstance(value, np.ndarray):
        frozen = value.copy()
        frozen.setflags(write=False)
        return frozen
    if isinstance(value, Mapping):
        return MappingProxyType({k: _deep_freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_deep_freeze(v) for v in value)
    return value


class ExtractedAnalysisData(Mapping[str, Any]):
    """
    Normalized extractor output.

    A read-only mapping carrying the universal fields every analysis type provides
    plus whatever analysis-specific fields its extractor adds. Fields are also
    reachable as attributes (``data.loadings``).
    """

    __slots__ = ("_fields",)

    def __init__(self, fields: Mapping[str, Any]) -> None:
        missing = [name for name in UNIVERSAL_FIELDS if name not in fields]
        if missing:
            raise DataShapeError(f"Extracted data is missing universal fields: {', '.join(missing)}")
        data = dict(fields)
        data["analysis_type"] = str(data["analysis_type"])
        data["variable_names"] = tuple(str(v) for v in data["variable_names"])
        data["component_names"] = tuple(str(c) for c in data["component_names"])
        data["n_variables"] = int(data["n_variables"])
        data["n_components"] = int(data["n_components"])
        if len(data["variable_names"]) != data["n_variables"]:
            raise DataShapeError(
                f"n_variables is {data['n_variables']} but {len(data['variable_names'])} variable names were given"
            )
        if len(data["component_names"]) != data["n_components"]:
            raise DataShapeError(
                f"n_components is {data['n_components']} but {len(data['component_names'])} component names were given"
            )
        object.__setattr__(self, "_fields", MappingProxyType({k: _deep_freeze(v) for k, v in data.items()}))

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("ExtractedAnalysisData is immutable")

    def __getitem__(self, key: str) -> Any:
        value = self._fields[key]
        if isinstance(value, (pd.DataFrame, pd.Series)):
            return value.copy()
        return value

    def __iter__(self) -> Iterator[str]:
        return iter(self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self[name]
        except KeyError as exc:
            raise AttributeError(f"ExtractedAnalysisData has no field '{name}'") from exc

    def __repr__(self) -> str:
        return (
            f"ExtractedAnalysisData(analysis_type={self['analysis_type']!r}, "
            f"n_components={self['n_components']}, n_variables={self['n_variables']})"
        )


@dataclass(frozen=True)
class ComponentInterpretation:
    label: str
    interpretation: str
    source: str = "parsed"  # "parsed", "pattern" or "placeholder"

    @property
    def was_fallback(self) -> bool:
        return self.source != "parsed"

    def to_dict(self) -> dict[str, str]:
        return {"label": self.label, "interpretation": self.interpretation}


@dataclass(frozen=True)
class RecoveredResult:
    """Component id -> interpretation mapping, guaranteed to cover every expected id."""

    components: Mapping[str, ComponentInterpretation]
    tier: str  # "parsed", "pattern" or "default"

    def __post_init__(self) -> None:
        object.__setattr__(self, "components", _freeze(self.components))

    def __getitem__(self, component_id: str) -> ComponentInterpretation:
        return self.components[component_id]

    def __contains__(self, component_id: object) -> bool:
        return component_id in self.components

    def __iter__(self) -> Iterator[str]:
        return iter(self.components)

    def __len__(self) -> int:
        return len(self.components)

    @property
    def labels(self) -> dict[str, str]:
        return {k: v.label for k, v in self.components.items()}

    @property
    def interpretations(self) -> dict[str, str]:
        return {k: v.interpretation for k, v in self.components.items()}

    @property
    def fallback_ids(self) -> tuple[str, ...]:
        return tuple(k for k, v in self.components.items() if v.was_fallback)

    @property
    def has_fallback(self) -> bool:
        return bool(self.fallback_ids)

    def to_dict(self) -> dict[str, dict[str, str]]:
        return {k: v.to_dict() for k, v in self.components.items()}

    def replace(self, updates: Mapping[str, ComponentInterpretation]) -> "RecoveredResult":
        merged = dict(self.components)
        merged.update(updates)
        return RecoveredResult(components=merged, tier=self.tier)


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(self.input_tokens + other.input_tokens, self.output_tokens + other.output_tokens)


@dataclass(frozen=True)
class DiagnosticsSummary:
    statistics: Mapping[str, Any] = field(default_factory=dict)
    warnings: tuple[str, ...] = ()
    notes: tuple[str, ...] = ()
    tables: Mapping[str, pd.DataFrame] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "statistics", _freeze(self.statistics))
        object.__setattr__(self, "tables", _freeze(self.tables))
        object.__setattr__(self, "warnings", tuple(self.warnings))
        object.__setattr__(self, "notes", tuple(self.notes))

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)


@dataclass(frozen=True)
class PromptPair:
    system: str
    main: str


@dataclass(frozen=True)
class ReportContext:
    """Everything a report builder may render; assembled by the orchestrator."""

    data: ExtractedAnalysisData
    recovered: RecoveredResult
    diagnostics: DiagnosticsSummary
    tokens: TokenUsage
    llm_provider: str | None = None
    llm_model: str | None = None
    elapsed_seconds: float | None = None
    notices: tuple[str, ...] = ()


@dataclass(frozen=True)
class InterpretationResult:
    analysis_type: str
    data: ExtractedAnalysisData
    recovered: RecoveredResult
    diagnostics: DiagnosticsSummary
    tokens: TokenUsage
    report: str
    elapsed_seconds: float
    prompts: PromptPair
    raw_response: str
    preamble_tokens: int = 0
    notices: tuple[str, ...] = ()
    llm_provider: Optional[str] = None
    llm_model: Optional[str] = None

    @property
    def labels(self) -> dict[str, str]:
        return self.recovered.labels

    @property
    def interpretations(self) -> dict[str, str]:
        return self.recovered.interpretations

    def __str__(self) -> str:
        return self.report


@dataclass(frozen=True)
class LabelingResult:
    """
    Labels for a table of variables.

    ``parsed_labels`` holds the labels as recovered from the reply; ``labels`` holds them
    after post-processing, so they can be reformatted without another LLM call.
    """

    variable_info: pd.DataFrame
    parsed_labels: Mapping[str, str]
    labels: Mapping[str, str]
    recovered: RecoveredResult
    tokens: TokenUsage
    report: str
    elapsed_seconds: float
    prompts: PromptPair
    raw_response: str
    label_type: str
    formatting: Mapping[str, Any] = field(default_factory=dict)
    preamble_tokens: int = 0
    reformatted: bool = False
    llm_provider: Optional[str] = None
    llm_model: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "parsed_labels", _freeze(self.parsed_labels))
        object.__setattr__(self, "labels", _freeze(self.labels))
        object.__setattr__(self, "formatting", _freeze(self.formatting))

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({"variable": list(self.labels), "label": list(self.labels.values())})

    def __str__(self) -> str:
        return self.report


__all__ = [
    "UNIVERSAL_FIELDS",
    "ExtractedAnalysisData",
    "ComponentInterpretation",
    "RecoveredResult",
    "TokenUsage",
    "DiagnosticsSummary",
    "PromptPair",
    "ReportContext",
    "InterpretationResult",
    "LabelingResult",
]
