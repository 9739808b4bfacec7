from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import ParameterValidationError


class Provider(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


class OutputFormat(str, Enum):
    """
    Report render modes.

    - PLAIN: section separators and wrapped text, no markup
    - MARKDOWN: headings and bold emphasis
    """
    PLAIN = "plain"
    MARKDOWN = "markdown"


LABEL_TYPES = ("short", "phrase", "acronym", "custom")
LABEL_CASES = ("original", "lower", "upper", "title", "sentence", "snake", "camel", "constant")

_UNSET = object()


@dataclass(frozen=True)
class ParameterSpec:
    """
    Registered global default and accepted range for one configuration parameter.

    group: which args object carries the field ("llm", "interpretation", "labeling", "output")
    analysis_types: empty means the parameter applies to every analysis type
    """

    name: str
    default: Any
    group: str
    description: str
    minimum: float | None = None
    maximum: float | None = None
    choices: tuple[Any, ...] | None = None
    kind: type | tuple[type, ...] | None = None
    allow_none: bool = False
    analysis_types: tuple[str, ...] = ()

    def validate(self, value: Any) -> Any:
        if value is None:
            if self.allow_none:
                return None
            raise ParameterValidationError(f"Parameter '{self.name}' must not be None ({self.description}).")
        if isinstance(value, Enum):
            value = value.value
        if self.kind is not None:
            if self.kind is bool or self.kind == (bool,):
                if not isinstance(value, bool):
                    raise ParameterValidationError(
                        f"Parameter '{self.name}' must be a boolean, got {type(value).__name__}."
                    )
            elif isinstance(value, bool) or not isinstance(value, self.kind):
                expected = self.kind.__name__ if isinstance(self.kind, type) else "/".join(k.__name__ for k in self.kind)
                raise ParameterValidationError(
                    f"Parameter '{self.name}' must be of type {expected}, got {type(value).__name__}."
                )
        if self.choices is not None and value not in self.choices:
            allowed = ", ".join(repr(c) for c in self.choices)
            raise ParameterValidationError(f"Parameter '{self.name}' must be one of {allowed}, got {value!r}.")
        if self.minimum is not None or self.maximum is not None:
            if isinstance(value, float) and math.isnan(value):
                raise ParameterValidationError(f"Parameter '{self.name}' must be a number, got NaN.")
            lo = "-inf" if self.minimum is None else self.minimum
            hi = "inf" if self.maximum is None else self.maximum
            if (self.minimum is not None and value < self.minimum) or (self.maximum is not None and value > self.maximum):
                raise ParameterValidationError(
                    f"Parameter '{self.name}' must be between {lo} and {hi}, got {value}."
                )
        return value


def _spec(name: str, default: Any, group: str, description: str, **kwargs: Any) -> tuple[str, ParameterSpec]:
    return name, ParameterSpec(name=name, default=default, group=group, description=description, **kwargs)


PARAMETER_REGISTRY: dict[str, ParameterSpec] = dict(
    [
        # llm
        _spec("provider", Provider.OPENAI.value, "llm", "LLM provider id",
              choices=tuple(p.value for p in Provider)),
        _spec("model", None, "llm", "provider model id", kind=str, allow_none=True),
        _spec("system_prompt", None, "llm", "custom system prompt replacing the built-in persona",
              kind=str, allow_none=True),
        _spec("params", None, "llm", "sampling parameters passed to the provider", allow_none=True),
        _spec("word_limit", 150, "llm", "target word count per interpretation",
              kind=int, minimum=20, maximum=500),
        _spec("additional_info", None, "llm", "extra study context added to the prompt",
              kind=str, allow_none=True),
        _spec("interpretation_guidelines", None, "llm", "custom guidelines replacing the built-in block",
              kind=str, allow_none=True),
        _spec("echo", False, "llm", "log prompts and raw responses at DEBUG", kind=bool),
        # interpretation, shared
        _spec("validation_threshold", 0.5, "interpretation",
              "fraction of expected components a parsed response must contain",
              kind=(int, float), minimum=0.0, maximum=1.0),
        # interpretation, factor analysis
        _spec("cutoff", 0.3, "interpretation", "minimum absolute loading considered significant",
              kind=(int, float), minimum=0.0, maximum=1.0, analysis_types=("fa",)),
        _spec("n_emergency", 2, "interpretation", "top loadings used when a factor has none above cutoff",
              kind=int, minimum=0, analysis_types=("fa",)),
        _spec("hide_low_loadings", False, "interpretation", "omit sub-cutoff loadings from the prompt",
              kind=bool, analysis_types=("fa",)),
        _spec("sort_loadings", True, "interpretation", "order variables by absolute loading",
              kind=bool, analysis_types=("fa",)),
        # interpretation, gaussian mixture
        _spec("min_cluster_size", 5, "interpretation", "minimum expected observations per cluster",
              kind=int, minimum=1, analysis_types=("gm",)),
        _spec("separation_threshold", 0.3, "interpretation", "average uncertainty above which separation is weak",
              kind=(int, float), minimum=0.0, maximum=1.0, analysis_types=("gm",)),
        _spec("profile_variables", None, "interpretation", "subset of variables shown in cluster profiles",
              allow_none=True, analysis_types=("gm",)),
        _spec("weight_by_uncertainty", False, "interpretation", "report uncertainty-weighted cluster sizes",
              kind=bool, analysis_types=("gm",)),
        # labeling: wording asked of the LLM
        _spec("label_type", "short", "labeling", "label length preset: short, phrase, acronym or custom",
              choices=LABEL_TYPES, analysis_types=("label",)),
        _spec("max_words", None, "labeling", "word cap asked of the LLM and enforced afterwards",
              kind=int, minimum=1, maximum=20, allow_none=True, analysis_types=("label",)),
        _spec("max_chars", None, "labeling", "character cap asked of the LLM and enforced afterwards",
              kind=int, minimum=1, allow_none=True, analysis_types=("label",)),
        _spec("style_hint", None, "labeling", "terminology guidance such as technical or simple",
              kind=str, allow_none=True, analysis_types=("label",)),
        # labeling: post-processing only
        _spec("sep", " ", "labeling", "separator placed between label words",
              kind=str, analysis_types=("label",)),
        _spec("case", "original", "labeling", "case transformation applied to labels",
              choices=LABEL_CASES, analysis_types=("label",)),
        _spec("remove_articles", False, "labeling", "drop a, an and the from labels",
              kind=bool, analysis_types=("label",)),
        _spec("remove_prepositions", False, "labeling", "drop common prepositions from labels",
              kind=bool, analysis_types=("label",)),
        _spec("abbreviate", False, "labeling", "shorten long words by rule",
              kind=bool, analysis_types=("label",)),
        # output
        _spec("format", OutputFormat.PLAIN.value, "output", "report render mode",
              choices=tuple(f.value for f in OutputFormat)),
        _spec("heading_level", 1, "output", "markdown heading level of the report title",
              kind=int, minimum=1, maximum=6),
        _spec("suppress_heading", False, "output", "omit the report title", kind=bool),
        _spec("max_line_length", 80, "output", "wrap width for plain reports",
              kind=int, minimum=40, maximum=300),
        _spec("silent", 0, "output", "0 prints the report, 1 logs progress only, 2 is quiet",
              choices=(0, 1, 2)),
    ]
)


class _ArgsModel(BaseModel):
    """Unset fields stay None so the registered default applies during resolution."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    @model_validator(mode="after")
    def _check_registered_ranges(self) -> "_ArgsModel":
        for name in type(self).model_fields:
            value = getattr(self, name)
            if value is not None and name in PARAMETER_REGISTRY:
                PARAMETER_REGISTRY[name].validate(value)
        return self


class SamplingParams(_ArgsModel):
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    top_p: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    max_tokens: Optional[int] = Field(default=None, ge=1)
    seed: Optional[int] = None

    def as_kwargs(self) -> dict[str, Any]:
        return {k: v for k, v in self.model_dump().items() if v is not None}


class LLMArgs(_ArgsModel):
    provider: Optional[Provider] = None
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    params: Optional[SamplingParams] = None
    word_limit: Optional[int] = None
    additional_info: Optional[str] = None
    interpretation_guidelines: Optional[str] = None
    echo: Optional[bool] = None


class InterpretationArgs(_ArgsModel):
    analysis_type: Optional[str] = None
    validation_threshold: Optional[float] = None
    cutoff: Optional[float] = None
    n_emergency: Optional[int] = None
    hide_low_loadings: Optional[bool] = None
    sort_loadings: Optional[bool] = None
    min_cluster_size: Optional[int] = None
    separation_threshold: Optional[float] = None
    profile_variables: Optional[list[str]] = None
    weight_by_uncertainty: Optional[bool] = None


class LabelingArgs(_ArgsModel):
    label_type: Optional[str] = None
    max_words: Optional[int] = None
    max_chars: Optional[int] = None
    style_hint: Optional[str] = None
    sep: Optional[str] = None
    case: Optional[str] = None
    remove_articles: Optional[bool] = None
    remove_prepositions: Optional[bool] = None
    abbreviate: Optional[bool] = None


class OutputArgs(_ArgsModel):
    format: Optional[OutputFormat] = None
    heading_level: Optional[int] = None
    suppress_heading: Optional[bool] = None
    max_line_length: Optional[int] = None
    silent: Optional[int] = None


class InterpretConfig(BaseModel):
    """Layered configuration bundle; any of the groups may be left at its defaults."""

    model_config = ConfigDict(extra="forbid")

    llm_args: LLMArgs = Field(default_factory=LLMArgs)
    interpretation_args: InterpretationArgs = Field(default_factory=InterpretationArgs)
    labeling_args: LabelingArgs = Field(default_factory=LabelingArgs)
    output_args: OutputArgs = Field(default_factory=OutputArgs)


_GROUP_ATTRS = {
    "llm": "llm_args",
    "interpretation": "interpretation_args",
    "labeling": "labeling_args",
    "output": "output_args",
}


def _config_value(config: Any, spec: ParameterSpec) -> Any:
    if config is None:
        return _UNSET
    if isinstance(config, Mapping):
        value = config.get(spec.name)
        if value is None:
            nested = config.get(_GROUP_ATTRS[spec.group])
            if nested is not None:
                return _config_value(nested, spec)
        return _UNSET if value is None else value
    value = getattr(config, spec.name, None)
    if value is not None:
        return value
    nested = getattr(config, _GROUP_ATTRS[spec.group], None)
    if nested is not None:
        return _config_value(nested, spec)
    return _UNSET


def get_parameter_spec(name: str) -> ParameterSpec:
    try:
        return PARAMETER_REGISTRY[name]
    except KeyError as exc:
        available = ", ".join(sorted(PARAMETER_REGISTRY))
        raise ParameterValidationError(f"Unknown parameter '{name}'. Available parameters: {available}") from exc


def resolve_param(name: str, explicit: Any = None, *configs: Any) -> Any:
    """
    Resolve one parameter with precedence explicit > config object(s) > registered default.

    ``None`` means "not supplied" at every layer. Config objects are consulted in the
    order given and may be an InterpretConfig, any single args model, or a plain mapping.
    The winning value is validated against the registered range.
    """
    spec = get_parameter_spec(name)
    if explicit is not None:
        return spec.validate(explicit)
    for cfg in configs:
        value = _config_value(cfg, spec)
        if value is not _UNSET:
            return spec.validate(value)
    return spec.validate(spec.default)


def resolve_params(names: Iterable[str], explicit: Mapping[str, Any] | None = None, *configs: Any) -> dict[str, Any]:
    explicit = explicit or {}
    return {name: resolve_param(name, explicit.get(name), *configs) for name in names}


def sampling_kwargs(params: Any) -> dict[str, Any]:
    if params is None:
        return {}
    if isinstance(params, SamplingParams):
        return params.as_kwargs()
    if isinstance(params, Mapping):
        return {k: v for k, v in params.items() if v is not None}
    raise ParameterValidationError(f"params must be a SamplingParams or a mapping, got {type(params).__name__}")


def parameters_for(analysis_type: str | None = None, group: str | None = None) -> list[str]:
    """Names of the registered parameters applying to ``analysis_type`` (and ``group`` if given)."""
    out: list[str] = []
    for name, spec in PARAMETER_REGISTRY.items():
        if group is not None and spec.group != group:
            continue
        if spec.analysis_types and analysis_type not in spec.analysis_types:
            continue
        out.append(name)
    return out


__all__ = [
    "Provider",
    "OutputFormat",
    "LABEL_TYPES",
    "LABEL_CASES",
    "ParameterSpec",
    "PARAMETER_REGISTRY",
    "SamplingParams",
    "LLMArgs",
    "InterpretationArgs",
    "LabelingArgs",
    "OutputArgs",
    "InterpretConfig",
    "get_parameter_spec",
    "resolve_param",
    "resolve_params",
    "sampling_kwargs",
    "parameters_for",
]
