from __future__ import annotations

from typing import Any

import pytest

from psych_interpreter import CapabilityNotImplemented, interpret
from psych_interpreter.interpreters import (
    FA_CAPABILITIES,
    MANDATORY_OPERATIONS,
    AnalysisCapabilitySet,
    CapabilityRegistry,
    default_registry,
)
from psych_interpreter.models import DiagnosticsSummary, ExtractedAnalysisData
from psych_interpreter.recovery import DEFAULT_STRATEGIES, default_placeholders, validate_component_mapping


def _toy_extract(fit_results: Any, variable_info: Any, params: Any) -> ExtractedAnalysisData:
    names = list(fit_results)
    return ExtractedAnalysisData(
        {
            "analysis_type": "toy",
            "n_components": len(names),
            "n_variables": 1,
            "variable_names": ["x"],
            "component_names": names,
        }
    )


def _toy_operations() -> dict[str, Any]:
    return {
        "extract": _toy_extract,
        "build_system_prompt": lambda: "toy system",
        "build_main_prompt": lambda data, info, word_limit, extra=None, guidelines=None: "toy main",
        "validate_parsed": validate_component_mapping,
        "pattern_strategies": lambda: DEFAULT_STRATEGIES,
        "default_result": default_placeholders,
        "build_diagnostics": lambda data: DiagnosticsSummary(),
        "build_report": lambda context, **kwargs: "toy report",
    }


def test_default_registry_lists_builtin_types() -> None:
    assert default_registry.list_types() == ["fa", "gm", "label"]
    assert default_registry.is_registered("gm")
    assert not default_registry.is_registered("lca")


@pytest.mark.parametrize("type_id", ["fa", "gm"])
def test_builtin_types_supply_every_mandatory_operation(type_id: str) -> None:
    capabilities = default_registry.resolve(type_id)
    assert capabilities.is_complete
    for operation in MANDATORY_OPERATIONS:
        assert callable(capabilities.require(operation))


def test_label_type_supplies_only_prompt_and_recovery_operations() -> None:
    capabilities = default_registry.resolve("label")
    assert not capabilities.is_complete
    assert "extract" in capabilities.missing_operations()
    for operation in ("build_system_prompt", "validate_parsed", "pattern_strategies", "default_result"):
        assert callable(capabilities.require(operation))


def test_resolving_unregistered_type_names_it_and_the_alternatives() -> None:
    with pytest.raises(CapabilityNotImplemented) as excinfo:
        default_registry.resolve("lca")
    message = str(excinfo.value)
    assert "'lca'" in message
    assert "fa, gm" in message
    assert excinfo.value.analysis_type == "lca"


def test_register_rejects_empty_id_and_wrong_type() -> None:
    registry = CapabilityRegistry()
    with pytest.raises(ValueError):
        registry.register("", FA_CAPABILITIES)
    with pytest.raises(TypeError):
        registry.register("fa", {"extract": None})  # type: ignore[arg-type]


def test_require_names_missing_and_unknown_operations() -> None:
    partial = AnalysisCapabilitySet("partial")
    with pytest.raises(CapabilityNotImplemented, match="build_report") as excinfo:
        partial.require("build_report")
    assert excinfo.value.operation == "build_report"
    with pytest.raises(CapabilityNotImplemented, match="Unknown capability operation"):
        partial.require("frobnicate")
    assert FA_CAPABILITIES.optional("validate_requirements") is None
    assert partial.missing_operations() == MANDATORY_OPERATIONS


def test_custom_type_runs_through_the_orchestrator(fake_client_cls) -> None:
    registry = CapabilityRegistry()
    registry.register("toy", AnalysisCapabilitySet("toy", **_toy_operations()))
    client = fake_client_cls('{"A": {"label": "Alpha", "interpretation": "first"}}')

    result = interpret(["A", "B"], None, "toy", chat_client=client, registry=registry, silent=2)

    assert result.report == "toy report"
    assert result.labels == {"A": "Alpha", "B": "B"}
    assert client.calls[0]["system_prompt"] == "toy system"


def test_incomplete_type_fails_at_first_missing_operation(fake_client_cls) -> None:
    operations = _toy_operations()
    del operations["default_result"]
    del operations["build_report"]
    registry = CapabilityRegistry()
    registry.register("partial", AnalysisCapabilitySet("partial", **operations))
    client = fake_client_cls("{}")

    with pytest.raises(CapabilityNotImplemented) as excinfo:
        interpret(["A"], None, "partial", chat_client=client, registry=registry, silent=2)

    assert excinfo.value.operation == "default_result"
    assert "default_result" in str(excinfo.value)
    assert excinfo.value.analysis_type == "partial"
