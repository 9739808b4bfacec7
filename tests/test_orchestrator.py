from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import pytest

from psych_interpreter import (
    DataShapeError,
    InterpretConfig,
    InterpretationArgs,
    LLMArgs,
    LLMInvocationError,
    OutputArgs,
    ParameterValidationError,
    SamplingParams,
    interpret,
)
from psych_interpreter.collaborators import build_plot_payload, export_result, plot_result
from psych_interpreter.interpreters.fa import SYSTEM_PROMPT as FA_SYSTEM_PROMPT
from psych_interpreter.models import TokenUsage
from psych_interpreter.recovery import PLACEHOLDER_INTERPRETATION


class RecordingExporter:
    def __init__(self) -> None:
        self.payloads: list[dict[str, Any]] = []

    def write(self, payload: dict[str, Any], path: Path) -> Path:
        self.payloads.append(payload)
        path.write_text(json.dumps(payload, default=str), encoding="utf-8")
        return path


class RecordingPlotter:
    def plot(self, payload: dict[str, Any]) -> str:
        return payload["kind"]


def test_fa_interpretation_end_to_end(fake_client_cls, fa_loadings, fa_variable_info, fa_response) -> None:
    client = fake_client_cls(fa_response)
    result = interpret(fa_loadings, fa_variable_info, "fa", chat_client=client, silent=2)

    assert result.analysis_type == "fa"
    assert result.labels == {"F1": "Anxiety", "F2": "Low Mood"}
    assert result.recovered.tier == "parsed"
    assert not result.recovered.has_fallback
    assert result.tokens == TokenUsage(120, 80)
    assert result.preamble_tokens == 500
    assert result.prompts.system == FA_SYSTEM_PROMPT
    assert client.calls[0]["message"] == result.prompts.main
    assert result.llm_provider == "fake"
    assert result.llm_model == "fake-model"

    report = result.report
    assert report.startswith("FACTOR ANALYSIS INTERPRETATION")
    assert "SUGGESTED FACTOR NAMES" in report
    assert "Anxiety" in report
    assert "CROSS-LOADING VARIABLES" in report
    assert "VARIABLES NOT COVERED BY ANY FACTOR" in report
    assert "LLM used: fake - fake-model" in report
    assert "Tokens: input 120, output 80" in report
    assert str(result) == report


def test_gm_interpretation_end_to_end(fake_client_cls, gm_fit, gm_variable_info, gm_response) -> None:
    result = interpret(gm_fit, gm_variable_info, "gm", chat_client=fake_client_cls(gm_response), silent=2)

    assert result.labels["Cluster_2"] == "Anxious Introverts"
    report = result.report
    assert report.startswith("GAUSSIAN MIXTURE MODEL INTERPRETATION")
    assert "BIC: -1234.57" in report
    assert "Cluster 1 (n=40, 40.0%): Calm Socialites" in report
    assert "KEY DISTINGUISHING VARIABLES" in report
    assert "DIAGNOSTICS" in report


def test_markdown_report_respects_heading_level(fake_client_cls, fa_loadings, fa_variable_info, fa_response) -> None:
    result = interpret(
        fa_loadings,
        fa_variable_info,
        "fa",
        chat_client=fake_client_cls(fa_response),
        output_args=OutputArgs(format="markdown", heading_level=2),
        silent=2,
    )
    assert result.report.startswith("## Factor Analysis Interpretation")
    assert "### Suggested Factor Names" in result.report
    assert "**Factor 1 (F1, 20.5%):** *Anxiety*" in result.report


def test_suppress_heading_omits_title(fake_client_cls, gm_fit, gm_variable_info, gm_response) -> None:
    result = interpret(
        gm_fit, gm_variable_info, "gm", chat_client=fake_client_cls(gm_response), suppress_heading=True, silent=2
    )
    assert "GAUSSIAN MIXTURE MODEL INTERPRETATION" not in result.report
    assert result.report.startswith("Number of clusters: 3")


def test_silent_levels_control_printing(fake_client_cls, fa_loadings, fa_variable_info, fa_response, capsys) -> None:
    result = interpret(fa_loadings, fa_variable_info, "fa", chat_client=fake_client_cls(fa_response), silent=0)
    assert capsys.readouterr().out.strip() == result.report.strip()

    interpret(fa_loadings, fa_variable_info, "fa", chat_client=fake_client_cls(fa_response), silent=2)
    assert capsys.readouterr().out == ""


def test_transport_failure_becomes_llm_invocation_error(failing_client_cls, fa_loadings, fa_variable_info) -> None:
    with pytest.raises(LLMInvocationError, match="timed out") as excinfo:
        interpret(fa_loadings, fa_variable_info, "fa", chat_client=failing_client_cls(TimeoutError("timed out")), silent=2)
    assert isinstance(excinfo.value.__cause__, TimeoutError)


def test_extraction_errors_propagate_before_the_llm_is_called(fake_client_cls, fa_loadings, fa_variable_info) -> None:
    client = fake_client_cls("{}")
    with pytest.raises(DataShapeError):
        interpret(fa_loadings, fa_variable_info.iloc[:3], "fa", chat_client=client, silent=2)
    assert client.calls == []


def test_unparseable_reply_yields_placeholders_and_a_flagged_report(
    fake_client_cls, fa_loadings, fa_variable_info
) -> None:
    result = interpret(
        fa_loadings, fa_variable_info, "fa", chat_client=fake_client_cls("Sorry, I cannot help."), silent=2
    )
    assert result.recovered.tier == "default"
    assert result.labels == {"F1": "Factor 1", "F2": "Factor 2"}
    assert result.interpretations["F1"] == PLACEHOLDER_INTERPRETATION
    assert "LOW-CONFIDENCE INTERPRETATIONS" in result.report


def test_word_limit_overrun_is_noted_not_truncated(
    fake_client_cls, fa_loadings, fa_variable_info, caplog
) -> None:
    long_text = " ".join(["word"] * 30)
    reply = json.dumps(
        {
            "F1": {"label": "Anxiety", "interpretation": long_text},
            "F2": {"label": "Low Mood", "interpretation": "Short."},
        }
    )
    caplog.set_level(logging.INFO, logger="psych_interpreter.orchestrator")

    result = interpret(
        fa_loadings, fa_variable_info, "fa", chat_client=fake_client_cls(reply), word_limit=20, silent=2
    )

    assert result.interpretations["F1"] == long_text
    assert result.notices == ("1 factor interpretation(s) exceed the 20-word target: F1 (30 words)",)
    assert any("exceed the 20-word target" in r.getMessage() for r in caplog.records)
    assert "Aim for 16-20 words" in result.prompts.main


def test_word_limit_also_checks_pattern_recovered_text(fake_client_cls, fa_loadings, fa_variable_info) -> None:
    long_text = " ".join(["word"] * 30)
    reply = f"## F1: Anxiety\n{long_text}\n\n## F2: Low Mood\nShort.\n"

    result = interpret(
        fa_loadings, fa_variable_info, "fa", chat_client=fake_client_cls(reply), word_limit=20, silent=2
    )

    assert result.recovered.tier == "pattern"
    assert result.notices == ("1 factor interpretation(s) exceed the 20-word target: F1 (30 words)",)


def test_fa_report_lists_undefined_factor_warning(fake_client_cls, fa_loadings, fa_variable_info, fa_response) -> None:
    result = interpret(
        fa_loadings,
        fa_variable_info,
        "fa",
        chat_client=fake_client_cls(fa_response),
        cutoff=0.8,
        n_emergency=0,
        silent=2,
    )
    assert "DIAGNOSTICS" in result.report
    assert "Factor(s) without any loadings to interpret: F1, F2" in result.report


def test_sampling_params_reach_the_client(fake_client_cls, fa_loadings, fa_variable_info, fa_response) -> None:
    client = fake_client_cls(fa_response)
    interpret(
        fa_loadings,
        fa_variable_info,
        "fa",
        chat_client=client,
        llm_args=LLMArgs(params=SamplingParams(temperature=0.2, max_tokens=400)),
        silent=2,
    )
    assert client.calls[0]["params"] == {"temperature": 0.2, "max_tokens": 400}


def test_analysis_type_can_come_from_config(fake_client_cls, gm_fit, gm_variable_info, gm_response) -> None:
    config = InterpretConfig(interpretation_args=InterpretationArgs(analysis_type="gm"), output_args=OutputArgs(silent=2))
    result = interpret(gm_fit, gm_variable_info, config=config, chat_client=fake_client_cls(gm_response))
    assert result.analysis_type == "gm"

    with pytest.raises(ParameterValidationError, match="analysis_type is required"):
        interpret(gm_fit, gm_variable_info, chat_client=fake_client_cls(gm_response), silent=2)


def test_unreadable_token_counts_are_treated_as_zero(
    fake_client_cls, fa_loadings, fa_variable_info, fa_response
) -> None:
    class NoTokens(fake_client_cls):  # type: ignore[misc, valid-type]
        def get_tokens(self, *, include_system_prompt: bool = True) -> list[dict[str, Any]]:
            raise RuntimeError("usage unavailable")

    result = interpret(fa_loadings, fa_variable_info, "fa", chat_client=NoTokens(fa_response), silent=2)
    assert result.tokens == TokenUsage(0, 0)
    assert result.labels["F1"] == "Anxiety"


def test_export_and_plot_payloads(fake_client_cls, fa_loadings, fa_variable_info, fa_response, tmp_path) -> None:
    result = interpret(fa_loadings, fa_variable_info, "fa", chat_client=fake_client_cls(fa_response), silent=2)

    exporter = RecordingExporter()
    written = export_result(result, exporter, tmp_path / "fa.json")
    payload = exporter.payloads[0]
    assert written.exists()
    assert payload["analysis_type"] == "fa"
    assert [f["label"] for f in payload["factors"]] == ["Anxiety", "Low Mood"]
    assert payload["factors"][0]["significant_variables"] == ["anx1", "anx2", "mix"]

    assert plot_result(result, RecordingPlotter()) == "loadings_heatmap"
    matrix = build_plot_payload(result)["matrix"]
    assert list(matrix.columns) == ["F1: Anxiety", "F2: Low Mood"]
