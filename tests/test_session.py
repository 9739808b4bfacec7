from __future__ import annotations

import pytest

from psych_interpreter import ChatSession, CapabilityNotImplemented, SessionTypeMismatch, interpret
from psych_interpreter.config import LLMArgs
from psych_interpreter.interpreters.fa import SYSTEM_PROMPT as FA_SYSTEM_PROMPT
from psych_interpreter.llm import OpenAIChatClient
from psych_interpreter.models import TokenUsage


def test_session_builds_system_prompt_once_from_the_analysis_type(fake_client_cls) -> None:
    session = ChatSession("fa", client=fake_client_cls("{}"))
    assert session.system_prompt == FA_SYSTEM_PROMPT
    assert session.provider == "fake"
    assert session.model == "fake-model"
    assert session.totals == TokenUsage(0, 0)
    assert not session.preamble_recorded


def test_custom_system_prompt_is_reused_for_every_call(
    fake_client_cls, fa_loadings, fa_variable_info, fa_response
) -> None:
    client = fake_client_cls(fa_response)
    session = ChatSession("fa", client=client, llm_args=LLMArgs(system_prompt="You are terse."))
    result = interpret(fa_loadings, fa_variable_info, session=session, system_prompt="ignored", silent=2)

    assert result.prompts.system == "You are terse."
    assert client.calls[0]["system_prompt"] == "You are terse."


def test_session_rejects_another_analysis_type_before_calling_the_llm(
    fake_client_cls, gm_fit, gm_variable_info
) -> None:
    client = fake_client_cls("{}")
    session = ChatSession("fa", client=client)
    with pytest.raises(SessionTypeMismatch, match="'fa'.*'gm'"):
        interpret(gm_fit, gm_variable_info, "gm", session=session, silent=2)
    assert client.calls == []
    assert session.n_interpretations == 0


def test_session_for_unregistered_type_fails_fast(fake_client_cls) -> None:
    with pytest.raises(CapabilityNotImplemented, match="lca"):
        ChatSession("lca", client=fake_client_cls("{}"))


def test_reset_drops_conversation_but_keeps_totals(
    fake_client_cls, fa_loadings, fa_variable_info, fa_response
) -> None:
    client = fake_client_cls(fa_response)
    session = ChatSession("fa", client=client)
    interpret(fa_loadings, fa_variable_info, session=session, silent=2)
    totals = session.totals

    session.reset()

    assert session.n_interpretations == 0
    assert session.totals == totals
    assert client.get_tokens(include_system_prompt=False) == []


def test_add_tokens_ignores_negative_components(fake_client_cls) -> None:
    session = ChatSession("gm", client=fake_client_cls("{}"))
    session.add_tokens(TokenUsage(100, 20))
    session.add_tokens(TokenUsage(-50, 5))
    assert session.totals == TokenUsage(100, 25)


def test_summary_and_describe(fake_client_cls, fa_loadings, fa_variable_info, fa_response) -> None:
    session = ChatSession("fa", client=fake_client_cls(fa_response))
    interpret(fa_loadings, fa_variable_info, session=session, silent=2)

    summary = session.summary()
    assert summary["analysis_type"] == "fa"
    assert summary["n_interpretations"] == 1
    assert summary["total_input_tokens"] == 620
    assert summary["preamble_tokens"] == 500

    text = session.describe()
    assert "Interpretations run: 1" in text
    assert "input 620, output 80" in text
    assert "fa" in repr(session)


def test_session_without_client_builds_provider_adapter(monkeypatch) -> None:
    monkeypatch.delenv("PSYCH_INTERPRETER_MODEL", raising=False)
    session = ChatSession("fa", provider="openai")
    assert isinstance(session.client, OpenAIChatClient)
    assert session.provider == "openai"
    assert session.model == "gpt-4o-mini"
