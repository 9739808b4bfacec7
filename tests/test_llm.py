from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import pytest

from psych_interpreter import LLMInvocationError, ParameterValidationError
from psych_interpreter.llm import AnthropicChatClient, ChatClient, OpenAIChatClient, create_chat_client


class FakeCompletions:
    def __init__(self, usages: list[tuple[int, int, int]]) -> None:
        self._usages = list(usages)
        self.requests: list[dict[str, Any]] = []

    def create(self, **kwargs: Any) -> Any:
        self.requests.append(kwargs)
        prompt, completion, cached = self._usages.pop(0)
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content='{"F1": "x"}'))],
            usage=SimpleNamespace(
                prompt_tokens=prompt,
                completion_tokens=completion,
                prompt_tokens_details=SimpleNamespace(cached_tokens=cached),
            ),
        )


def _openai(usages: list[tuple[int, int, int]]) -> tuple[OpenAIChatClient, FakeCompletions]:
    completions = FakeCompletions(usages)
    sdk = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return OpenAIChatClient("gpt-test", client=sdk), completions


def test_openai_adapter_attributes_tokens_per_turn() -> None:
    client, completions = _openai([(400, 50, 0), (550, 60, 300)])
    assert isinstance(client, ChatClient)

    client.chat("M" * 100, system_prompt="S" * 300, params={"temperature": 0.1})
    assert client.get_tokens() == [
        {"role": "system", "tokens": 300},
        {"role": "user", "tokens": 100},
        {"role": "assistant", "tokens": 50},
    ]
    assert completions.requests[0]["messages"][0] == {"role": "system", "content": "S" * 300}
    assert completions.requests[0]["temperature"] == 0.1

    client.chat("M" * 100)
    rows = client.get_tokens()
    # cached system prompt is no longer reported
    assert rows[0] == {"role": "system", "tokens": 0}
    assert rows[-2:] == [{"role": "user", "tokens": 100}, {"role": "assistant", "tokens": 60}]
    assert len(completions.requests[1]["messages"]) == 4
    assert client.get_tokens(include_system_prompt=False)[0]["role"] == "user"


def test_reset_clears_history() -> None:
    client, _ = _openai([(400, 50, 0)])
    client.chat("hello", system_prompt="system")
    client.reset()
    assert client.get_tokens() == []


def test_sdk_failures_are_wrapped() -> None:
    class Broken:
        def create(self, **kwargs: Any) -> Any:
            raise ConnectionError("network down")

    client = OpenAIChatClient("gpt-test", client=SimpleNamespace(chat=SimpleNamespace(completions=Broken())))
    with pytest.raises(LLMInvocationError, match="network down") as excinfo:
        client.chat("hello")
    assert isinstance(excinfo.value.__cause__, ConnectionError)


def test_missing_api_key_is_reported_on_first_call(monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    client = OpenAIChatClient()
    with pytest.raises(LLMInvocationError, match="OPENAI_API_KEY"):
        client.chat("hello")


def test_anthropic_adapter_counts_cache_reads_as_input() -> None:
    requests: list[dict[str, Any]] = []

    def create(**kwargs: Any) -> Any:
        requests.append(kwargs)
        return SimpleNamespace(
            content=[SimpleNamespace(text="part one "), SimpleNamespace(text="part two")],
            usage=SimpleNamespace(input_tokens=100, output_tokens=30, cache_read_input_tokens=0),
        )

    client = AnthropicChatClient("claude-test", client=SimpleNamespace(messages=SimpleNamespace(create=create)))
    text = client.chat("question", system_prompt="persona", params={"seed": 1})

    assert text == "part one part two"
    assert requests[0]["system"] == "persona"
    assert requests[0]["max_tokens"] == 4096
    assert "seed" not in requests[0]
    assert sum(r["tokens"] for r in client.get_tokens() if r["role"] != "assistant") == 100


def test_factory_rejects_unknown_provider() -> None:
    assert isinstance(create_chat_client("anthropic", "claude-test"), AnthropicChatClient)
    with pytest.raises(ParameterValidationError, match="mistral"):
        create_chat_client("mistral")
