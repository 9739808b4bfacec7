from __future__ import annotations

import logging
import os
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from .config import Provider
from .errors import LLMInvocationError, ParameterValidationError
from .tokens import normalize_token_count

logger = logging.getLogger(__name__)

DEFAULT_MODELS = {
    Provider.OPENAI.value: "gpt-4o-mini",
    Provider.ANTHROPIC.value: "claude-sonnet-4-6",
}
API_KEY_ENV = {
    Provider.OPENAI.value: "OPENAI_API_KEY",
    Provider.ANTHROPIC.value: "ANTHROPIC_API_KEY",
}
DEFAULT_MAX_TOKENS = 4096


@runtime_checkable
class ChatClient(Protocol):
    """
    Transport seam. Implementations keep the conversation history between calls.

    ``get_tokens`` returns one record per turn, ``{"role": ..., "tokens": ...}``, oldest
    first; a system row is only present when ``include_system_prompt`` is true.
    """

    provider: str
    model: Optional[str]

    def chat(self, message: str, *, system_prompt: str | None = None, params: Mapping[str, Any] | None = None) -> str:
        ...

    def get_tokens(self, *, include_system_prompt: bool = True) -> list[dict[str, Any]]:
        ...

    def reset(self) -> None:
        ...


class HistoryChatClient:
    """
    Conversation bookkeeping shared by the provider adapters.

    Providers report tokens per request, not per turn. Each request re-sends the system
    prompt and the prior turns, so the new user turn is charged whatever input the
    provider reports beyond that context. The system prompt share is estimated once,
    on the first request, by its character share of the first request's text. Tokens the
    provider served from its prompt cache are subtracted from the system row.
    """

    provider = "base"

    def __init__(self, model: str | None = None) -> None:
        self.model = model
        self._system_prompt: str | None = None
        self._messages: list[dict[str, str]] = []
        self._turn_tokens: list[dict[str, Any]] = []
        self._system_estimate = 0
        self._last_cached = 0

    # Provider hook -----------------------------------------------------------

    def _complete(
        self, messages: list[dict[str, str]], system_prompt: str | None, params: Mapping[str, Any]
    ) -> tuple[str, int, int, int]:
        """Return (text, input_tokens, output_tokens, cached_input_tokens)."""
        raise NotImplementedError

    # ChatClient --------------------------------------------------------------

    def chat(self, message: str, *, system_prompt: str | None = None, params: Mapping[str, Any] | None = None) -> str:
        if system_prompt is not None:
            self._system_prompt = system_prompt
        messages = self._messages + [{"role": "user", "content": message}]
        try:
            text, input_tokens, output_tokens, cached = self._complete(messages, self._system_prompt, dict(params or {}))
        except LLMInvocationError:
            raise
        except Exception as exc:
            raise LLMInvocationError(f"{self.provider} request failed: {exc}") from exc

        input_tokens = normalize_token_count(input_tokens)
        cached = normalize_token_count(cached)
        if not self._turn_tokens and self._system_prompt:
            share = len(self._system_prompt) / max(1, len(self._system_prompt) + len(message))
            self._system_estimate = int(round(input_tokens * share))
        context = self._system_estimate + sum(normalize_token_count(t["tokens"]) for t in self._turn_tokens)
        self._last_cached = cached
        self._messages = messages + [{"role": "assistant", "content": text}]
        self._turn_tokens.append({"role": "user", "tokens": max(0, input_tokens - context)})
        self._turn_tokens.append({"role": "assistant", "tokens": normalize_token_count(output_tokens)})
        return text

    def get_tokens(self, *, include_system_prompt: bool = True) -> list[dict[str, Any]]:
        rows = [dict(r) for r in self._turn_tokens]
        if include_system_prompt and self._turn_tokens and self._system_prompt:
            rows.insert(0, {"role": "system", "tokens": max(0, self._system_estimate - self._last_cached)})
        return rows

    def reset(self) -> None:
        self._messages = []
        self._turn_tokens = []
        self._system_estimate = 0
        self._last_cached = 0


class OpenAIChatClient(HistoryChatClient):
    provider = Provider.OPENAI.value

    def __init__(self, model: str | None = None, *, api_key: str | None = None, client: Any = None) -> None:
        super().__init__(model or os.getenv("PSYCH_INTERPRETER_MODEL", DEFAULT_MODELS[self.provider]))
        self._client = client
        self._api_key = api_key

    def _sdk(self) -> Any:
        if self._client is None:
            api_key = self._api_key or os.getenv(API_KEY_ENV[self.provider])
            if not api_key:
                raise LLMInvocationError(f"{API_KEY_ENV[self.provider]} is not set; cannot reach {self.provider}.")
            from openai import OpenAI  # type: ignore

            self._client = OpenAI(api_key=api_key)
        return self._client

    def _complete(
        self, messages: list[dict[str, str]], system_prompt: str | None, params: Mapping[str, Any]
    ) -> tuple[str, int, int, int]:
        payload = ([{"role": "system", "content": system_prompt}] if system_prompt else []) + messages
        resp = self._sdk().chat.completions.create(model=self.model, messages=payload, **params)
        text = resp.choices[0].message.content or ""
        usage = getattr(resp, "usage", None)
        details = getattr(usage, "prompt_tokens_details", None)
        return (
            text,
            getattr(usage, "prompt_tokens", 0),
            getattr(usage, "completion_tokens", 0),
            getattr(details, "cached_tokens", 0),
        )


class AnthropicChatClient(HistoryChatClient):
    provider = Provider.ANTHROPIC.value

    def __init__(self, model: str | None = None, *, api_key: str | None = None, client: Any = None) -> None:
        super().__init__(model or os.getenv("PSYCH_INTERPRETER_MODEL", DEFAULT_MODELS[self.provider]))
        self._client = client
        self._api_key = api_key

    def _sdk(self) -> Any:
        if self._client is None:
            api_key = self._api_key or os.getenv(API_KEY_ENV[self.provider])
            if not api_key:
                raise LLMInvocationError(f"{API_KEY_ENV[self.provider]} is not set; cannot reach {self.provider}.")
            import anthropic

            self._client = anthropic.Anthropic(api_key=api_key)
        return self._client

    def _complete(
        self, messages: list[dict[str, str]], system_prompt: str | None, params: Mapping[str, Any]
    ) -> tuple[str, int, int, int]:
        kwargs = dict(params)
        kwargs.setdefault("max_tokens", DEFAULT_MAX_TOKENS)
        kwargs.pop("seed", None)
        if system_prompt:
            kwargs["system"] = system_prompt
        resp = self._sdk().messages.create(model=self.model, messages=messages, **kwargs)
        text = "".join(getattr(block, "text", "") for block in resp.content)
        usage = resp.usage
        cached = normalize_token_count(getattr(usage, "cache_read_input_tokens", 0))
        # input_tokens excludes cache reads
        input_tokens = normalize_token_count(usage.input_tokens) + cached
        return text, input_tokens, usage.output_tokens, cached


_CLIENTS: dict[str, type[HistoryChatClient]] = {
    Provider.OPENAI.value: OpenAIChatClient,
    Provider.ANTHROPIC.value: AnthropicChatClient,
}


def create_chat_client(provider: str | Provider, model: str | None = None, **kwargs: Any) -> HistoryChatClient:
    key = provider.value if isinstance(provider, Provider) else str(provider)
    try:
        cls = _CLIENTS[key]
    except KeyError as exc:
        raise ParameterValidationError(
            f"Unknown LLM provider '{key}'. Supported providers: {', '.join(sorted(_CLIENTS))}"
        ) from exc
    logger.debug("Creating %s chat client (model=%s)", key, model or "default")
    return cls(model, **kwargs)


__all__ = [
    "ChatClient",
    "HistoryChatClient",
    "OpenAIChatClient",
    "AnthropicChatClient",
    "create_chat_client",
    "DEFAULT_MODELS",
]
