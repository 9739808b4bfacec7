from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from .config import LLMArgs, Provider, resolve_param
from .errors import SessionTypeMismatch
from .interpreters.registry import CapabilityRegistry
from .llm import ChatClient, create_chat_client
from .models import TokenUsage

logger = logging.getLogger(__name__)


class ChatSession:
    """
    Long-lived conversation handle for repeated interpretations of one analysis type.

    The system prompt is sent once and then reused, so its cost is paid (and recorded)
    once. The orchestrator updates the session in place through the mutator methods;
    callers keep their reference and observe the updates. Not thread-safe: drive one
    session from one caller, serially.
    """

    def __init__(
        self,
        analysis_type: str,
        *,
        provider: str | Provider | None = None,
        model: str | None = None,
        client: ChatClient | None = None,
        system_prompt: str | None = None,
        llm_args: LLMArgs | None = None,
        registry: CapabilityRegistry | None = None,
    ) -> None:
        if not analysis_type:
            raise ValueError("Session analysis_type must be provided.")
        if registry is None:
            from .interpreters import default_registry

            registry = default_registry
        capabilities = registry.resolve(analysis_type)

        if client is None:
            provider = resolve_param("provider", provider, llm_args)
            model = resolve_param("model", model, llm_args)
            client = create_chat_client(provider, model)
        self._analysis_type = analysis_type
        self._client = client
        self._provider = str(getattr(client, "provider", provider) or provider)
        self._model = getattr(client, "model", None) or model

        custom = resolve_param("system_prompt", system_prompt, llm_args)
        self._system_prompt: str = custom or capabilities.require("build_system_prompt")()
        self._created_at = datetime.now(timezone.utc).isoformat()

        self._total_input_tokens = 0
        self._total_output_tokens = 0
        self._preamble_tokens: Optional[int] = None
        self._n_interpretations = 0
        logger.debug("Created %s session (%s/%s)", analysis_type, self._provider, self._model)

    # Read access ------------------------------------------------------------

    @property
    def analysis_type(self) -> str:
        return self._analysis_type

    @property
    def client(self) -> ChatClient:
        return self._client

    @property
    def provider(self) -> str:
        return self._provider

    @property
    def model(self) -> str | None:
        return self._model

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    @property
    def created_at(self) -> str:
        return self._created_at

    @property
    def total_input_tokens(self) -> int:
        return self._total_input_tokens

    @property
    def total_output_tokens(self) -> int:
        return self._total_output_tokens

    @property
    def totals(self) -> TokenUsage:
        return TokenUsage(self._total_input_tokens, self._total_output_tokens)

    @property
    def preamble_tokens(self) -> int:
        return self._preamble_tokens or 0

    @property
    def preamble_recorded(self) -> bool:
        return self._preamble_tokens is not None

    @property
    def n_interpretations(self) -> int:
        return self._n_interpretations

    # Mutators ---------------------------------------------------------------

    def ensure_type(self, analysis_type: str) -> None:
        if analysis_type != self._analysis_type:
            raise SessionTypeMismatch(
                f"Session was created for analysis type '{self._analysis_type}' "
                f"but was used for '{analysis_type}'. Create a new session for '{analysis_type}'."
            )

    def add_tokens(self, delta: TokenUsage) -> None:
        """Add a call's clamped delta. Negative components are ignored so totals never decrease."""
        self._total_input_tokens += max(0, int(delta.input_tokens))
        self._total_output_tokens += max(0, int(delta.output_tokens))

    def record_preamble(self, tokens: int) -> bool:
        """Record the system prompt cost. Only the first call has any effect."""
        if self._preamble_tokens is not None:
            return False
        self._preamble_tokens = max(0, int(tokens))
        return True

    def record_interpretation(self) -> int:
        self._n_interpretations += 1
        return self._n_interpretations

    def reset(self) -> None:
        """Drop the conversation turns and the interpretation count. Token totals are kept."""
        self._client.reset()
        self._n_interpretations = 0
        logger.debug("Reset %s session conversation", self._analysis_type)

    # Presentation -------------------------------------------------------------

    def summary(self) -> dict[str, Any]:
        return {
            "analysis_type": self._analysis_type,
            "provider": self._provider,
            "model": self._model,
            "created_at": self._created_at,
            "n_interpretations": self._n_interpretations,
            "total_input_tokens": self._total_input_tokens,
            "total_output_tokens": self._total_output_tokens,
            "preamble_tokens": self.preamble_tokens,
        }

    def describe(self) -> str:
        lines = [
            f"Interpretation chat session ({self._analysis_type})",
            f"  Provider: {self._provider}",
            f"  Model: {self._model or 'default'}",
            f"  Created: {self._created_at}",
            f"  Interpretations run: {self._n_interpretations}",
            f"  Total tokens: input {self._total_input_tokens}, output {self._total_output_tokens}",
        ]
        return "\n".join(lines)

    def __repr__(self) -> str:
        return (
            f"ChatSession(analysis_type={self._analysis_type!r}, provider={self._provider!r}, "
            f"n_interpretations={self._n_interpretations})"
        )
