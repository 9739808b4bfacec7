"""Cache-aware token accounting.

Two readings are taken around every LLM call:

- a snapshot *including* the system prompt, before and after the call, used only to
  compute the clamped delta added to a session's cumulative counters. Providers may
  cache the system prompt on repeat calls and stop reporting it, so the raw delta can
  be negative; it is clamped at zero.
- the most recent exchange *excluding* the system prompt, used for per-call reporting.

All raw numbers read from a chat client go through :func:`normalize_token_count`.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from .models import TokenUsage

logger = logging.getLogger(__name__)

INPUT_ROLES = ("system", "user")
OUTPUT_ROLES = ("assistant",)


def normalize_token_count(value: Any) -> int:
    """Map None, missing, NaN and unparseable values to 0; everything else to a non-negative int."""
    if value is None or isinstance(value, bool):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(number) or math.isinf(number) or number < 0:
        return 0
    return int(number)


def _rows(records: Iterable[Mapping[str, Any]] | None) -> list[Mapping[str, Any]]:
    return [r for r in (records or []) if isinstance(r, Mapping)]


def snapshot_totals(records: Iterable[Mapping[str, Any]] | None) -> TokenUsage:
    """Sum system+user rows as input and assistant rows as output."""
    input_tokens = 0
    output_tokens = 0
    for row in _rows(records):
        role = str(row.get("role", "")).lower()
        tokens = normalize_token_count(row.get("tokens"))
        if role in INPUT_ROLES:
            input_tokens += tokens
        elif role in OUTPUT_ROLES:
            output_tokens += tokens
    return TokenUsage(input_tokens, output_tokens)


def system_prompt_tokens(records: Iterable[Mapping[str, Any]] | None) -> int:
    return sum(normalize_token_count(r.get("tokens")) for r in _rows(records) if str(r.get("role", "")).lower() == "system")


def last_exchange(records: Iterable[Mapping[str, Any]] | None) -> TokenUsage:
    """Tokens of the latest user and assistant rows. System rows are ignored."""
    last_user: Any = None
    last_assistant: Any = None
    for row in _rows(records):
        role = str(row.get("role", "")).lower()
        if role == "user":
            last_user = row.get("tokens")
        elif role == "assistant":
            last_assistant = row.get("tokens")
    return TokenUsage(normalize_token_count(last_user), normalize_token_count(last_assistant))


def clamped_delta(before: TokenUsage, after: TokenUsage) -> TokenUsage:
    return TokenUsage(
        max(0, after.input_tokens - before.input_tokens),
        max(0, after.output_tokens - before.output_tokens),
    )


@dataclass(frozen=True)
class CallAccounting:
    per_call: TokenUsage
    delta: TokenUsage
    preamble_tokens: int


def read_token_records(client: Any, *, include_system_prompt: bool) -> list[dict[str, Any]]:
    """Read a chat client's token rows. A client that cannot report usage counts as zero."""
    try:
        return list(client.get_tokens(include_system_prompt=include_system_prompt) or [])
    except Exception:
        logger.warning("Could not read token usage from chat client; counting it as zero", exc_info=True)
        return []


def account_call(
    before_records: Iterable[Mapping[str, Any]] | None,
    after_records: Iterable[Mapping[str, Any]] | None,
    exchange_records: Iterable[Mapping[str, Any]] | None,
) -> CallAccounting:
    """
    Combine the two readings taken around one call.

    ``before_records``/``after_records`` include the system prompt; ``exchange_records``
    excludes it. A zero per-call reading with a positive delta falls back to the delta,
    less whatever the system rows grew by, so the preamble never lands in the per-call figure.
    """
    before_records = list(before_records or [])
    after_records = list(after_records or [])
    delta = clamped_delta(snapshot_totals(before_records), snapshot_totals(after_records))
    exchange = last_exchange(exchange_records)
    preamble = system_prompt_tokens(after_records)
    system_growth = max(0, preamble - system_prompt_tokens(before_records))
    per_call = TokenUsage(
        exchange.input_tokens if exchange.input_tokens else max(0, delta.input_tokens - system_growth),
        exchange.output_tokens if exchange.output_tokens or not delta.output_tokens else delta.output_tokens,
    )
    return CallAccounting(per_call=per_call, delta=delta, preamble_tokens=preamble)


__all__ = [
    "normalize_token_count",
    "snapshot_totals",
    "system_prompt_tokens",
    "last_exchange",
    "clamped_delta",
    "CallAccounting",
    "account_call",
    "read_token_records",
]
