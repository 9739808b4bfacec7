from __future__ import annotations

import math

import pytest

from psych_interpreter import ChatSession, interpret
from psych_interpreter.models import TokenUsage
from psych_interpreter.tokens import (
    account_call,
    clamped_delta,
    last_exchange,
    normalize_token_count,
    snapshot_totals,
    system_prompt_tokens,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, 0),
        (math.nan, 0),
        (float("inf"), 0),
        ("abc", 0),
        (-5, 0),
        (True, 0),
        ("12", 12),
        (3.7, 3),
        (42, 42),
    ],
)
def test_normalize_token_count(raw: object, expected: int) -> None:
    assert normalize_token_count(raw) == expected


def test_snapshot_totals_splits_input_and_output_roles() -> None:
    rows = [
        {"role": "system", "tokens": 500},
        {"role": "user", "tokens": 120},
        {"role": "assistant", "tokens": 80},
        {"role": "user", "tokens": None},
        {"role": "assistant", "tokens": "n/a"},
        "not a row",
    ]
    assert snapshot_totals(rows) == TokenUsage(620, 80)
    assert system_prompt_tokens(rows) == 500
    assert snapshot_totals(None) == TokenUsage(0, 0)


def test_last_exchange_ignores_system_rows() -> None:
    rows = [
        {"role": "user", "tokens": 100},
        {"role": "assistant", "tokens": 40},
        {"role": "system", "tokens": 999},
        {"role": "user", "tokens": 120},
        {"role": "assistant", "tokens": 80},
    ]
    assert last_exchange(rows) == TokenUsage(120, 80)


def test_clamped_delta_never_goes_negative() -> None:
    assert clamped_delta(TokenUsage(620, 80), TokenUsage(240, 160)) == TokenUsage(0, 80)


def test_per_call_reading_falls_back_to_delta_when_exchange_is_empty() -> None:
    after = [{"role": "user", "tokens": 100}, {"role": "assistant", "tokens": 50}]
    accounting = account_call([], after, [])
    assert accounting.delta == TokenUsage(100, 50)
    assert accounting.per_call == TokenUsage(100, 50)
    assert accounting.preamble_tokens == 0


def test_fallback_on_first_call_leaves_out_the_system_prompt() -> None:
    after = [
        {"role": "system", "tokens": 500},
        {"role": "user", "tokens": 0},
        {"role": "assistant", "tokens": 80},
    ]
    accounting = account_call([], after, after[1:])
    assert accounting.delta == TokenUsage(500, 80)
    assert accounting.per_call == TokenUsage(0, 80)
    assert accounting.preamble_tokens == 500


def test_cached_system_prompt_clamps_delta_but_not_per_call(
    fake_client_cls, fa_loadings, fa_variable_info, fa_response
) -> None:
    client = fake_client_cls(fa_response)
    session = ChatSession("fa", client=client)

    first = interpret(fa_loadings, fa_variable_info, "fa", session=session, silent=2)
    assert first.tokens == TokenUsage(120, 80)
    assert first.preamble_tokens == 500
    assert session.totals == TokenUsage(620, 80)
    assert session.preamble_tokens == 500

    # the provider now reports the cached system prompt as 0
    second = interpret(fa_loadings, fa_variable_info, "fa", session=session, silent=2)
    assert second.tokens == TokenUsage(120, 80)
    assert session.totals == TokenUsage(620, 160)
    assert session.preamble_tokens == 500
    assert session.n_interpretations == 2


def test_session_totals_are_monotonic_across_calls(
    fake_client_cls, fa_loadings, fa_variable_info, fa_response
) -> None:
    session = ChatSession("fa", client=fake_client_cls(fa_response, user_tokens="bad", output_tokens=None))
    seen = []
    for _ in range(3):
        interpret(fa_loadings, fa_variable_info, session=session, silent=2)
        seen.append(session.totals)
    assert all(a.input_tokens <= b.input_tokens and a.output_tokens <= b.output_tokens for a, b in zip(seen, seen[1:]))


def test_preamble_is_recorded_once(fake_client_cls, fa_loadings, fa_variable_info, fa_response) -> None:
    session = ChatSession("fa", client=fake_client_cls(fa_response, cache_system=False))
    interpret(fa_loadings, fa_variable_info, session=session, silent=2)
    assert session.preamble_recorded
    assert session.record_preamble(999) is False
    interpret(fa_loadings, fa_variable_info, session=session, silent=2)
    assert session.preamble_tokens == 500
