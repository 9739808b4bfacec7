from __future__ import annotations

import json
from typing import Any, Mapping

import numpy as np
import pandas as pd
import pytest


class FakeChatClient:
    """
    Scripted chat client.

    Reports the system prompt at ``system_tokens`` after the first call and, when
    ``cache_system`` is set, as 0 on later calls, the way providers stop reporting a
    cached preamble.
    """

    provider = "fake"

    def __init__(
        self,
        responses: str | list[str],
        *,
        system_tokens: Any = 500,
        user_tokens: Any = 120,
        output_tokens: Any = 80,
        cache_system: bool = True,
        model: str = "fake-model",
    ) -> None:
        self.model = model
        self._responses = [responses] if isinstance(responses, str) else list(responses)
        self._system_tokens = system_tokens
        self._user_tokens = user_tokens
        self._output_tokens = output_tokens
        self._cache_system = cache_system
        self._system_reported: Any = None
        self._turns: list[dict[str, Any]] = []
        self.calls: list[dict[str, Any]] = []

    def chat(self, message: str, *, system_prompt: str | None = None, params: Mapping[str, Any] | None = None) -> str:
        self.calls.append({"message": message, "system_prompt": system_prompt, "params": dict(params or {})})
        if self._system_reported is None:
            self._system_reported = self._system_tokens
        elif self._cache_system:
            self._system_reported = 0
        text = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        self._turns.append({"role": "user", "tokens": self._user_tokens})
        self._turns.append({"role": "assistant", "tokens": self._output_tokens})
        return text

    def get_tokens(self, *, include_system_prompt: bool = True) -> list[dict[str, Any]]:
        rows = [dict(t) for t in self._turns]
        if include_system_prompt and self._system_reported is not None:
            rows.insert(0, {"role": "system", "tokens": self._system_reported})
        return rows

    def reset(self) -> None:
        self._turns = []


class FailingChatClient(FakeChatClient):
    def __init__(self, exc: Exception) -> None:
        super().__init__("")
        self._exc = exc

    def chat(self, message: str, *, system_prompt: str | None = None, params: Mapping[str, Any] | None = None) -> str:
        raise self._exc


@pytest.fixture
def fake_client_cls() -> type[FakeChatClient]:
    return FakeChatClient


@pytest.fixture
def failing_client_cls() -> type[FailingChatClient]:
    return FailingChatClient


@pytest.fixture
def fa_loadings() -> pd.DataFrame:
    # mix cross-loads; odd has no loading >= .3
    return pd.DataFrame(
        {
            "F1": [0.78, 0.65, 0.05, 0.10, 0.42, 0.10],
            "F2": [0.12, -0.05, 0.71, 0.66, 0.35, 0.20],
        },
        index=["anx1", "anx2", "dep1", "dep2", "mix", "odd"],
    )


@pytest.fixture
def fa_variable_info() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "variable": ["anx1", "anx2", "dep1", "dep2", "mix", "odd"],
            "description": [
                "Feels nervous",
                "Worries a lot",
                "Feels sad",
                "Lost interest",
                "Trouble sleeping",
                "Enjoys puzzles",
            ],
        }
    )


@pytest.fixture
def fa_response() -> str:
    return json.dumps(
        {
            "F1": {"label": "Anxiety", "interpretation": "Nervousness and worry define this factor."},
            "F2": {"label": "Low Mood", "interpretation": "Sadness and loss of interest define this factor."},
        }
    )


@pytest.fixture
def gm_fit() -> dict[str, Any]:
    means = pd.DataFrame(
        {"Cluster_1": [2.5, -1.2, 0.1], "Cluster_2": [-0.4, 1.5, 0.2], "Cluster_3": [0.0, 0.1, -2.4]},
        index=["extraversion", "neuroticism", "openness"],
    )
    z = np.array(
        [
            [0.95, 0.03, 0.02],
            [0.90, 0.05, 0.05],
            [0.10, 0.85, 0.05],
            [0.05, 0.90, 0.05],
            [0.20, 0.75, 0.05],
            [0.05, 0.05, 0.90],
        ]
    )
    return {
        "means": means,
        "proportions": [0.4, 0.4, 0.2],
        "memberships": z,
        "covariance_type": "VVV",
        "bic": -1234.5678,
        "n_observations": 100,
    }


@pytest.fixture
def gm_variable_info() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "variable": ["extraversion", "neuroticism", "openness"],
            "description": ["Sociability", "Emotional instability", "Curiosity"],
        }
    )


@pytest.fixture
def gm_response() -> str:
    return json.dumps(
        {
            "Cluster_1": {"label": "Calm Socialites", "interpretation": "Outgoing and stable."},
            "Cluster_2": {"label": "Anxious Introverts", "interpretation": "Reserved and worried."},
            "Cluster_3": {"label": "Conventional", "interpretation": "Low curiosity."},
        }
    )
