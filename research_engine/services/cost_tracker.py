from __future__ import annotations

import threading
from dataclasses import dataclass

from research_engine.config import settings


@dataclass(frozen=True, slots=True)
class CostSnapshot:
    model_calls: int
    provider_calls: int
    input_tokens: int
    output_tokens: int
    total_usd: float


class CostTracker:
    """Request-wide spend counters.

    Every model and provider call increments it; the stopping evaluator reads it
    before each round decision. Increments are lock-guarded so a read always sees
    every increment that completed before it.
    """

    def __init__(
        self,
        *,
        input_price_per_million: float | None = None,
        output_price_per_million: float | None = None,
    ):
        self._lock = threading.Lock()
        self._input_price = (
            settings.input_token_price_per_million
            if input_price_per_million is None
            else input_price_per_million
        )
        self._output_price = (
            settings.output_token_price_per_million
            if output_price_per_million is None
            else output_price_per_million
        )
        self._model_calls = 0
        self._provider_calls = 0
        self._input_tokens = 0
        self._output_tokens = 0
        self._usd = 0.0

    def record_model_call(self, input_tokens: int = 0, output_tokens: int = 0) -> None:
        cost = (
            input_tokens * self._input_price + output_tokens * self._output_price
        ) / 1_000_000
        with self._lock:
            self._model_calls += 1
            self._input_tokens += input_tokens
            self._output_tokens += output_tokens
            self._usd += cost

    def record_provider_call(self, cost_usd: float = 0.0) -> None:
        with self._lock:
            self._provider_calls += 1
            self._usd += cost_usd

    @property
    def total_usd(self) -> float:
        with self._lock:
            return self._usd

    def snapshot(self) -> CostSnapshot:
        with self._lock:
            return CostSnapshot(
                model_calls=self._model_calls,
                provider_calls=self._provider_calls,
                input_tokens=self._input_tokens,
                output_tokens=self._output_tokens,
                total_usd=self._usd,
            )
