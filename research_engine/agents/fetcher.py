"""Parallel fetcher: one round of concurrent provider calls."""
from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Callable

from research_engine.errors import PipelineCancelled, ProviderFailure, ProviderTimeout
from research_engine.models.research import (
    CallStatus,
    Provenance,
    ProviderCall,
    ProviderCallResult,
)
from research_engine.services import logger as log_service
from research_engine.services.context import CancellationToken
from research_engine.services.cost_tracker import CostTracker
from research_engine.tools.registry import ProviderRegistry

ResultCallback = Callable[[ProviderCallResult], None]


class ParallelFetcher:
    def __init__(self, registry: ProviderRegistry):
        self.registry = registry

    async def fetch_round(
        self,
        calls: list[ProviderCall],
        *,
        round_number: int | None = None,
        cost: CostTracker | None = None,
        cancel_token: CancellationToken | None = None,
        on_result: ResultCallback | None = None,
    ) -> tuple[list[ProviderCallResult], int]:
        """Run every call concurrently and wait until all have settled.

        Returns the results in call order plus the round duration (the slowest
        call's latency). A cancellation abandons the calls still in flight and
        raises PipelineCancelled.
        """
        if not calls:
            return [], 0

        tasks: dict[asyncio.Task, int] = {
            asyncio.create_task(self._run(call, round_number, cost)): index
            for index, call in enumerate(calls)
        }
        cancel_wait = (
            asyncio.create_task(cancel_token.wait()) if cancel_token is not None else None
        )
        settled: dict[int, ProviderCallResult] = {}
        pending = set(tasks)
        try:
            while pending:
                waiting = pending | ({cancel_wait} if cancel_wait is not None else set())
                done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                if cancel_wait is not None and cancel_wait in done:
                    raise PipelineCancelled(
                        cancel_token.reason or "cancelled", round=round_number
                    )
                for task in done:
                    pending.discard(task)
                    result = task.result()
                    settled[tasks[task]] = result
                    if on_result is not None:
                        on_result(result)
        finally:
            for task in pending:
                task.cancel()
            if cancel_wait is not None:
                cancel_wait.cancel()

        ordered = [settled[i] for i in range(len(calls))]
        duration_ms = max((r.latency_ms for r in ordered), default=0)
        return ordered, duration_ms

    async def _run(
        self,
        call: ProviderCall,
        round_number: int | None,
        cost: CostTracker | None,
    ) -> ProviderCallResult:
        provider = self.registry.get(call.provider)
        if provider is None:
            return ProviderCallResult(
                call=call,
                status=CallStatus.ERROR,
                latency_ms=0,
                error=f"provider {call.provider.value} is not configured",
            )

        outcome = await provider.search(
            call.query,
            call.filters,
            call.max_results,
            timeout=self.registry.timeout_for(call.provider),
        )
        if cost is not None:
            cost.record_provider_call(provider.call_cost_usd)

        stamp = Provenance(call.provider, round_number or 0)
        sources = tuple(
            replace(source, provenance={stamp}, quality_flags=[]) for source in outcome.results
        )

        if outcome.status != CallStatus.SUCCESS:
            failure_cls = ProviderTimeout if outcome.status == CallStatus.TIMEOUT else ProviderFailure
            failure = failure_cls(outcome.error or outcome.status.value)
            log_service.log_failure(
                failure.code,
                failure.message,
                provider=call.provider.value,
                round=round_number,
                query=call.query,
            )
        log_service.log_provider_call(
            provider=call.provider.value,
            query=call.query,
            status=outcome.status.value,
            round_number=round_number,
            latency_ms=outcome.latency_ms,
            results_count=len(sources),
            error=outcome.error,
        )
        return ProviderCallResult(
            call=call,
            status=outcome.status,
            latency_ms=outcome.latency_ms,
            results=sources,
            error=outcome.error,
        )
