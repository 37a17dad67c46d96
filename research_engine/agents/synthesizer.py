"""Streaming answer synthesis over the selected sources."""
from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass
from typing import Any, Callable

from research_engine.agents.base import LLMAgent
from research_engine.config import settings
from research_engine.errors import PipelineCancelled, SynthesisFailure
from research_engine.llm_client import client as llm_client
from research_engine.models.research import Source
from research_engine.models.session import Message
from research_engine.services import logger as log_service
from research_engine.services.context import CancellationToken
from research_engine.services.cost_tracker import CostTracker
from research_engine.services.prompt_store import render_prompt
from research_engine.services.stream_parser import CitationSafeBuffer

TokenCallback = Callable[[str], None]


@dataclass(frozen=True, slots=True)
class SynthesisOutput:
    text: str
    tokens_emitted: int
    stop_reason: str | None
    input_tokens: int = 0
    output_tokens: int = 0
    drained_after_stop: int = 0
    grace_exceeded: bool = False


def format_sources(sources: list[Source]) -> str:
    blocks = []
    for index, source in enumerate(sources, start=1):
        meta = ", ".join(
            part
            for part in (
                source.provider.value,
                source.venue,
                str(source.year) if source.year else "",
                "peer-reviewed" if source.peer_reviewed else "not peer-reviewed",
            )
            if part
        )
        blocks.append(f"[{index}] {source.title} ({meta})\n{source.content}")
    return "\n\n".join(blocks)


def format_history(history: list[Message], carried_summary: str | None = None) -> str:
    lines = []
    if carried_summary:
        lines.append(f"Earlier in this conversation: {carried_summary}")
    lines.extend(f"{m.role.value}: {m.content[:600]}" for m in history)
    return "\n".join(lines) or "-"


class Synthesizer(LLMAgent):
    name = "synthesizer"
    role = "synthesis"

    def __init__(self, model: str | None = None, client: Any | None = None):
        super().__init__(model=model, client=client)
        self.max_tokens = settings.synthesis_max_tokens
        self.drain_grace_seconds = settings.synthesis_drain_grace_seconds

    def build_request(
        self,
        question: str,
        sources: list[Source],
        *,
        language: str,
        history: list[Message] | None = None,
        carried_summary: str | None = None,
    ) -> tuple[str, list[dict[str, Any]]]:
        conversation = format_history(history or [], carried_summary)
        if sources:
            system = render_prompt("synthesis.system", language=language)
            user = render_prompt(
                "synthesis.user",
                question=question,
                sources=format_sources(sources),
                history=conversation,
                source_count=len(sources),
            )
        else:
            system = render_prompt("synthesis.direct_system", language=language)
            user = render_prompt("synthesis.direct_user", question=question, history=conversation)
        return system, [{"role": "user", "content": user}]

    async def synthesize(
        self,
        question: str,
        sources: list[Source],
        *,
        on_token: TokenCallback,
        language: str = "en",
        history: list[Message] | None = None,
        carried_summary: str | None = None,
        cost: CostTracker | None = None,
        cancel_token: CancellationToken | None = None,
        deadline_seconds: float | None = None,
    ) -> SynthesisOutput:
        """Stream the answer through ``on_token``.

        A completion signal from the model does not end the read: the stream is
        drained until the transport closes, for at most ``drain_grace_seconds``.
        Any upstream error, or a stream still open after ``deadline_seconds``,
        raises SynthesisFailure carrying the text already sent.
        """
        system, messages = self.build_request(
            question,
            sources,
            language=language,
            history=history,
            carried_summary=carried_summary,
        )
        active_client = self.client or llm_client()
        buffer = CitationSafeBuffer()
        parts: list[str] = []
        tokens_emitted = 0
        input_tokens = output_tokens = 0
        stop_reason: str | None = None
        completed_at: float | None = None
        drained_after_stop = 0
        grace_exceeded = False

        def emit(fragment: str) -> None:
            nonlocal tokens_emitted
            if fragment:
                parts.append(fragment)
                tokens_emitted += 1
                on_token(fragment)

        t0 = time.monotonic()
        deadline = None if deadline_seconds is None else t0 + deadline_seconds
        stream = None
        try:
            request = active_client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=system,
                messages=messages,
                stream=True,
            )
            if deadline is None:
                stream = await request
            else:
                stream = await asyncio.wait_for(request, timeout=max(deadline - time.monotonic(), 0.0))
            iterator = stream.__aiter__()
            while True:
                if cancel_token is not None and cancel_token.cancelled:
                    raise PipelineCancelled(cancel_token.reason or "cancelled", stage=self.name)
                timeout = None if deadline is None else deadline - time.monotonic()
                if completed_at is not None:
                    grace = self.drain_grace_seconds - (time.monotonic() - completed_at)
                    timeout = grace if timeout is None else min(timeout, grace)
                try:
                    if timeout is None:
                        event = await iterator.__anext__()
                    else:
                        if timeout <= 0:
                            raise asyncio.TimeoutError
                        event = await asyncio.wait_for(iterator.__anext__(), timeout=timeout)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    if completed_at is None:
                        raise SynthesisFailure(
                            "Synthesis stream exceeded the request deadline",
                            partial_text="".join(parts),
                            tokens_emitted=tokens_emitted,
                        )
                    grace_exceeded = True
                    log_service.log_event(
                        event_type="synthesis_drain_grace_exceeded",
                        message="Stream stayed open after completion; closing",
                        grace_seconds=self.drain_grace_seconds,
                    )
                    break

                if completed_at is not None:
                    drained_after_stop += 1

                etype = getattr(event, "type", None)
                if etype == "content_block_delta":
                    delta = getattr(event, "delta", None)
                    if getattr(delta, "type", None) == "text_delta":
                        emit(buffer.push(getattr(delta, "text", "") or ""))
                elif etype == "message_start":
                    usage = getattr(getattr(event, "message", None), "usage", None)
                    input_tokens = getattr(usage, "input_tokens", 0) or 0
                elif etype == "message_delta":
                    usage = getattr(event, "usage", None)
                    output_tokens = getattr(usage, "output_tokens", 0) or output_tokens
                    stop_reason = getattr(getattr(event, "delta", None), "stop_reason", None) or stop_reason
                elif etype == "message_stop":
                    completed_at = time.monotonic()
                elif etype == "error":
                    error = getattr(event, "error", None)
                    raise RuntimeError(getattr(error, "message", None) or "stream error event")
        except (SynthesisFailure, PipelineCancelled):
            raise
        except Exception as e:
            log_service.log_llm_call(
                model=self.model,
                caller=self.name,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(e),
            )
            raise SynthesisFailure(
                str(e) or type(e).__name__,
                partial_text="".join(parts),
                tokens_emitted=tokens_emitted,
            ) from e
        finally:
            close = getattr(stream, "close", None)
            if close is not None and inspect.iscoroutinefunction(close):
                await close()

        emit(buffer.flush())
        if cost is not None:
            cost.record_model_call(int(input_tokens), int(output_tokens))
        log_service.log_llm_call(
            model=self.model,
            caller=self.name,
            input_tokens=int(input_tokens),
            output_tokens=int(output_tokens),
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        return SynthesisOutput(
            text="".join(parts),
            tokens_emitted=tokens_emitted,
            stop_reason=stop_reason,
            input_tokens=int(input_tokens),
            output_tokens=int(output_tokens),
            drained_after_stop=drained_after_stop,
            grace_exceeded=grace_exceeded,
        )
