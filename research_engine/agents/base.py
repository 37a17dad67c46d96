from __future__ import annotations

import json
import time
from typing import Any

from research_engine.llm_client import client as llm_client, get_model
from research_engine.services import logger as log_service
from research_engine.services.cost_tracker import CostTracker


def usage_tokens(response: Any) -> tuple[int, int]:
    usage = getattr(response, "usage", None)
    input_tokens = getattr(usage, "input_tokens", 0) if usage is not None else 0
    output_tokens = getattr(usage, "output_tokens", 0) if usage is not None else 0
    return (
        input_tokens if isinstance(input_tokens, int) else 0,
        output_tokens if isinstance(output_tokens, int) else 0,
    )


class LLMAgent:
    """Shared plumbing for pipeline stages that make a single model call.

    Subclasses set ``name`` (used in logs) and ``role`` (selects the
    ``<role>_model`` setting). Tests swap ``client`` for a mock.
    """

    name: str = "base"
    role: str = ""

    def __init__(self, model: str | None = None, client: Any | None = None):
        self.model = model or get_model(self.role)
        self.client = client

    async def _create(
        self,
        *,
        system: str,
        messages: list[dict[str, Any]],
        max_tokens: int = 1024,
        cost: CostTracker | None = None,
        caller: str | None = None,
        **extra: Any,
    ) -> Any:
        active_client = self.client or llm_client()
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "system": system,
            "messages": messages,
            **extra,
        }
        t0 = time.monotonic()
        try:
            response = await active_client.messages.create(**kwargs)
        except Exception as e:
            log_service.log_llm_call(
                model=self.model,
                caller=caller or self.name,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(e),
            )
            raise
        elapsed_ms = int((time.monotonic() - t0) * 1000)

        input_tokens, output_tokens = usage_tokens(response)
        if cost is not None:
            cost.record_model_call(input_tokens, output_tokens)
        log_service.log_llm_call(
            model=self.model,
            caller=caller or self.name,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_ms=elapsed_ms,
        )
        return response

    @staticmethod
    def _extract_response_text(response: Any) -> str:
        blocks = getattr(response, "content", None) or []
        text_parts: list[str] = []
        for block in blocks:
            btype = getattr(block, "type", None)
            btext = getattr(block, "text", None)
            # thinking blocks carry no answer text
            is_text_like_type = btype in (None, "text") or not isinstance(btype, str)
            if is_text_like_type and isinstance(btext, str) and btext.strip():
                text_parts.append(btext)
        return "\n".join(text_parts).strip()

    @staticmethod
    def _extract_json_object(raw_text: str) -> dict[str, Any]:
        text = raw_text.strip()
        if text.startswith("```"):
            parts = text.split("```")
            if len(parts) >= 2:
                text = parts[1]
            if text.startswith("json"):
                text = text[4:]
            text = text.strip()
        start = text.find("{")
        end = text.rfind("}")
        if start < 0 or end <= start:
            raise json.JSONDecodeError("object not found", text, 0)
        parsed = json.loads(text[start : end + 1])
        if not isinstance(parsed, dict):
            raise json.JSONDecodeError("not an object", text, 0)
        return parsed

    async def _create_json(self, **kwargs: Any) -> dict[str, Any]:
        response = await self._create(**kwargs)
        return self._extract_json_object(self._extract_response_text(response))
