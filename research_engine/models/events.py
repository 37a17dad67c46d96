from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class StageEventType(str, Enum):
    ROUTING = "routing"
    RECALL_RESULT = "recall_result"
    PLANNING_STARTED = "planning_started"
    PLANNING_COMPLETE = "planning_complete"
    ROUND_STARTED = "round_started"
    API_CALL = "api_call"
    ROUND_COMPLETE = "round_complete"
    GAP_DETECTED = "gap_detected"
    SYNTHESIS_STARTED = "synthesis_started"
    TOKEN = "token"
    COMPLETE = "complete"
    ERROR = "error"


TERMINAL_EVENTS = frozenset({StageEventType.COMPLETE, StageEventType.ERROR})


@dataclass(frozen=True)
class StageEvent:
    type: StageEventType
    sequence: int
    timestamp: float
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "data": self.data,
        }

    def format(self) -> str:
        payload = json.dumps(self.to_dict(), ensure_ascii=False)
        return f"id: {self.sequence}\nevent: {self.type.value}\ndata: {payload}\n\n"

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> StageEvent:
        return cls(
            type=StageEventType(payload["type"]),
            sequence=int(payload["sequence"]),
            timestamp=float(payload.get("timestamp", 0.0)),
            data=dict(payload.get("data") or {}),
        )
