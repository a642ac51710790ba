from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    # Deep research stages
    PLANNING = "planning"
    ITERATION_START = "iteration-start"
    ITERATION_REVIEW = "iteration-review"
    ITERATION_REFLECTION = "iteration-reflection"
    ITERATION_ERROR = "iteration-error"
    MODEL_DRAFT = "model-draft"
    MODEL_EVAL = "model-eval"
    MODEL_ERROR = "model-error"
    COMPLETE = "complete"
    ERROR = "error"

    # Chat turn
    THINKING = "thinking"
    STREAM = "stream"


@dataclass
class SSEEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)

    def format(self) -> str:
        return f"event: {self.event.value}\ndata: {json.dumps(self.data, default=str)}\n\n"

    def to_sse(self) -> dict[str, str]:
        """Payload shape accepted by sse_starlette's EventSourceResponse."""
        return {"event": self.event.value, "data": json.dumps(self.data, default=str)}
