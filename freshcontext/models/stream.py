from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class StreamDirective:
    """Supplemental search requested in-band by the model."""

    query: str


@dataclass(frozen=True, slots=True)
class ChatChunk:
    """One decoded chunk from the generation backend, wire shape independent."""

    content: str = ""
    reasoning: str = ""
    done: bool = False


@dataclass(frozen=True, slots=True)
class StreamTiming:
    load_ms: int = 0
    generation_ms: int = 0
    total_ms: int = 0
    approx_tokens: int = 0
    tokens_per_second: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "load_ms": self.load_ms,
            "generation_ms": self.generation_ms,
            "total_ms": self.total_ms,
            "approx_tokens": self.approx_tokens,
            "tokens_per_second": self.tokens_per_second,
        }


@dataclass(slots=True)
class StreamEvent:
    request_id: str
    delta: str = ""
    full: str = ""
    reasoning: str = ""
    status: str | None = None
    query: str | None = None
    timing: StreamTiming | None = None
    done: bool = False
    error: str | None = None
    aborted: bool = False
    directive_retries: int = 0
    # supplemental context added by a directive search; not serialized
    context: str | None = None

    @property
    def terminal(self) -> bool:
        return self.done or self.aborted or self.error is not None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "request_id": self.request_id,
            "delta": self.delta,
            "full": self.full,
            "done": self.done,
        }
        if self.reasoning:
            data["reasoning"] = self.reasoning
        if self.status:
            data["status"] = self.status
        if self.query:
            data["query"] = self.query
        if self.timing is not None:
            data["timing"] = self.timing.to_dict()
        if self.error is not None:
            data["error"] = self.error
        if self.aborted:
            data["aborted"] = True
        if self.directive_retries:
            data["directive_retries"] = self.directive_retries
        return data
