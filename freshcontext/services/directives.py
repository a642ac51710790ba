"""Detection of the in-band ``[[search: ...]]`` directive at the start of a stream.

The detector works on whole chunks. While in ``CHECKING_PREFIX`` it holds text
back; it moves to ``FORWARDING`` as soon as the buffered text cannot be a
directive, or to ``DETECTED`` once a complete directive has been buffered.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from freshcontext.models.stream import StreamDirective
from freshcontext.tools.text_utils import collapse_whitespace

DIRECTIVE_OPEN = "[[search:"
DIRECTIVE_CLOSE = "]]"
DIRECTIVE_PATTERN = re.compile(r"\[\[\s*search\s*:\s*(?P<query>[^\[\]]*?)\s*\]\]", re.IGNORECASE)
MAX_PREFIX_BUFFER = 256


class DetectorState(str, Enum):
    CHECKING_PREFIX = "checking-prefix"
    FORWARDING = "forwarding"
    DETECTED = "detected"


@dataclass(frozen=True, slots=True)
class DetectorStep:
    forward: str = ""
    directive: StreamDirective | None = None


def parse_directive(text: str) -> StreamDirective | None:
    match = DIRECTIVE_PATTERN.search(text or "")
    if not match:
        return None
    query = collapse_whitespace(match.group("query"))
    return StreamDirective(query=query) if query else None


def format_directive(query: str) -> str:
    return f"{DIRECTIVE_OPEN} {query}{DIRECTIVE_CLOSE}"


class DirectiveDetector:
    def __init__(self, *, max_buffer: int = MAX_PREFIX_BUFFER):
        self.max_buffer = max_buffer
        self.state = DetectorState.CHECKING_PREFIX
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: str) -> DetectorStep:
        if not chunk:
            return DetectorStep()
        if self.state is DetectorState.FORWARDING:
            return DetectorStep(forward=chunk)
        if self.state is DetectorState.DETECTED:
            return DetectorStep()

        self._buffer += chunk
        directive = parse_directive(self._buffer)
        if directive is not None:
            self.state = DetectorState.DETECTED
            self._buffer = ""
            return DetectorStep(directive=directive)

        head = self._buffer.lstrip()
        if not head:
            return DetectorStep()

        compact = re.sub(r"\s+", "", head[: len(DIRECTIVE_OPEN) * 4]).lower()
        overlap = min(len(compact), len(DIRECTIVE_OPEN))
        if compact[:overlap] != DIRECTIVE_OPEN[:overlap]:
            return self._flush()

        opened = len(compact) >= len(DIRECTIVE_OPEN)
        if opened and DIRECTIVE_CLOSE in head:
            return self._flush()
        if len(self._buffer) > self.max_buffer:
            return self._flush()
        return DetectorStep()

    def finish(self) -> DetectorStep:
        """Release anything still held back when the stream ends."""
        if self.state is DetectorState.CHECKING_PREFIX and self._buffer:
            return self._flush()
        return DetectorStep()

    def _flush(self) -> DetectorStep:
        self.state = DetectorState.FORWARDING
        text, self._buffer = self._buffer, ""
        return DetectorStep(forward=text)
