"""Streaming completion with in-band search directives and cancellation.

A producer task pumps backend chunks into a queue; the consumer loop runs them
through a ``DirectiveDetector``. When the model opens its answer with a
``[[search: ...]]`` directive the producer is cancelled (closing the HTTP
stream), a supplemental search runs, its result is added to the messages and
generation restarts. The caller only sees a ``searching`` status event.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx
from loguru import logger

from freshcontext.config import settings
from freshcontext.exceptions import BackendProtocolError
from freshcontext.llm_client import GenerationClient
from freshcontext.models.search import SearchOutcome
from freshcontext.models.stream import StreamDirective, StreamEvent, StreamTiming
from freshcontext.services import logger as log_service
from freshcontext.services.directives import DirectiveDetector
from freshcontext.services.prompt_store import render_prompt

SearchFn = Callable[[str], Awaitable[SearchOutcome]]

_END = object()
_CANCELLED = object()


class CancelToken:
    """Per-request cancellation handle; cancelling it cancels every bound task."""

    def __init__(self, request_id: str | None = None):
        self.request_id = request_id or str(uuid.uuid4())
        self._event = asyncio.Event()
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def bind(self, task: asyncio.Task[Any]) -> None:
        if self.cancelled:
            task.cancel()
        self._tasks.add(task)

    def unbind(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)

    def cancel(self) -> None:
        self._event.set()
        for task in list(self._tasks):
            if not task.done():
                task.cancel()


class CancellationRegistry:
    """Maps live request ids to their tokens."""

    def __init__(self) -> None:
        self._tokens: dict[str, CancelToken] = {}

    def register(self, request_id: str | None = None) -> CancelToken:
        token = CancelToken(request_id)
        self._tokens[token.request_id] = token
        return token

    def get(self, request_id: str) -> CancelToken | None:
        return self._tokens.get(request_id)

    def cancel(self, request_id: str) -> bool:
        token = self._tokens.get(request_id)
        if token is None:
            return False
        token.cancel()
        return True

    def release(self, request_id: str) -> None:
        self._tokens.pop(request_id, None)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)


def with_supplemental_context(
    messages: list[dict[str, str]],
    directive: StreamDirective,
    outcome: SearchOutcome,
) -> list[dict[str, str]]:
    """Insert the directive search result just before the trailing user prompt."""
    if outcome.has_context:
        content = render_prompt("chat.supplemental_context", query=directive.query, context=outcome.text)
    else:
        content = render_prompt("chat.supplemental_empty", query=directive.query)
    note = {"role": "system", "content": content}
    if messages and messages[-1].get("role") == "user":
        return [*messages[:-1], note, messages[-1]]
    return [*messages, note]


class StreamingCompletionController:
    def __init__(
        self,
        llm: GenerationClient,
        search: SearchFn,
        *,
        directive_retry_cap: int | None = None,
        fallback_answer: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.llm = llm
        self.search = search
        self.directive_retry_cap = max(
            0, int(directive_retry_cap if directive_retry_cap is not None else settings.directive_retry_cap)
        )
        self._fallback_answer = fallback_answer
        self._clock = clock

    @property
    def fallback_answer(self) -> str:
        return self._fallback_answer or render_prompt("chat.fallback_answer")

    async def stream(
        self,
        messages: list[dict[str, str]],
        model: str,
        token: CancelToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        token = token or CancelToken()
        request_id = token.request_id
        conversation = list(messages)
        started = self._clock()
        first_byte_at: float | None = None
        full = ""
        reasoning = ""
        retries = 0

        while True:
            if token.cancelled:
                yield self._aborted(request_id, full, reasoning, retries)
                return

            detector = DirectiveDetector()
            directive: StreamDirective | None = None
            queue: asyncio.Queue[Any] = asyncio.Queue()
            producer = asyncio.create_task(self._produce(conversation, model, queue))
            producer.add_done_callback(_signal_cancelled(queue))
            token.bind(producer)
            try:
                while True:
                    item = await queue.get()
                    if item is _CANCELLED:
                        yield self._aborted(request_id, full, reasoning, retries)
                        return
                    if isinstance(item, Exception):
                        log_service.log_llm_call(
                            model=model,
                            caller="chat_stream",
                            duration_ms=int((self._clock() - started) * 1000),
                            status="failed",
                            error=str(item),
                        )
                        yield StreamEvent(
                            request_id,
                            full=full,
                            reasoning=reasoning,
                            error=_describe_error(item),
                            directive_retries=retries,
                        )
                        return

                    finished = item is _END or item.done
                    forward = ""
                    if item is not _END:
                        if item.reasoning:
                            reasoning += item.reasoning
                            yield StreamEvent(request_id, full=full, reasoning=reasoning)
                        step = detector.feed(item.content)
                        if step.directive is not None:
                            directive = step.directive
                            break
                        forward = step.forward
                    if finished:
                        forward += detector.finish().forward
                    if forward:
                        if first_byte_at is None:
                            first_byte_at = self._clock()
                        full += forward
                        yield StreamEvent(request_id, delta=forward, full=full, reasoning=reasoning)
                    if finished:
                        break
            finally:
                token.unbind(producer)
                if not producer.done():
                    producer.cancel()
                    await asyncio.wait([producer])

            if directive is None:
                timing = self._timing(started, first_byte_at, full)
                log_service.log_llm_call(
                    model=model,
                    caller="chat_stream",
                    approx_tokens=timing.approx_tokens,
                    duration_ms=timing.total_ms,
                )
                yield StreamEvent(
                    request_id,
                    full=full,
                    reasoning=reasoning,
                    timing=timing,
                    done=True,
                    directive_retries=retries,
                )
                return

            if retries >= self.directive_retry_cap:
                logger.warning(
                    f"Directive retry cap ({self.directive_retry_cap}) reached for {request_id}; "
                    f"answering with fallback"
                )
                full = self.fallback_answer
                if first_byte_at is None:
                    first_byte_at = self._clock()
                yield StreamEvent(
                    request_id,
                    delta=full,
                    full=full,
                    reasoning=reasoning,
                    status="fallback",
                    timing=self._timing(started, first_byte_at, full),
                    done=True,
                    directive_retries=retries,
                )
                return

            retries += 1
            yield StreamEvent(
                request_id,
                full=full,
                reasoning=reasoning,
                status="searching",
                query=directive.query,
                directive_retries=retries,
            )
            outcome = await self._supplemental_search(directive, token)
            if outcome is None:
                yield self._aborted(request_id, full, reasoning, retries)
                return
            conversation = with_supplemental_context(conversation, directive, outcome)
            yield StreamEvent(
                request_id,
                full=full,
                reasoning=reasoning,
                status="restarting",
                query=directive.query,
                directive_retries=retries,
                context=outcome.text or None,
            )

    async def _produce(self, messages: list[dict[str, str]], model: str, queue: asyncio.Queue[Any]) -> None:
        try:
            async for chunk in self.llm.stream_chat(messages, model):
                queue.put_nowait(chunk)
        except (BackendProtocolError, httpx.HTTPError) as exc:
            queue.put_nowait(exc)
        except Exception as exc:
            logger.exception(f"Unexpected failure while reading the generation stream: {exc!r}")
            queue.put_nowait(BackendProtocolError(f"Malformed generation stream: {type(exc).__name__}: {exc}"))
        else:
            queue.put_nowait(_END)

    async def _supplemental_search(self, directive: StreamDirective, token: CancelToken) -> SearchOutcome | None:
        """Run the directive search; ``None`` means the request was cancelled meanwhile."""
        task = asyncio.create_task(self.search(directive.query))
        token.bind(task)
        try:
            return await task
        except asyncio.CancelledError:
            if token.cancelled:
                return None
            raise
        except Exception as exc:
            logger.warning(f"Supplemental search failed for {directive.query!r}: {exc!r}")
            return SearchOutcome(queries=[directive.query])
        finally:
            token.unbind(task)

    def _aborted(self, request_id: str, full: str, reasoning: str, retries: int) -> StreamEvent:
        logger.info(f"Generation aborted by user: {request_id}")
        return StreamEvent(request_id, full=full, reasoning=reasoning, aborted=True, directive_retries=retries)

    def _timing(self, started: float, first_byte_at: float | None, text: str) -> StreamTiming:
        now = self._clock()
        total_ms = int((now - started) * 1000)
        load_ms = int(((first_byte_at if first_byte_at is not None else now) - started) * 1000)
        generation_ms = max(total_ms - load_ms, 0) if first_byte_at is not None else 0
        approx_tokens = len(text.split())
        tokens_per_second = round(approx_tokens / (generation_ms / 1000), 2) if generation_ms > 0 else 0.0
        return StreamTiming(
            load_ms=load_ms,
            generation_ms=generation_ms,
            total_ms=total_ms,
            approx_tokens=approx_tokens,
            tokens_per_second=tokens_per_second,
        )


def _signal_cancelled(queue: asyncio.Queue[Any]) -> Callable[[asyncio.Task[Any]], None]:
    # a task cancelled before it first runs never reaches its own handlers
    def callback(task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            queue.put_nowait(_CANCELLED)
            return
        exc = task.exception()
        if exc is not None:
            queue.put_nowait(BackendProtocolError(f"Generation stream failed: {type(exc).__name__}: {exc}"))

    return callback


def _describe_error(exc: Exception) -> str:
    if isinstance(exc, BackendProtocolError):
        return str(exc)
    if isinstance(exc, httpx.TimeoutException):
        return "Generation backend timed out"
    return f"Generation backend unreachable: {type(exc).__name__}"
