from __future__ import annotations

from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException
from sse_starlette.sse import EventSourceResponse

from freshcontext.api.deps import PreferencesHolder, get_chat_service, get_chat_store, get_preferences
from freshcontext.llm_client import get_model
from freshcontext.models.conversation import ConversationTurn, utc_now
from freshcontext.models.research import DeepResearchMeta
from freshcontext.models.schemas import CancelResponse, ChatRequest, ChatSummary, NewChatRequest
from freshcontext.models.stream import StreamEvent
from freshcontext.services import logger as log_service
from freshcontext.services import streaming
from freshcontext.services.chat import ChatService, describe_outcome
from freshcontext.services.chat_store import ChatStore

router = APIRouter(prefix="/api/chat", tags=["chat"])


@router.post("")
async def chat(
    request: ChatRequest,
    service: ChatService = Depends(get_chat_service),
    store: ChatStore = Depends(get_chat_store),
    preferences: PreferencesHolder = Depends(get_preferences),
):
    """Plan retrieval, stream the answer over SSE and persist the finished turn."""
    prompt = request.prompt.strip()
    if not prompt:
        raise HTTPException(status_code=400, detail="Prompt is required")

    record = await store.get_or_create(request.chat_id, model=request.model)
    model = request.model or record.model or get_model()
    request_id = request.request_id or str(uuid4())
    prefs = preferences.current
    research = DeepResearchMeta(**request.research.model_dump()) if request.research else None

    async def event_generator():
        history = await store.history(record.id)
        asked_at = utc_now()
        log_service.log_event(
            event_type="chat_started",
            message="Chat turn started",
            chat_id=record.id,
            request_id=request_id,
            model=model,
        )
        yield streaming.thinking(
            "planning",
            "Checking whether fresh context is needed…",
            chat_id=record.id,
            request_id=request_id,
        ).to_sse()

        try:
            outcome = await service.plan_and_search(history, prompt, prefs)
        except Exception as e:
            log_service.log_event(event_type="chat_error", message="Planning failed", error=str(e))
            yield streaming.error(f"Search planning failed: {e}", request_id=request_id).to_sse()
            return

        yield streaming.thinking(
            "context",
            describe_outcome(outcome),
            chat_id=record.id,
            request_id=request_id,
            queries=outcome.queries,
            reused=outcome.reused,
            context=outcome.text,
        ).to_sse()

        supplemental: list[str] = []
        final: StreamEvent | None = None
        async for event in service.stream_answer(
            history,
            prompt,
            outcome,
            model,
            request_id,
            research=research,
            preferences=prefs,
        ):
            if event.context:
                supplemental.append(event.context)
            if event.status == "searching":
                yield streaming.thinking(
                    "directive",
                    f"Model asked for a web search: {event.query}",
                    request_id=request_id,
                    query=event.query,
                ).to_sse()
            yield streaming.stream_chunk(event).to_sse()
            if event.terminal:
                final = event

        if final is None or not final.done:
            return
        await store.append_exchange(
            record.id,
            ConversationTurn(role="user", content=prompt, created_at=asked_at),
            ConversationTurn(
                role="assistant",
                content=final.full.strip(),
                meta=service.build_turn_meta(outcome, supplemental),
            ),
        )

    return EventSourceResponse(event_generator())


@router.get("", response_model=list[ChatSummary])
async def list_chats(store: ChatStore = Depends(get_chat_store)):
    """List chats, most recently updated first."""
    return [
        ChatSummary(**record.to_dict(include_turns=False), original_goal=record.original_goal)
        for record in await store.list_chats()
    ]


@router.post("/new")
async def new_chat(request: NewChatRequest | None = None, store: ChatStore = Depends(get_chat_store)):
    record = await store.create(model=request.model if request else None)
    return record.to_dict()


@router.post("/{request_id}/cancel", response_model=CancelResponse)
async def cancel_chat(request_id: str, service: ChatService = Depends(get_chat_service)):
    """Best-effort stop of an in-flight answer."""
    return CancelResponse(request_id=request_id, cancelled=service.cancel(request_id))


@router.get("/{chat_id}")
async def get_chat(chat_id: str, store: ChatStore = Depends(get_chat_store)):
    record = await store.get(chat_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Chat not found")
    return record.to_dict()


@router.delete("/{chat_id}")
async def delete_chat(chat_id: str, store: ChatStore = Depends(get_chat_store)):
    """Delete a chat and its turns."""
    if not await store.delete(chat_id):
        raise HTTPException(status_code=404, detail="Chat not found")
    return {"status": "deleted"}
