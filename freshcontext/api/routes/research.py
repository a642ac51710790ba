from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sse_starlette.sse import EventSourceResponse

from freshcontext.agents.orchestrator import validate_topic
from freshcontext.api.deps import get_chat_service
from freshcontext.exceptions import FreshContextError, ResearchInputError
from freshcontext.models.schemas import ResearchRequest
from freshcontext.services import logger as log_service
from freshcontext.services import streaming
from freshcontext.services.chat import ChatService

router = APIRouter(prefix="/api/research", tags=["research"])


@router.post("")
async def run_research(request: ResearchRequest, service: ChatService = Depends(get_chat_service)):
    """SSE endpoint that streams deep-research progress events."""
    try:
        topic = validate_topic(request.topic)
    except ResearchInputError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    async def event_generator():
        log_service.log_event(
            event_type="research_started",
            message="Deep research started",
            model=request.model,
            topic=topic[:100],
        )
        try:
            async for event in service.run_deep_research(
                topic,
                model=request.model,
                iterations=request.iterations,
                result_limit=request.result_limit,
                seed_queries=request.seed_queries,
            ):
                yield event.to_sse()
        except FreshContextError as e:
            yield streaming.error(str(e)).to_sse()
        except Exception as e:
            log_service.log_event(event_type="research_error", message="Deep research failed", error=str(e))
            yield streaming.error(f"Research failed: {e}").to_sse()

    return EventSourceResponse(event_generator())
