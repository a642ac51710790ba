from __future__ import annotations

from fastapi import APIRouter, Depends

from freshcontext.api.deps import get_chat_service
from freshcontext.llm_client import get_model
from freshcontext.models.schemas import ModelInfo, ModelsResponse
from freshcontext.services.chat import ChatService

router = APIRouter(prefix="/api/models", tags=["models"])


@router.get("", response_model=ModelsResponse)
async def list_models(service: ChatService = Depends(get_chat_service)):
    """List the models the generation backend currently offers."""
    names = await service.llm.list_models()
    return ModelsResponse(models=[ModelInfo(id=n, name=n) for n in names], default=get_model())
