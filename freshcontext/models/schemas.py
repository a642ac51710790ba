from __future__ import annotations

from pydantic import BaseModel, Field


# --- Requests ---


class ResearchMetaPayload(BaseModel):
    summary: str = ""
    answer: str = ""
    sources: list[dict[str, str]] = Field(default_factory=list)


class ChatRequest(BaseModel):
    prompt: str
    chat_id: str | None = None
    model: str | None = None
    request_id: str | None = None
    research: ResearchMetaPayload | None = None


class NewChatRequest(BaseModel):
    model: str | None = None


class ResearchRequest(BaseModel):
    topic: str
    model: str | None = None
    iterations: int | None = None
    result_limit: int | None = None
    seed_queries: list[str] = Field(default_factory=list)


class SettingsPatch(BaseModel):
    auto_web_search: bool | None = None
    open_thoughts_by_default: bool | None = None
    search_result_limit: int | float | None = None


# --- Responses ---


class ModelInfo(BaseModel):
    id: str
    name: str


class ModelsResponse(BaseModel):
    models: list[ModelInfo]
    default: str


class SettingsResponse(BaseModel):
    auto_web_search: bool
    open_thoughts_by_default: bool
    search_result_limit: int


class CancelResponse(BaseModel):
    request_id: str
    cancelled: bool


class ChatSummary(BaseModel):
    id: str
    title: str
    model: str | None = None
    created_at: str
    updated_at: str
    original_goal: str | None = None
