from __future__ import annotations

from functools import lru_cache

from freshcontext.config import SearchPreferences
from freshcontext.llm_client import client as llm_client
from freshcontext.services.chat import ChatService
from freshcontext.services.chat_store import ChatStore
from freshcontext.services.reachability import ReachabilityProbe
from freshcontext.tools.search_provider import SearchProvider


class PreferencesHolder:
    """Process-wide search preferences, replaced wholesale on every patch."""

    def __init__(self, initial: SearchPreferences | None = None):
        self.current = initial or SearchPreferences.from_settings()

    def update(self, partial: dict | None) -> SearchPreferences:
        self.current = self.current.apply_patch(partial)
        return self.current


@lru_cache
def get_probe() -> ReachabilityProbe:
    return ReachabilityProbe()


@lru_cache
def get_search_provider() -> SearchProvider:
    return SearchProvider()


@lru_cache
def get_chat_service() -> ChatService:
    return ChatService(provider=get_search_provider(), llm=llm_client(), probe=get_probe())


@lru_cache
def get_chat_store() -> ChatStore:
    return ChatStore()


@lru_cache
def get_preferences() -> PreferencesHolder:
    return PreferencesHolder()
