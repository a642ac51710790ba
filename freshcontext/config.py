from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any

from pydantic_settings import BaseSettings

MIN_SEARCH_RESULTS = 1
MAX_SEARCH_RESULTS = 12
DEFAULT_SEARCH_RESULTS = 6


class Settings(BaseSettings):
    # Generation backend
    llm_base_url: str = "http://localhost:11434"
    llm_api_style: str = "native"  # native | openai
    llm_api_key: str = ""
    default_model: str = "llama3.1"
    generation_timeout_seconds: float = 120.0
    side_call_timeout_seconds: float = 45.0
    directive_retry_cap: int = 2

    # Web search
    auto_web_search: bool = True
    search_result_limit: int = DEFAULT_SEARCH_RESULTS
    search_timeout_seconds: float = 8.0
    search_user_agent: str = (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 13_0) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/16.0 Safari/605.1.15"
    )

    # Page enrichment
    enrich_max_pages: int = 4
    enrich_max_chars: int = 600
    page_fetch_timeout_seconds: float = 6.0

    # Reachability probe
    reachability_probe_url: str = "https://duckduckgo.com"
    reachability_ttl_seconds: float = 5.0
    reachability_timeout_seconds: float = 3.0

    # Deep research
    research_iterations: int = 3
    research_summary_char_cap: int = 1800

    # App
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]


settings = Settings()


def clamp_search_limit(value: Any) -> int:
    """Clamp a result-count preference to the supported range, rounding floats."""
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        numeric = float(DEFAULT_SEARCH_RESULTS)
    if not math.isfinite(numeric):
        numeric = float(DEFAULT_SEARCH_RESULTS)
    return max(MIN_SEARCH_RESULTS, min(MAX_SEARCH_RESULTS, int(round(numeric))))


@dataclass(slots=True)
class SearchPreferences:
    """User-facing toggles consulted for each turn."""

    auto_web_search: bool = True
    open_thoughts_by_default: bool = False
    search_result_limit: int = DEFAULT_SEARCH_RESULTS

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "SearchPreferences":
        source = source or settings
        return cls(
            auto_web_search=bool(source.auto_web_search),
            search_result_limit=clamp_search_limit(source.search_result_limit),
        )

    def apply_patch(self, partial: dict[str, Any] | None) -> "SearchPreferences":
        """Return a sanitized copy with the recognised keys of ``partial`` applied."""
        nxt = SearchPreferences(**asdict(self))
        if not isinstance(partial, dict):
            return nxt
        if partial.get("auto_web_search") is not None:
            nxt.auto_web_search = bool(partial["auto_web_search"])
        if partial.get("open_thoughts_by_default") is not None:
            nxt.open_thoughts_by_default = bool(partial["open_thoughts_by_default"])
        if partial.get("search_result_limit") is not None:
            nxt.search_result_limit = clamp_search_limit(partial["search_result_limit"])
        return nxt

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
