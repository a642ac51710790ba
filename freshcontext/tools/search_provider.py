from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

import httpx
from loguru import logger

from freshcontext.config import clamp_search_limit, settings
from freshcontext.models.search import SearchOutcome, SearchResult
from freshcontext.services import logger as log_service
from freshcontext.tools.page_enricher import MAX_ENRICHED_PAGES, PageEnricher
from freshcontext.tools.result_parsers import RawResult, parse_html_results, parse_instant_answer
from freshcontext.tools.web_utils import (
    extract_domain,
    format_readable_date,
    normalize_url,
    truncate_snippet,
)


@dataclass(frozen=True, slots=True)
class SearchStrategy:
    """One way of asking the backend; ``kind`` selects the response parser."""

    name: str
    method: str
    url: str
    kind: str = "html"  # html | json
    query_param: str = "q"
    extra_params: dict[str, str] = field(default_factory=dict)

    def build_request(self, query: str) -> dict[str, Any]:
        payload = {self.query_param: query, **self.extra_params}
        if self.method == "POST":
            return {"method": "POST", "url": self.url, "data": payload}
        return {"method": "GET", "url": self.url, "params": payload}


DEFAULT_STRATEGIES: tuple[SearchStrategy, ...] = (
    SearchStrategy("html-get", "GET", "https://html.duckduckgo.com/html/", extra_params={"ia": "web"}),
    SearchStrategy("html-post", "POST", "https://html.duckduckgo.com/html/"),
    SearchStrategy("html-mirror", "GET", "https://duckduckgo.com/html/", extra_params={"ia": "web"}),
    SearchStrategy("lite", "GET", "https://lite.duckduckgo.com/lite/"),
    SearchStrategy(
        "instant-answer",
        "GET",
        "https://api.duckduckgo.com/",
        kind="json",
        extra_params={"format": "json", "no_html": "1", "skip_disambig": "1"},
    ),
)


def format_search_entries(
    entries: list[SearchResult],
    retrieved_at: datetime,
    queries: list[str],
) -> str:
    """Deterministic context block handed to the model."""
    header_lines = [f"Fresh context collected {format_readable_date(retrieved_at)}:"]
    if queries:
        header_lines.append(f"Queries used: {', '.join(queries)}")
    header = "\n".join(header_lines) + "\n\n"

    blocks: list[str] = []
    for entry in entries:
        lines = [f"• {entry.title}"]
        if entry.body:
            lines.append(entry.body)
        if entry.url:
            host = extract_domain(entry.url)
            lines.append(f"Source: {host} ({entry.url})" if host and host != entry.url else f"Source: {entry.url}")
        blocks.append("\n".join(lines))
    return header + "\n\n".join(blocks)


class SearchProvider:
    """Multi-strategy web search with URL dedupe and page enrichment."""

    def __init__(
        self,
        *,
        strategies: tuple[SearchStrategy, ...] = DEFAULT_STRATEGIES,
        enricher: PageEnricher | None = None,
        timeout: float | None = None,
        user_agent: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        enrich_pages: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.strategies = strategies
        self.timeout = float(timeout if timeout is not None else settings.search_timeout_seconds)
        self.user_agent = user_agent or settings.search_user_agent
        self._transport = transport
        self.enricher = enricher if enricher is not None else PageEnricher(transport=transport)
        self.enrich_pages = int(enrich_pages if enrich_pages is not None else settings.enrich_max_pages)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def search(self, queries: list[str], limit: int | None = None) -> SearchOutcome:
        unique_queries: list[str] = []
        seen_queries: set[str] = set()
        for query in queries or []:
            cleaned = " ".join(str(query).split())
            if cleaned and cleaned.lower() not in seen_queries:
                seen_queries.add(cleaned.lower())
                unique_queries.append(cleaned)
        if not unique_queries:
            return SearchOutcome()

        max_entries = clamp_search_limit(limit if limit is not None else settings.search_result_limit)
        retrieved_at = self._clock()
        entries: list[SearchResult] = []
        seen_urls: set[str] = set()
        issued: list[str] = []

        async with httpx.AsyncClient(
            headers={"User-Agent": self.user_agent},
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            for query in unique_queries:
                issued.append(query)
                raw_results = await self._run_strategies(client, query)
                for raw in raw_results:
                    key = normalize_url(raw.url)
                    if not raw.url or key in seen_urls:
                        continue
                    seen_urls.add(key)
                    entries.append(
                        SearchResult(
                            title=raw.title or raw.url,
                            url=raw.url,
                            snippet=truncate_snippet(raw.snippet) if raw.snippet else "",
                            query_used=query,
                        )
                    )
                    if len(entries) >= max_entries:
                        break
                if len(entries) >= max_entries:
                    break

        if not entries:
            logger.info(f"Web search found nothing for {len(issued)} queries")
            return SearchOutcome(queries=issued, retrieved_at=retrieved_at)

        if self.enricher is not None and self.enrich_pages > 0:
            entries = await self.enricher.enrich(
                entries,
                max_pages=min(MAX_ENRICHED_PAGES, self.enrich_pages, len(entries)),
            )

        return SearchOutcome(
            text=format_search_entries(entries, retrieved_at, issued),
            entries=entries,
            queries=issued,
            retrieved_at=retrieved_at,
        )

    async def _run_strategies(self, client: httpx.AsyncClient, query: str) -> list[RawResult]:
        for strategy in self.strategies:
            started = time.monotonic()
            try:
                results = await self._attempt(client, strategy, query)
            except (httpx.HTTPError, ValueError) as exc:
                log_service.log_search_call(
                    query,
                    strategy.name,
                    0,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    error=f"{type(exc).__name__}: {exc}",
                )
                continue
            log_service.log_search_call(
                query,
                strategy.name,
                len(results),
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            if results:
                return results
        logger.warning(f"All search strategies exhausted for query: {query[:80]}")
        return []

    async def _attempt(self, client: httpx.AsyncClient, strategy: SearchStrategy, query: str) -> list[RawResult]:
        response = await client.request(timeout=self.timeout, **strategy.build_request(query))
        response.raise_for_status()
        if strategy.kind == "json":
            return parse_instant_answer(response.json())
        _, results = parse_html_results(response.text)
        return results
