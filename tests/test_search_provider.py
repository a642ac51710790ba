from __future__ import annotations

from datetime import datetime, timezone

import httpx
import pytest

from freshcontext.models.search import SearchResult
from freshcontext.tools.search_provider import (
    SearchProvider,
    SearchStrategy,
    format_search_entries,
)

NOW = datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)

HTML_PAGE = """
<div class="result"><a class="result__a" href="https://solar.example/a">Solar A</a>
  <a class="result__snippet">{snippet}</a></div>
<div class="result"><a class="result__a" href="https://www.solar.example/a/">Solar A again</a></div>
<div class="result"><a class="result__a" href="//duckduckgo.com/l/?uddg=https%3A%2F%2Fwind.example%2Fb">Wind B</a></div>
"""


def _provider(handler, strategies=None, **kwargs) -> SearchProvider:
    transport = httpx.MockTransport(handler)
    return SearchProvider(
        strategies=strategies or (SearchStrategy("html", "GET", "https://search.test/html/"),),
        transport=transport,
        enrich_pages=0,
        clock=lambda: NOW,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_search_dedupes_urls_and_formats_context():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=HTML_PAGE.format(snippet="Record output."))

    outcome = await _provider(handler).search(["solar news", "Solar  news", ""])

    assert outcome.queries == ["solar news"]
    assert [e.url for e in outcome.entries] == ["https://solar.example/a", "https://wind.example/b"]
    assert outcome.retrieved_at == NOW
    assert outcome.text.startswith("Fresh context collected Oct 18, 2026, 09:30 AM:")
    assert "Queries used: solar news" in outcome.text
    assert "• Solar A\nRecord output.\nSource: solar.example (https://solar.example/a)" in outcome.text


@pytest.mark.asyncio
async def test_search_falls_back_to_next_strategy():
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if request.url.path == "/html/":
            return httpx.Response(503)
        if request.url.path == "/empty/":
            return httpx.Response(200, text="<p>nothing here</p>")
        return httpx.Response(
            200,
            json={"RelatedTopics": [{"FirstURL": "https://kb.example/x", "Text": "X - topic"}]},
        )

    strategies = (
        SearchStrategy("html", "GET", "https://search.test/html/"),
        SearchStrategy("empty", "POST", "https://search.test/empty/"),
        SearchStrategy("json", "GET", "https://search.test/api/", kind="json"),
    )

    outcome = await _provider(handler, strategies).search(["x"])

    assert calls == ["/html/", "/empty/", "/api/"]
    assert [e.title for e in outcome.entries] == ["X"]


@pytest.mark.asyncio
async def test_search_with_no_results_has_no_context():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("offline", request=request)

    outcome = await _provider(handler).search(["anything"])

    assert outcome.entries == []
    assert outcome.has_context is False
    assert outcome.queries == ["anything"]


@pytest.mark.asyncio
async def test_search_without_queries_skips_network():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    outcome = await _provider(handler).search(["   "])

    assert outcome.queries == []
    assert outcome.text == ""


@pytest.mark.asyncio
async def test_search_limit_is_clamped_and_snippets_truncated():
    blocks = "".join(
        f'<div class="result"><a class="result__a" href="https://r{i}.example/">R{i}</a>'
        f'<a class="result__snippet">{"s" * 500}</a></div>'
        for i in range(12)
    )

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=blocks)

    provider = _provider(handler)

    small = await provider.search(["q"], limit=1)
    large = await provider.search(["q"], limit=50)

    assert len(small.entries) == 1
    assert len(large.entries) == 12
    assert all(len(e.snippet) <= 320 for e in large.entries)


@pytest.mark.asyncio
async def test_search_lists_only_queries_it_ran():
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(request.url.params["q"])
        return httpx.Response(200, text=HTML_PAGE.format(snippet="Record output."))

    outcome = await _provider(handler).search(["solar news", "wind news"], limit=1)

    assert requested == ["solar news"]
    assert outcome.queries == ["solar news"]
    assert "Queries used: solar news\n" in outcome.text
    assert "wind news" not in outcome.text


def test_format_search_entries_prefers_summary():
    entries = [
        SearchResult(title="A", url="https://a.example/1", snippet="short", summary="longer summary"),
        SearchResult(title="B", url="", snippet="no link"),
    ]

    text = format_search_entries(entries, NOW, [])

    assert "Queries used" not in text
    assert "• A\nlonger summary\nSource: a.example (https://a.example/1)" in text
    assert text.endswith("• B\nno link")
