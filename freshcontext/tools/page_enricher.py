from __future__ import annotations

import asyncio
import dataclasses
import re

import httpx
from bs4 import BeautifulSoup
from loguru import logger

from freshcontext.config import settings
from freshcontext.models.search import SearchResult
from freshcontext.tools.text_utils import collapse_whitespace

MAX_ENRICHED_PAGES = 4
MAX_SUMMARY_SENTENCES = 8
MIN_PARAGRAPH_CHARS = 60

NON_CONTENT_TAGS = (
    "script",
    "style",
    "noscript",
    "nav",
    "header",
    "footer",
    "aside",
    "form",
    "iframe",
    "svg",
    "img",
    "video",
    "audio",
    "picture",
    "button",
)

SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


def summarize_html(html: str, max_chars: int) -> str:
    """Extractive summary from the readable paragraphs of a page."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(list(NON_CONTENT_TAGS)):
        tag.decompose()

    root = soup.find("main") or soup.find("article") or soup.body or soup
    paragraphs = [
        text
        for text in (collapse_whitespace(p.get_text(" ")) for p in root.find_all("p"))
        if len(text) >= MIN_PARAGRAPH_CHARS
    ]

    picked: list[str] = []
    used = 0
    for paragraph in paragraphs:
        for sentence in SENTENCE_SPLIT.split(paragraph):
            sentence = sentence.strip()
            if not sentence:
                continue
            extra = len(sentence) + (1 if picked else 0)
            if picked and used + extra > max_chars:
                return " ".join(picked)
            if not picked and len(sentence) > max_chars:
                return sentence[: max(max_chars - 1, 0)].rstrip() + "…"
            picked.append(sentence)
            used += extra
            if len(picked) >= MAX_SUMMARY_SENTENCES or used >= max_chars:
                return " ".join(picked)
    return " ".join(picked)


class PageEnricher:
    """Fetches the top result pages and attaches short extractive summaries."""

    def __init__(
        self,
        *,
        timeout: float | None = None,
        user_agent: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout = float(timeout if timeout is not None else settings.page_fetch_timeout_seconds)
        self.user_agent = user_agent or settings.search_user_agent
        self._transport = transport

    async def enrich(
        self,
        entries: list[SearchResult],
        max_pages: int = MAX_ENRICHED_PAGES,
        max_chars_per_entry: int | None = None,
    ) -> list[SearchResult]:
        max_chars = int(max_chars_per_entry if max_chars_per_entry is not None else settings.enrich_max_chars)
        budget = max(0, min(MAX_ENRICHED_PAGES, int(max_pages), len(entries)))
        if budget == 0 or max_chars <= 0:
            return list(entries)

        async with httpx.AsyncClient(
            headers={"User-Agent": self.user_agent},
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            summaries = await asyncio.gather(
                *(self._summarize(client, entry.url, max_chars) for entry in entries[:budget])
            )

        enriched: list[SearchResult] = []
        for idx, entry in enumerate(entries):
            summary = summaries[idx] if idx < budget else None
            enriched.append(dataclasses.replace(entry, summary=summary) if summary else entry)
        return enriched

    async def _summarize(self, client: httpx.AsyncClient, url: str, max_chars: int) -> str | None:
        try:
            response = await client.get(url, timeout=self.timeout)
            response.raise_for_status()
            content_type = response.headers.get("content-type", "").lower()
            if "text/html" not in content_type:
                logger.debug(f"Skipping enrichment for {url}: content-type {content_type or 'unknown'}")
                return None
            summary = summarize_html(response.text, max_chars)
        except httpx.HTTPError as exc:
            logger.debug(f"Enrichment fetch failed for {url}: {exc!r}")
            return None
        except Exception as exc:
            logger.warning(f"Enrichment parse failed for {url}: {exc!r}")
            return None
        return summary or None
