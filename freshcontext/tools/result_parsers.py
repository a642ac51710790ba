"""Parsers that turn search-backend responses into uniform raw results.

The HTML markup is not under our control and drifts over time, so parsing is a
list of independent strategies tried in order; the first one that yields
anything wins. New layouts are supported by appending a parser.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Protocol

from bs4 import BeautifulSoup, Tag

from freshcontext.tools.text_utils import collapse_whitespace
from freshcontext.tools.web_utils import decode_result_href, is_search_engine_url


@dataclass(frozen=True, slots=True)
class RawResult:
    title: str
    url: str
    snippet: str = ""


class HtmlResultParser(Protocol):
    name: str

    def parse(self, soup: BeautifulSoup) -> list[RawResult]:
        ...


def _text(node: Tag | None) -> str:
    if node is None:
        return ""
    return collapse_whitespace(node.get_text(" "))


def _keep(result: RawResult) -> bool:
    return bool(result.url) and not is_search_engine_url(result.url) and bool(result.title or result.snippet)


class ResultBlockParser:
    """Primary layout: one ``div.result`` block per hit."""

    name = "result-blocks"

    def parse(self, soup: BeautifulSoup) -> list[RawResult]:
        results: list[RawResult] = []
        for block in soup.select("div.result, div.results_links, article.web-result"):
            classes = block.get("class") or []
            if "result--ad" in classes:
                continue
            anchor = block.select_one("a.result__a") or block.select_one(".result__title a")
            title = _text(anchor) or _text(block.select_one(".result__title"))
            snippet = _text(block.select_one(".result__snippet"))
            href = anchor.get("href") if anchor is not None else None
            candidate = RawResult(title=title, url=decode_result_href(href), snippet=snippet)
            if _keep(candidate):
                results.append(candidate)
        return results


class TableRowParser:
    """Lite layout: results spread across table rows."""

    name = "table-rows"

    def parse(self, soup: BeautifulSoup) -> list[RawResult]:
        results: list[RawResult] = []
        for anchor in soup.select("a.result-link"):
            snippet = ""
            row = anchor.find_parent("tr")
            if row is not None:
                for sibling in row.find_next_siblings("tr", limit=3):
                    cell = sibling.select_one("td.result-snippet")
                    if cell is not None:
                        snippet = _text(cell)
                        break
            candidate = RawResult(title=_text(anchor), url=decode_result_href(anchor.get("href")), snippet=snippet)
            if _keep(candidate):
                results.append(candidate)
        return results


class BareAnchorParser:
    """Last resort: any outbound link with readable text."""

    name = "bare-anchors"

    def parse(self, soup: BeautifulSoup) -> list[RawResult]:
        results: list[RawResult] = []
        for anchor in soup.find_all("a", href=True):
            title = _text(anchor)
            if len(title) < 3:
                continue
            candidate = RawResult(title=title, url=decode_result_href(anchor["href"]))
            if _keep(candidate):
                results.append(candidate)
        return results


DEFAULT_HTML_PARSERS: tuple[HtmlResultParser, ...] = (
    ResultBlockParser(),
    TableRowParser(),
    BareAnchorParser(),
)


def parse_html_results(
    html: str,
    parsers: Iterable[HtmlResultParser] = DEFAULT_HTML_PARSERS,
) -> tuple[str, list[RawResult]]:
    """Return ``(parser_name, results)`` from the first parser that finds anything."""
    soup = BeautifulSoup(html or "", "html.parser")
    for parser in parsers:
        results = parser.parse(soup)
        if results:
            return parser.name, results
    return "", []


def _topic_title(text: str) -> str:
    head = text.split(" - ", 1)[0].strip()
    return head[:120] if head else text[:120]


def _flatten_topics(topics: Any) -> Iterable[dict[str, Any]]:
    if not isinstance(topics, list):
        return
    for item in topics:
        if not isinstance(item, dict):
            continue
        if isinstance(item.get("Topics"), list):
            yield from _flatten_topics(item["Topics"])
        else:
            yield item


def parse_instant_answer(payload: Any) -> list[RawResult]:
    """Abstract answer plus related topics from the JSON instant-answer API."""
    if not isinstance(payload, dict):
        raise ValueError("Instant-answer payload must be a JSON object")

    results: list[RawResult] = []
    abstract = collapse_whitespace(str(payload.get("AbstractText") or ""))
    abstract_url = str(payload.get("AbstractURL") or "")
    if abstract and abstract_url:
        title = str(payload.get("Heading") or payload.get("AbstractSource") or abstract_url)
        results.append(RawResult(title=collapse_whitespace(title), url=abstract_url, snippet=abstract))

    for item in list(_flatten_topics(payload.get("Results"))) + list(_flatten_topics(payload.get("RelatedTopics"))):
        url = str(item.get("FirstURL") or "")
        text = collapse_whitespace(str(item.get("Text") or ""))
        if not url or not text:
            continue
        results.append(RawResult(title=_topic_title(text), url=url, snippet=text))
    return results
