from __future__ import annotations

import json
import re
import time
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Callable

import httpx
from loguru import logger

from freshcontext.config import settings
from freshcontext.exceptions import FreshContextError, OfflineError, ResearchInputError
from freshcontext.llm_client import GenerationClient
from freshcontext.models.events import SSEEvent
from freshcontext.models.research import DeepResearchResult, Reflection, ResearchPass
from freshcontext.models.search import SearchResult
from freshcontext.services import logger as log_service
from freshcontext.services import streaming
from freshcontext.services.prompt_store import render_messages
from freshcontext.services.reachability import ReachabilityProbe
from freshcontext.tools.search_provider import SearchProvider
from freshcontext.tools.text_utils import collapse_whitespace, tokenize, truncate
from freshcontext.tools.web_utils import extract_domain, normalize_url

MIN_ITERATIONS = 3
MAX_ITERATIONS = 5
MAX_POOLED_QUERIES = 8
MAX_FINDINGS_PER_PASS = 3
MAX_FOLLOW_UPS = 2
MAX_MODEL_SUGGESTIONS = 2
MAX_SOURCES = 5
TOP_DOMAINS = 3
FINDING_TOKEN_LIMIT = 60

TOPIC_SPLIT = re.compile(r"\s+(?:and|or|versus|vs\.?)\s+|\s*[,;&]\s*", re.IGNORECASE)
FRESHNESS_PATTERN = re.compile(
    r"\b(?:latest|current|recent|today|new|news|update[sd]?|(?:19|20)\d{2})\b",
    re.IGNORECASE,
)


def clamp_iterations(value: Any) -> int:
    try:
        count = int(value)
    except (TypeError, ValueError):
        count = MIN_ITERATIONS
    return max(MIN_ITERATIONS, min(MAX_ITERATIONS, count))


def validate_topic(topic: str | None) -> str:
    topic = collapse_whitespace(topic or "")
    if not tokenize(topic):
        raise ResearchInputError("Deep research needs a topic with at least one searchable word.")
    return topic


def _append_unique(pool: list[str], candidates: list[str], *, cap: int | None = None) -> list[str]:
    """Append case-insensitively new queries; returns the ones actually added."""
    known = {q.lower() for q in pool}
    added: list[str] = []
    for candidate in candidates:
        cleaned = collapse_whitespace(candidate)
        if not cleaned or cleaned.lower() in known:
            continue
        if cap is not None and len(pool) >= cap:
            break
        known.add(cleaned.lower())
        pool.append(cleaned)
        added.append(cleaned)
    return added


def seed_query_pool(topic: str, seed_queries: list[str] | None = None, *, now: datetime) -> list[str]:
    topic = collapse_whitespace(topic)
    candidates = [topic]
    parts = [p.strip() for p in TOPIC_SPLIT.split(topic) if p and tokenize(p)]
    if len(parts) > 1:
        candidates.extend(parts)
    if not FRESHNESS_PATTERN.search(topic):
        candidates.append(f"latest {topic} {now.year}")
    candidates.extend(seed_queries or [])

    pool: list[str] = []
    _append_unique(pool, candidates, cap=MAX_POOLED_QUERIES)
    return pool


def derive_follow_up_queries(
    topic: str,
    findings: list[SearchResult],
    pool: list[str],
    limit: int = MAX_FOLLOW_UPS,
) -> list[str]:
    """Score finding tokens by frequency, weighted by how on-topic each finding is."""
    topic_terms = set(tokenize(topic, limit=None))
    scores: Counter[str] = Counter()
    for finding in findings:
        tokens = tokenize(f"{finding.title} {finding.body}", limit=FINDING_TOKEN_LIMIT)
        if not tokens:
            continue
        overlap = len(topic_terms.intersection(tokens)) / max(len(topic_terms), 1)
        weight = 1.0 + overlap
        for token in tokens:
            if token in topic_terms or token.isdigit():
                continue
            scores[token] += weight

    known = {q.lower() for q in pool}
    queries: list[str] = []
    for token, _ in sorted(scores.items(), key=lambda item: (-item[1], item[0])):
        candidate = f"{topic} {token}"
        if candidate.lower() in known:
            continue
        known.add(candidate.lower())
        queries.append(candidate)
        if len(queries) >= limit:
            break
    return queries


def build_reflection(topic: str, findings: list[SearchResult], pool: list[str]) -> Reflection:
    unique_urls = {normalize_url(f.url) for f in findings if f.url}
    domains = Counter(extract_domain(f.url) for f in findings if f.url)
    top_domains = [(domain, count) for domain, count in domains.most_common(TOP_DOMAINS) if domain]
    suggested = derive_follow_up_queries(topic, findings, pool)

    parts = [f"{len(unique_urls)} unique sources so far"]
    if top_domains:
        parts.append("most cited: " + ", ".join(f"{d} ({c})" for d, c in top_domains))
    if suggested:
        parts.append("next angles: " + "; ".join(suggested))
    return Reflection(
        text=". ".join(parts) + ".",
        unique_sources=len(unique_urls),
        top_domains=top_domains,
        suggested_queries=suggested,
    )


def build_summary(topic: str, timeline: list[ResearchPass], char_cap: int) -> str:
    lines = [f"Deep research: {topic}"]
    for research_pass in timeline:
        lines.append(f"Pass {research_pass.iteration}: {research_pass.query}")
        if research_pass.error:
            lines.append(f"  (search failed: {research_pass.error})")
        for finding in research_pass.findings:
            body = truncate(collapse_whitespace(finding.body), 200)
            host = extract_domain(finding.url)
            lines.append(f"- {finding.title} ({host}){': ' + body if body else ''}")
        if research_pass.verdict:
            review = f" - {research_pass.review}" if research_pass.review else ""
            lines.append(f"  Review: {research_pass.verdict}{review}")
    return truncate("\n".join(lines), char_cap)


def dedupe_sources(timeline: list[ResearchPass], limit: int = MAX_SOURCES) -> list[dict[str, str]]:
    sources: list[dict[str, str]] = []
    seen: set[str] = set()
    for research_pass in timeline:
        for finding in research_pass.findings:
            key = normalize_url(finding.url)
            if not finding.url or key in seen:
                continue
            seen.add(key)
            sources.append({"title": finding.title, "url": finding.url})
            if len(sources) >= limit:
                return sources
    return sources


def _format_findings(findings: list[SearchResult]) -> str:
    if not findings:
        return "(none)"
    return "\n".join(
        f"- {f.title} ({extract_domain(f.url)}): {truncate(collapse_whitespace(f.body), 400)}" for f in findings
    )


def _extract_json_object(raw_text: str) -> dict[str, Any]:
    text = raw_text.strip()
    if text.startswith("```"):
        parts = text.split("```")
        if len(parts) >= 2:
            text = parts[1]
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise json.JSONDecodeError("object not found", text, 0)
    parsed = json.loads(text[start : end + 1])
    if not isinstance(parsed, dict):
        raise json.JSONDecodeError("not an object", text, 0)
    return parsed


class DeepResearchOrchestrator:
    """Bounded, strictly sequential search-and-review loop.

    Each pass searches the next pooled query, keeps up to three unseen
    findings, derives follow-up queries from them and, when a model is given,
    asks it for extra queries, a draft answer and a ``good``/``revise``
    verdict. A ``good`` verdict ends the run early.
    """

    def __init__(
        self,
        provider: SearchProvider,
        *,
        llm: GenerationClient | None = None,
        probe: ReachabilityProbe | None = None,
        summary_char_cap: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.provider = provider
        self.llm = llm
        self.probe = probe
        self.summary_char_cap = int(
            summary_char_cap if summary_char_cap is not None else settings.research_summary_char_cap
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def research(
        self,
        topic: str,
        *,
        model: str | None = None,
        iterations: int | None = None,
        result_limit: int | None = None,
        seed_queries: list[str] | None = None,
    ) -> AsyncGenerator[SSEEvent, None]:
        """Progress events for one run; raises before the first event on bad input or offline."""
        return self._run_passes(
            DeepResearchResult(topic=collapse_whitespace(topic or "")),
            model=model,
            iterations=iterations,
            result_limit=result_limit,
            seed_queries=seed_queries,
        )

    async def run(
        self,
        topic: str,
        *,
        model: str | None = None,
        iterations: int | None = None,
        result_limit: int | None = None,
        seed_queries: list[str] | None = None,
        on_event: Callable[[SSEEvent], Any] | None = None,
    ) -> DeepResearchResult:
        result = DeepResearchResult(topic=collapse_whitespace(topic or ""))
        async for event in self._run_passes(
            result,
            model=model,
            iterations=iterations,
            result_limit=result_limit,
            seed_queries=seed_queries,
        ):
            if on_event is not None:
                on_event(event)
        return result

    async def _run_passes(
        self,
        result: DeepResearchResult,
        *,
        model: str | None,
        iterations: int | None,
        result_limit: int | None,
        seed_queries: list[str] | None,
    ) -> AsyncGenerator[SSEEvent, None]:
        topic = validate_topic(result.topic)
        if self.probe is not None and not await self.probe.is_online():
            raise OfflineError("Deep research requires network access, but the search backend is unreachable.")

        run_id = str(uuid.uuid4())
        started = time.monotonic()
        total = clamp_iterations(iterations if iterations is not None else settings.research_iterations)
        use_model = bool(model) and self.llm is not None
        pool = seed_query_pool(topic, seed_queries, now=self._clock())
        seen_urls: set[str] = set()
        all_findings: list[SearchResult] = []
        prior_draft = ""
        reflection: Reflection | None = None

        log_service.log_research_step(
            run_id, "planning", "completed", {"topic": topic, "pool": pool, "iterations": total}
        )
        yield streaming.planning(topic, pool, total)

        for iteration in range(1, total + 1):
            query = pool[iteration - 1] if iteration <= len(pool) else pool[-1]
            research_pass = ResearchPass(iteration=iteration, query=query)
            result.timeline.append(research_pass)
            yield streaming.iteration_start(iteration, query, total)

            try:
                outcome = await self.provider.search([query], result_limit)
            except (FreshContextError, httpx.HTTPError, ValueError) as exc:
                research_pass.error = f"{type(exc).__name__}: {exc}"
                log_service.log_research_step(
                    run_id, "search", "failed", {"iteration": iteration, "error": research_pass.error}
                )
                yield streaming.iteration_error(iteration, query, research_pass.error)
                continue
            if not outcome.entries:
                research_pass.error = "No results found"
                log_service.log_research_step(run_id, "search", "empty", {"iteration": iteration, "query": query})
                yield streaming.iteration_error(iteration, query, research_pass.error)
                continue

            for entry in outcome.entries:
                key = normalize_url(entry.url)
                if key in seen_urls:
                    continue
                seen_urls.add(key)
                research_pass.findings.append(entry)
                if len(research_pass.findings) >= MAX_FINDINGS_PER_PASS:
                    break

            research_pass.follow_up_queries = derive_follow_up_queries(topic, research_pass.findings, pool)
            _append_unique(pool, research_pass.follow_up_queries, cap=MAX_POOLED_QUERIES)
            yield streaming.iteration_review(research_pass)

            all_findings.extend(research_pass.findings)
            reflection = build_reflection(topic, all_findings, pool)
            yield streaming.iteration_reflection(iteration, reflection)
            log_service.log_research_step(
                run_id,
                "pass",
                "completed",
                {"iteration": iteration, "findings": len(research_pass.findings), "pool": len(pool)},
            )

            if not use_model:
                continue

            try:
                suggested = await self._suggest_queries(model, topic, result.timeline, pool)
                _append_unique(pool, suggested[:MAX_MODEL_SUGGESTIONS], cap=MAX_POOLED_QUERIES)
            except (FreshContextError, httpx.HTTPError, ValueError) as exc:
                yield streaming.model_error(iteration, "suggest", str(exc))

            if not research_pass.findings:
                continue

            try:
                draft = await self._draft(model, topic, research_pass.findings, prior_draft, reflection)
            except (FreshContextError, httpx.HTTPError, ValueError) as exc:
                yield streaming.model_error(iteration, "draft", str(exc))
                continue
            research_pass.answer = draft
            result.answer = draft
            yield streaming.model_draft(iteration, draft)

            try:
                verdict, critique = await self._evaluate(model, topic, draft, research_pass.findings)
            except (FreshContextError, httpx.HTTPError, ValueError) as exc:
                prior_draft = draft
                yield streaming.model_error(iteration, "evaluate", str(exc))
                continue
            research_pass.verdict = verdict
            research_pass.review = critique
            yield streaming.model_eval(iteration, verdict, critique)
            if verdict == "good":
                result.accepted = True
                break
            prior_draft = draft

        result.summary = build_summary(topic, result.timeline, self.summary_char_cap)
        result.sources = dedupe_sources(result.timeline)
        runtime_ms = int((time.monotonic() - started) * 1000)
        log_service.log_research_step(
            run_id,
            "complete",
            "completed",
            {"passes": len(result.timeline), "sources": len(result.sources), "accepted": result.accepted},
        )
        logger.info(f"Deep research finished: {len(result.timeline)} passes, {len(result.sources)} sources")
        yield streaming.complete(result, runtime_ms=runtime_ms)

    async def _suggest_queries(
        self,
        model: str,
        topic: str,
        timeline: list[ResearchPass],
        pool: list[str],
    ) -> list[str]:
        recap = "\n".join(
            f"Pass {p.iteration} ({p.query}): "
            + (", ".join(f.title for f in p.findings) or p.error or "no findings")
            for p in timeline
        )
        messages = render_messages(
            "research.suggest",
            topic=topic,
            recap=recap,
            pooled="\n".join(f"- {q}" for q in pool),
        )
        text = await self.llm.complete(messages, model, caller="research_suggest")
        payload = _extract_json_object(text)
        queries = payload.get("queries")
        if not isinstance(queries, list):
            raise ValueError("Query suggestion reply has no 'queries' list")
        return [collapse_whitespace(str(q)) for q in queries if isinstance(q, str) and q.strip()]

    async def _draft(
        self,
        model: str,
        topic: str,
        findings: list[SearchResult],
        prior_draft: str,
        reflection: Reflection | None,
    ) -> str:
        messages = render_messages(
            "research.draft",
            topic=topic,
            findings=_format_findings(findings),
            prior_draft=prior_draft or "(none)",
            reflection=reflection.text if reflection else "(none)",
        )
        draft = (await self.llm.complete(messages, model, caller="research_draft")).strip()
        if not draft:
            raise ValueError("Model returned an empty draft")
        return draft

    async def _evaluate(
        self,
        model: str,
        topic: str,
        draft: str,
        findings: list[SearchResult],
    ) -> tuple[str, str]:
        messages = render_messages(
            "research.evaluate",
            topic=topic,
            draft=draft,
            findings=_format_findings(findings),
        )
        text = await self.llm.complete(messages, model, caller="research_evaluate")
        try:
            payload = _extract_json_object(text)
        except json.JSONDecodeError:
            lowered = text.strip().lower()
            verdict = "good" if lowered.startswith("good") else "revise"
            return verdict, collapse_whitespace(text)[:300]
        verdict = str(payload.get("verdict", "")).strip().lower()
        critique = collapse_whitespace(str(payload.get("critique", "")))
        return ("good" if verdict == "good" else "revise"), critique
