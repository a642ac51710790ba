"""Caller-facing operations for one chat turn: plan, search, stream, cancel."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import AsyncGenerator, AsyncIterator

from loguru import logger

from freshcontext.agents.orchestrator import DeepResearchOrchestrator
from freshcontext.config import SearchPreferences, settings
from freshcontext.llm_client import GenerationClient
from freshcontext.models.conversation import ConversationTurn, TurnMeta, last_context_turn, original_goal
from freshcontext.models.events import SSEEvent
from freshcontext.models.research import DeepResearchMeta
from freshcontext.models.search import SearchOutcome
from freshcontext.models.stream import StreamEvent
from freshcontext.services import logger as log_service
from freshcontext.services.completion import CancellationRegistry, StreamingCompletionController
from freshcontext.services.grounding import analyze_grounding
from freshcontext.services.prompt_store import get_prompt, render_prompt
from freshcontext.services.reachability import ReachabilityProbe
from freshcontext.services.search_planner import create_search_plan
from freshcontext.tools.search_provider import SearchProvider
from freshcontext.tools.web_utils import format_readable_date

MSG_OFFLINE = "Offline – search skipped, answering from model knowledge."
MSG_NO_SEARCH = "Responding with model knowledge (no web search)."
MSG_NO_RESULTS = "Web search returned no usable results – answering from model knowledge."


def build_context_instruction(context: str, retrieved_at: datetime | None, generic_fresh: bool) -> str:
    lines = [get_prompt("chat.context.intro")]
    lines.append(get_prompt("chat.context.generic_fresh" if generic_fresh else "chat.context.default"))
    if retrieved_at is not None:
        retrieved = render_prompt("chat.context.retrieved", retrieved_at=format_readable_date(retrieved_at))
        lines.extend(["", retrieved])
    lines.extend(["", render_prompt("chat.context.body", context=context)])
    return "\n".join(lines)


def build_research_block(research: DeepResearchMeta) -> str:
    sources = "\n".join(f"- {s.get('title') or s.get('url')} ({s.get('url')})" for s in research.sources)
    return render_prompt(
        "chat.research_block",
        summary=research.summary or "(none)",
        answer=research.answer or "(no draft)",
        sources=sources or "(none)",
    )


def describe_outcome(outcome: SearchOutcome) -> str:
    """Planning message shown to the user before the answer streams."""
    plan = outcome.plan
    if outcome.reused or (plan is not None and plan.disabled):
        return plan.message if plan is not None and plan.message else MSG_NO_SEARCH
    if outcome.has_context:
        return f"Using {len(outcome.entries)} web results for: {', '.join(outcome.queries)}"
    if plan is not None and plan.reason == "offline":
        return MSG_OFFLINE
    if plan is not None and plan.should_search:
        return MSG_NO_RESULTS
    return (plan.message if plan is not None else "") or MSG_NO_SEARCH


class ChatService:
    def __init__(
        self,
        *,
        provider: SearchProvider,
        llm: GenerationClient,
        probe: ReachabilityProbe,
        registry: CancellationRegistry | None = None,
        orchestrator: DeepResearchOrchestrator | None = None,
        directive_retry_cap: int | None = None,
    ):
        self.provider = provider
        self.llm = llm
        self.probe = probe
        self.registry = registry or CancellationRegistry()
        self.orchestrator = orchestrator or DeepResearchOrchestrator(provider, llm=llm, probe=probe)
        self.directive_retry_cap = directive_retry_cap

    async def plan_and_search(
        self,
        history: list[ConversationTurn],
        prompt: str,
        preferences: SearchPreferences | None = None,
        *,
        now: datetime | None = None,
    ) -> SearchOutcome:
        """Decide on retrieval for a new prompt and run it; may return an empty outcome."""
        preferences = preferences or SearchPreferences.from_settings()
        now = now or datetime.now(timezone.utc)
        grounding = analyze_grounding(history, prompt, now=now)
        plan = create_search_plan(prompt, history, preferences, grounding=grounding, now=now)
        log_service.log_event(
            "search_plan",
            plan.message or plan.reason,
            reason=plan.reason,
            should_search=plan.should_search,
            queries=plan.queries,
            confidence=grounding.confidence,
            coverage=grounding.coverage_ratio,
        )

        if plan.reuse_context:
            prior = last_context_turn(history)
            if prior is not None:
                return SearchOutcome(
                    text=prior.meta.context,
                    queries=list(prior.meta.context_queries),
                    retrieved_at=prior.meta.retrieved_at,
                    plan=plan,
                    reused=True,
                )
        if not plan.should_search:
            return SearchOutcome(queries=list(plan.queries) if plan.disabled else [], plan=plan)

        if not await self.probe.is_online():
            logger.info("Search skipped: reachability probe reports offline")
            plan.message = MSG_OFFLINE
            plan.reason = "offline"
            return SearchOutcome(plan=plan)

        outcome = await self.provider.search(plan.queries, preferences.search_result_limit)
        outcome.plan = plan
        return outcome

    def build_messages(
        self,
        history: list[ConversationTurn],
        prompt: str,
        context: SearchOutcome | None = None,
        research: DeepResearchMeta | None = None,
        preferences: SearchPreferences | None = None,
    ) -> list[dict[str, str]]:
        preferences = preferences or SearchPreferences.from_settings()
        system = get_prompt("chat.system")
        if preferences.auto_web_search:
            system = f"{system}\n\n{get_prompt('chat.directive')}"
        messages = [{"role": "system", "content": system}]
        messages.extend(turn.to_message() for turn in history if turn.content)

        plan = context.plan if context is not None else None
        goal = original_goal(history)
        if plan is not None and plan.redirect_to_goal and goal:
            messages.append({"role": "system", "content": render_prompt("chat.redirect", goal=goal)})
        if context is not None and context.has_context:
            messages.append(
                {
                    "role": "system",
                    "content": build_context_instruction(
                        context.text,
                        context.retrieved_at,
                        bool(plan and plan.generic_fresh_info),
                    ),
                }
            )
        if research is not None and (research.summary or research.answer):
            messages.append({"role": "system", "content": build_research_block(research)})
        messages.append({"role": "user", "content": prompt})
        return messages

    async def stream_answer(
        self,
        history: list[ConversationTurn],
        prompt: str,
        context: SearchOutcome | None,
        model: str | None = None,
        request_id: str | None = None,
        research: DeepResearchMeta | None = None,
        preferences: SearchPreferences | None = None,
    ) -> AsyncIterator[StreamEvent]:
        preferences = preferences or SearchPreferences.from_settings()
        model = model or settings.default_model
        messages = self.build_messages(history, prompt, context, research, preferences)

        async def directive_search(query: str) -> SearchOutcome:
            if not await self.probe.is_online():
                return SearchOutcome(queries=[query])
            return await self.provider.search([query], preferences.search_result_limit)

        controller = StreamingCompletionController(
            self.llm,
            directive_search,
            directive_retry_cap=self.directive_retry_cap,
        )
        token = self.registry.register(request_id)
        try:
            async for event in controller.stream(messages, model, token):
                yield event
        finally:
            self.registry.release(token.request_id)

    def run_deep_research(
        self,
        topic: str,
        *,
        model: str | None = None,
        iterations: int | None = None,
        result_limit: int | None = None,
        seed_queries: list[str] | None = None,
    ) -> AsyncGenerator[SSEEvent, None]:
        return self.orchestrator.research(
            topic,
            model=model,
            iterations=iterations,
            result_limit=result_limit,
            seed_queries=seed_queries,
        )

    def cancel(self, request_id: str) -> bool:
        cancelled = self.registry.cancel(request_id)
        log_service.log_event("cancel_requested", "Cancellation requested", request_id=request_id, found=cancelled)
        return cancelled

    @staticmethod
    def build_turn_meta(outcome: SearchOutcome | None, supplemental: list[str] | None = None) -> TurnMeta:
        """Retrieval bookkeeping persisted on the assistant turn."""
        outcome = outcome or SearchOutcome()
        plan = outcome.plan
        queries = list(outcome.queries) or (list(plan.queries) if plan is not None and plan.disabled else [])
        context = "\n\n".join(part for part in [outcome.text, *(supplemental or [])] if part and part.strip())
        return TurnMeta(
            context=context,
            context_queries=tuple(queries),
            retrieved_at=outcome.retrieved_at,
            used_web_search=bool(context),
        )
