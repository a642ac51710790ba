"""FreshContext - web-grounded chat

Simple CLI for deep research runs and one-shot questions.
"""

import argparse
import asyncio
import sys

from freshcontext.config import SearchPreferences
from freshcontext.exceptions import FreshContextError
from freshcontext.llm_client import client as llm_client
from freshcontext.services.chat import ChatService, describe_outcome
from freshcontext.services.reachability import ReachabilityProbe
from freshcontext.tools.search_provider import SearchProvider


def build_service() -> ChatService:
    return ChatService(provider=SearchProvider(), llm=llm_client(), probe=ReachabilityProbe())


async def run_research(topic: str, model: str | None = None, iterations: int | None = None) -> int:
    """Run deep research on the given topic."""
    print(f"Research topic: {topic}")
    print("-" * 50)

    service = build_service()
    try:
        async for event in service.run_deep_research(topic, model=model, iterations=iterations):
            event_type = event.event.value
            data = event.data

            if event_type == "planning":
                queries = data.get("queries", [])
                print(f"\n[*] Query pool ({len(queries)} queries, {data.get('iterations')} passes):")
                for i, query in enumerate(queries, 1):
                    print(f"  {i}. {query}")

            elif event_type == "iteration-start":
                print(f"\n[~] Pass {data.get('iteration')}/{data.get('total')}: {data.get('query')}")

            elif event_type == "iteration-review":
                for finding in data.get("findings", []):
                    print(f"  [+] {finding.get('title')} - {finding.get('url')}")
                for query in data.get("follow_up_queries", []):
                    print(f"  [>] follow-up: {query}")

            elif event_type == "iteration-reflection":
                print(f"  [=] {data.get('text')}")

            elif event_type == "model-eval":
                print(f"  [?] Review: {data.get('verdict')} - {data.get('critique')}")

            elif event_type in ("iteration-error", "model-error"):
                print(f"  [!] {data.get('message')}")

            elif event_type == "complete":
                print(f"\n\n[*] Research Complete!")
                print(f"   Runtime: {data.get('runtime_ms')}ms")
                print(f"   Passes: {len(data.get('timeline', []))}")
                print(f"   Sources: {len(data.get('sources', []))}")
                print(f"\n{'='*50}")
                print("SUMMARY:")
                print(f"{'='*50}")
                print(data.get("summary", ""))
                if data.get("answer"):
                    print(f"\n{'='*50}")
                    print("ANSWER:")
                    print(f"{'='*50}")
                    print(data["answer"])
                for source in data.get("sources", []):
                    print(f"  - {source.get('title')} ({source.get('url')})")
    except FreshContextError as e:
        print(f"\n[!] Error: {e}")
        return 1
    return 0


async def ask(prompt: str, model: str | None = None) -> int:
    """Answer a single prompt with fresh web context when needed."""
    service = build_service()
    preferences = SearchPreferences.from_settings()
    outcome = await service.plan_and_search([], prompt, preferences)
    print(f"[*] {describe_outcome(outcome)}")
    print("-" * 50)

    async for event in service.stream_answer([], prompt, outcome, model, preferences=preferences):
        if event.status == "searching":
            print(f"\n[~] Searching: {event.query}")
        if event.delta:
            print(event.delta, end="", flush=True)
        if event.error:
            print(f"\n[!] Error: {event.error}")
            return 1
        if event.aborted:
            print("\n[!] Aborted")
            return 1
        if event.done and event.timing:
            print(f"\n\n[*] {event.timing.approx_tokens} tokens in {event.timing.total_ms}ms")
    return 0


def main():
    parser = argparse.ArgumentParser(description="FreshContext web-grounded chat")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--query", "-q", help="Deep research topic")
    group.add_argument("--ask", "-a", help="One-shot question")
    group.add_argument("--serve", action="store_true", help="Run the HTTP API")
    parser.add_argument("--model", "-m", help="Model to use (default: from config)")
    parser.add_argument("--iterations", "-n", type=int, help="Deep research passes (3-5)")
    parser.add_argument("--port", "-p", type=int, default=8000, help="Port for --serve")

    args = parser.parse_args()

    if args.serve:
        import uvicorn

        uvicorn.run("freshcontext.main:app", host="127.0.0.1", port=args.port)
        return
    if args.query:
        sys.exit(asyncio.run(run_research(args.query, args.model, args.iterations)))
    sys.exit(asyncio.run(ask(args.ask, args.model)))


if __name__ == "__main__":
    main()
