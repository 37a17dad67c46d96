"""Balli Research - multi-round research engine

Simple CLI for running one research question and printing its stage events.
"""

import argparse
import asyncio

import httpx

from research_engine.agents.orchestrator import ResearchOrchestrator
from research_engine.client import ResearchClient
from research_engine.models.events import StageEvent
from research_engine.services.context import RequestContext
from research_engine.services.streaming import StageEmitter
from research_engine.tools.registry import build_default_registry


def print_event(event: StageEvent) -> None:
    event_type = event.type.value
    data = event.data

    if event_type == "routing":
        print(f"[*] Tier {data.get('tier')} ({data.get('confidence')}): {data.get('reasoning', '')}")

    elif event_type == "recall_result":
        print(f"[*] Recall: {data.get('status')} ({len(data.get('sessions', []))} sessions)")

    elif event_type == "planning_complete":
        print(f"\n[*] Research Plan ({data.get('total_target')} sources, "
              f"{data.get('min_rounds')}-{data.get('max_rounds')} rounds):")
        for provider, count in data.get("distribution", {}).items():
            print(f"  {provider}: {count}")
        for i, query in enumerate(data.get("sub_queries", []), 1):
            print(f"  {i}. {query[:80]}")

    elif event_type == "round_started":
        print(f"\n[~] Round {data.get('round')} ({data.get('purpose')}): {', '.join(data.get('queries', []))[:120]}")

    elif event_type == "api_call":
        print(f"  [{data.get('status')}] {data.get('provider')}: "
              f"{data.get('results_count')} results in {data.get('latency_ms')}ms")

    elif event_type == "round_complete":
        print(f"  [+] Round {data.get('round')} {data.get('status')}: "
              f"{data.get('new_sources')} new, {data.get('total_sources')} total")

    elif event_type == "gap_detected":
        print(f"  [?] Gap score {data.get('gap_score')} -> {data.get('decision')}: {data.get('rationale', '')[:120]}")

    elif event_type == "synthesis_started":
        print(f"\n[+] Synthesizing from {data.get('sources_count')} sources...\n")

    elif event_type == "token":
        print(data.get("text", ""), end="", flush=True)

    elif event_type == "complete":
        print("\n\n[*] Research Complete!")
        if data.get("tier") == 0:
            print(data.get("answer", ""))
        print(f"   Rounds: {data.get('rounds', 0)}  Stop: {data.get('stop_reason')}")
        verification = data.get("verification") or {}
        if verification:
            print(f"   Authenticity: {verification.get('authenticity_score')}")
        for citation in data.get("citations", []):
            print(f"   [{citation['index']}] {citation['title'][:90]} {citation.get('url', '')}")

    elif event_type == "error":
        if data.get("truncated"):
            print(data.get("truncation_marker", ""))
        print(f"\n[!] Error {data.get('code')}: {data.get('message', 'Unknown error')}")


async def run_local(question: str, locale: str) -> None:
    """Run the pipeline in-process."""
    print(f"Research question: {question}")
    print("-" * 50)

    async with httpx.AsyncClient(follow_redirects=True) as http_client:
        orchestrator = ResearchOrchestrator(build_default_registry(http_client))
        context = RequestContext(question=question, locale=locale)
        emitter = StageEmitter(context.request_id)
        task = asyncio.create_task(orchestrator.run(context, emitter))
        async for event in emitter.events():
            print_event(event)
        await task


async def run_remote(question: str, locale: str, server: str) -> None:
    """Stream the question from a running server."""
    print(f"Research question: {question}")
    print("-" * 50)

    async for event in ResearchClient(server).stream(question, locale=locale):
        print_event(event)


def main():
    parser = argparse.ArgumentParser(description="Balli multi-round research engine")
    parser.add_argument("--question", "-q", required=True, help="Research question")
    parser.add_argument("--locale", "-l", default="en", help="User locale hint (default: en)")
    parser.add_argument("--server", "-s", help="Stream from a running server instead of in-process")

    args = parser.parse_args()

    if args.server:
        asyncio.run(run_remote(args.question, args.locale, args.server))
    else:
        asyncio.run(run_local(args.question, args.locale))


if __name__ == "__main__":
    main()
