#!/usr/bin/env python3
"""End-to-end demo: a session whose agent delegates to a subagent.

Exercises the whole stack against a real OpenAI-compatible server:
  Session -> Agent -> task tool -> child Agent -> LLM Client -> /chat/completions

Usage:
    OPENAI_API_KEY=sk-... python examples/session_demo.py
    RELAY_BASE_URL=http://localhost:11434/v1 RELAY_MODEL=llama3.1 python examples/session_demo.py

What it does:
    1. Registers a ``list_files`` tool on a "scout" subagent
    2. Gives the parent agent the scout via the task tool
    3. Runs two turns, printing every event as it arrives
    4. Compacts the conversation manually and prints the result
"""

import asyncio
import logging
import os
import sys
import time
from pathlib import Path


async def main() -> None:
    api_key = os.environ.get("OPENAI_API_KEY", "")
    base_url = os.environ.get("RELAY_BASE_URL")
    if not api_key and not base_url:
        print("ERROR: Set OPENAI_API_KEY or RELAY_BASE_URL")
        print("Usage: OPENAI_API_KEY=sk-... python examples/session_demo.py")
        sys.exit(1)
    model = os.environ.get("RELAY_MODEL", "gpt-4.1-mini")

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    from relay_agent import (
        Agent,
        CompactionDone,
        CompactionStart,
        CompactionSummary,
        Done,
        ErrorEvent,
        InMemorySessionStore,
        Retry,
        Session,
        SessionConfig,
        TextDelta,
        ToolDone,
        ToolError,
        ToolStart,
        TurnDone,
    )
    from relay_llm import Client, OpenAICompatAdapter, ProviderConfig, Tool

    print("=" * 60)
    print("RELAY SESSION DEMO")
    print("=" * 60)
    print()

    # --- LLM client ---
    print("[1/4] Setting up LLM Client...")
    client = Client()
    client.register_adapter(
        "openai-compat",
        OpenAICompatAdapter(ProviderConfig(api_key=api_key or "local", base_url=base_url)),
    )
    print(f"  -> OpenAI-compatible adapter registered (model={model})")

    # --- Agents ---
    print("[2/4] Building scout subagent and parent agent...")

    async def list_files(arguments, context):
        root = Path(arguments.get("path") or ".")
        return sorted(p.name for p in root.iterdir())[:50]

    scout = Agent(
        "scout",
        client,
        model,
        description="Looks around the file system and reports what it finds.",
        system_prompt="You inspect directories with list_files and report concisely.",
        tools=[
            Tool(
                name="list_files",
                description="List entries of a directory.",
                parameters={
                    "type": "object",
                    "properties": {"path": {"type": "string"}},
                },
                execute=list_files,
                requires_approval=False,
            )
        ],
        instructions=False,
        max_steps=5,
    )

    def approve(info):
        print(f"  [approve] {info.tool_name} {info.input}")
        return True

    lead = Agent(
        "lead",
        client,
        model,
        system_prompt="Delegate file-system questions to the scout via the task tool.",
        subagents=[scout],
        approve=approve,
        max_steps=6,
    )
    store = InMemorySessionStore()
    session = Session(lead, config=SessionConfig(context_window=128_000), store=store)
    print(f"  -> Session {session.session_id} ready")

    # --- Turns ---
    print("[3/4] Running turns...")
    start_time = time.monotonic()
    prompts = [
        "What files are in the current directory?",
        "Which of those look like Python packaging files?",
    ]
    async with client:
        for prompt in prompts:
            print()
            print(f">>> {prompt}")
            async for event in session.send(prompt):
                match event:
                    case TextDelta(text=text):
                        print(text, end="", flush=True)
                    case ToolStart(tool_name=name, input=arguments):
                        print(f"\n  [tool] {name} {arguments}")
                    case ToolDone(tool_name=name):
                        print(f"  [tool] {name} done")
                    case ToolError(tool_name=name, error=error):
                        print(f"  [tool] {name} failed: {error}")
                    case Retry(attempt=attempt, delay=delay, error=error):
                        print(f"  [retry] attempt {attempt} in {delay:.1f}s ({error})")
                    case ErrorEvent(error=error):
                        print(f"\n  [error] {error}")
                    case Done(result=result):
                        print(f"\n  [done] {result}")
                    case TurnDone(turn_number=n, usage=usage):
                        print(f"  [turn {n}] {usage.total_tokens or 0} tokens")

        # --- Manual compaction ---
        print()
        print("[4/4] Compacting...")
        async for event in session.compact():
            match event:
                case CompactionStart(reason=reason, tokens_before=before):
                    print(f"  -> start ({reason}, ~{before} tokens)")
                case CompactionSummary(summary=summary):
                    print(f"  -> summary: {summary[:300]}")
                case CompactionDone(tokens_before=before, tokens_after=after):
                    print(f"  -> ~{before} -> ~{after} tokens")

    duration = time.monotonic() - start_time

    print()
    print("=" * 60)
    print("RESULTS")
    print("=" * 60)
    print(f"Turns: {session.turns}")
    print(f"Messages: {len(session.messages)}")
    print(f"Total tokens: {session.total_usage.total_tokens or 0}")
    print(f"Persisted: {session.session_id in store}")
    print(f"Duration: {duration:.1f}s")


if __name__ == "__main__":
    asyncio.run(main())
