#!/usr/bin/env python3
"""CLI for the Strudel code assistant: ask, chat, manage the corpus indexes."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from core.config import settings
from core.errors import CodeAssistError


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )


def build_agent(store, rag_cache=None):
    """Wire the agent from configured providers and the given store."""
    from agent.code_agent import CodeAgent
    from dsl.validator import validator_from_settings
    from generation.generator import OpenAIChatGenerator
    from retrieval.embedder import Embedder
    from retrieval.query_analyzer import QueryAnalyzer
    from retrieval.retriever import HybridRetriever

    analyzer = QueryAnalyzer()
    retriever = HybridRetriever(store, Embedder(), analyzer)
    return CodeAgent(
        retriever,
        OpenAIChatGenerator(),
        analyzer,
        validator=validator_from_settings(),
        rag_cache=rag_cache,
    )


def print_response(response) -> None:
    if not response.is_actionable:
        print("\nThe request needs more detail:")
        for question in response.clarifying_questions:
            print(f"  - {question}")
        return

    label = "Code" if response.is_code_response else "Answer"
    print(f"\n{label}:\n{response.content}")
    if response.did_retry:
        print(f"\n(retried after validation error: {response.validation_error})")

    print(
        f"\nModel: {response.model}  tokens in/out: "
        f"{response.usage.input_tokens}/{response.usage.output_tokens}"
    )
    if response.doc_references:
        print(f"Docs ({response.docs_retrieved} chunks):")
        for ref in response.doc_references:
            print(f"  - {ref.page_name} {ref.url}")
    if response.program_references:
        print("Examples:")
        for ref in response.program_references:
            print(f"  - {ref.title} {ref.url}")


async def _ask(args: argparse.Namespace) -> None:
    from core.models import GenerateRequest
    from storage.corpus_store import Neo4jCorpusStore

    editor_state = ""
    if args.editor_file:
        editor_state = Path(args.editor_file).read_text(encoding="utf-8")

    store = Neo4jCorpusStore()
    try:
        agent = build_agent(store)
        request = GenerateRequest(user_query=args.question, editor_state=editor_state)
        print(f"Query: {args.question}")

        if args.stream:

            async def on_event(event) -> None:
                if event.type == "chunk":
                    print(event.content, end="", flush=True)
                elif event.type == "done":
                    print(f"\n\nModel: {event.model}  code: {event.is_code_response}")
                elif event.type == "error":
                    print(f"\nError: {event.error}", file=sys.stderr)

            await agent.generate_stream(request, on_event)
        else:
            print_response(await agent.generate(request))
    finally:
        await store.close()


async def _chat(args: argparse.Namespace) -> None:
    from core.models import GenerateRequest
    from sessions.registry import SessionRegistry
    from storage.corpus_store import Neo4jCorpusStore
    from storage.rag_cache import InMemoryRAGCache

    store = Neo4jCorpusStore()
    registry = SessionRegistry()
    registry.start()
    try:
        agent = build_agent(store, rag_cache=InMemoryRAGCache())
        session = await registry.create()
        print(f"Session {session.id}. Empty line or Ctrl-D to quit.")

        while True:
            try:
                query = input("\n> ").strip()
            except EOFError:
                break
            if not query:
                break

            session = await registry.get(session.id)
            request = GenerateRequest(
                user_query=query,
                editor_state=session.editor_state,
                conversation_history=session.conversation_history,
                session_id=session.id,
            )
            try:
                response = await agent.generate(request)
            except CodeAssistError as e:
                print(f"Error: {e}", file=sys.stderr)
                continue

            print_response(response)
            if not response.is_actionable:
                continue

            code = response.content if response.is_code_response else session.editor_state
            await registry.add_message(session.id, "user", query)
            await registry.add_message(session.id, "assistant", response.content)
            await registry.update_code(session.id, code)
    finally:
        await registry.stop()
        await store.close()


async def _init_index(args: argparse.Namespace) -> None:
    from storage.corpus_store import Neo4jCorpusStore

    store = Neo4jCorpusStore()
    try:
        print("Initializing vector and full-text indexes...")
        await store.init_indexes()
        print(f"Done (embedding dimensions: {settings.embedding_dimensions})")
    finally:
        await store.close()


async def _stats(args: argparse.Namespace) -> None:
    from storage.corpus_store import Neo4jCorpusStore

    store = Neo4jCorpusStore()
    try:
        for label, total in (await store.count()).items():
            print(f"{label}: {total}")
    finally:
        await store.close()


def cmd_ask(args: argparse.Namespace) -> None:
    """Run one generation turn."""
    asyncio.run(_ask(args))


def cmd_chat(args: argparse.Namespace) -> None:
    """Interactive conversation backed by an anonymous session."""
    asyncio.run(_chat(args))


def cmd_init_index(args: argparse.Namespace) -> None:
    asyncio.run(_init_index(args))


def cmd_stats(args: argparse.Namespace) -> None:
    """Show corpus statistics."""
    asyncio.run(_stats(args))


def main() -> None:
    parser = argparse.ArgumentParser(description="Strudel code assistant CLI")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # ask
    p_ask = subparsers.add_parser("ask", help="Ask for code or an explanation")
    p_ask.add_argument("question", help="Request or question")
    p_ask.add_argument("--stream", action="store_true", help="Stream the response")
    p_ask.add_argument("--editor-file", help="File holding the current editor contents")

    # chat
    subparsers.add_parser("chat", help="Interactive session")

    # init-index
    subparsers.add_parser("init-index", help="Create corpus indexes")

    # stats
    subparsers.add_parser("stats", help="Show corpus statistics")

    args = parser.parse_args()
    setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    commands = {
        "ask": cmd_ask,
        "chat": cmd_chat,
        "init-index": cmd_init_index,
        "stats": cmd_stats,
    }
    try:
        commands[args.command](args)
    except CodeAssistError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
