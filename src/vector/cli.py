#!/usr/bin/env python3
"""
CLI for inspecting a chat store.

Usage:
    python -m vector.cli --help
    python -m vector.cli list
    python -m vector.cli messages 20250101-120000
    python -m vector.cli search 20250101-120000 --vector "[0.1, 0.2, 0.3]" --top-k 5 --chunks
"""

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from .contracts.models import Chat
from .core.config import StoreConfig
from .core.exceptions import ConfigError, VectorStoreError
from .core.logging import configure_logging, default_log_path
from .retrieval import RetrievalHit
from .store import ChatStore


logger = logging.getLogger(__name__)


def setup_logging(verbose: bool, config: StoreConfig) -> None:
    """Configure logging: stderr when verbose, else the RAG_LOGS file sink."""
    if verbose:
        configure_logging(logging.DEBUG)
    elif config.log_level is not None:
        configure_logging(config.log_level, log_file=default_log_path(config.config_dir))
    else:
        configure_logging(None)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _hits_to_dicts(hits: List[RetrievalHit]) -> List[Dict[str, Any]]:
    return [
        {"rank": hit.rank, "score": hit.score, **hit.item.to_dict()}
        for hit in hits
    ]


def _print_hits(title: str, hits: List[RetrievalHit]) -> None:
    print(f"\n{title} ({len(hits)})")
    print("=" * 50)
    for hit in hits:
        label = getattr(hit.item, "role", None)
        label = label.value if label is not None else f"chunk {hit.item.chunk_index}"
        content = hit.item.content.replace("\n", " ")
        if len(content) > 80:
            content = content[:77] + "..."
        print(f"  {hit.rank:>3}. {hit.score:.4f}  [{label}] {content}")


def _open_existing(store: ChatStore, chat_id: str):
    # open_chat creates missing directories; inspection must not
    store.get_chat(chat_id)
    return store.open_chat(chat_id)


def cmd_list(args: argparse.Namespace, store: ChatStore) -> int:
    """List chats, newest first."""
    chats = store.list_chats()

    if args.json:
        _print_json([chat.to_dict() for chat in chats])
        return 0

    print(f"\n{len(chats)} chats in {store.base_dir}")
    print("=" * 50)
    for chat in chats:
        print(f"  {chat.id}  {chat.name}  ({chat.created_at:%Y-%m-%d %H:%M})")
    return 0


def _print_chat(chat: Chat) -> None:
    print(f"\nChat: {chat.id}")
    print("=" * 50)
    print(f"Name:           {chat.name}")
    print(f"Created:        {chat.created_at.isoformat()}")
    print(f"LLM model:      {chat.llm_model or '-'}")
    print(f"Embed model:    {chat.embed_model or '-'}")
    print(f"Temperature:    {chat.temperature}")
    print(f"Top K:          {chat.top_k}")
    print(f"Reranking:      {chat.use_reranking}")
    print(f"Max tokens:     {chat.max_tokens}")
    print(f"Context window: {chat.context_window}")
    print(f"Files:          {chat.file_count}")
    if chat.system_prompt:
        print(f"System prompt:  {chat.system_prompt}")


def cmd_show(args: argparse.Namespace, store: ChatStore) -> int:
    """Show one chat's metadata."""
    chat = store.get_chat(args.chat_id)
    if args.json:
        _print_json(chat.to_dict())
    else:
        _print_chat(chat)
    return 0


def cmd_delete(args: argparse.Namespace, store: ChatStore) -> int:
    """Delete a chat and its data."""
    store.delete_chat(args.chat_id)
    print(f"Deleted chat {args.chat_id}")
    return 0


def cmd_messages(args: argparse.Namespace, store: ChatStore) -> int:
    """Print a chat's messages in chronological order."""
    with _open_existing(store, args.chat_id):
        messages = store.get_messages()

    if args.json:
        _print_json([m.to_dict() for m in messages])
        return 0

    print(f"\n{len(messages)} messages in {args.chat_id}")
    print("=" * 50)
    for message in messages:
        marker = "*" if message.has_embedding else " "
        print(f"{marker} {message.timestamp:%Y-%m-%d %H:%M:%S} [{message.role.value}] {message.content}")
    return 0


def cmd_documents(args: argparse.Namespace, store: ChatStore) -> int:
    """List documents loaded into a chat."""
    with _open_existing(store, args.chat_id):
        documents = store.get_documents()

    if args.json:
        _print_json([d.to_dict() for d in documents])
        return 0

    print(f"\n{len(documents)} documents in {args.chat_id}")
    print("=" * 50)
    for document in documents:
        print(
            f"  {document.file_name}  {document.file_size} bytes, "
            f"{document.chunk_count} chunks, sha256 {document.content_hash[:12]}"
        )
    return 0


def cmd_facts(args: argparse.Namespace, store: ChatStore) -> int:
    """Show the user profile facts for a chat."""
    with _open_existing(store, args.chat_id):
        profile = store.get_user_profile(args.chat_id)

    if args.json:
        _print_json(profile.to_dict())
        return 0

    print(f"\n{len(profile.facts)} facts in {args.chat_id}")
    print("=" * 50)
    for key in sorted(profile.facts):
        fact = profile.facts[key]
        print(f"  {key}: {fact.value}  ({fact.source.value}, confidence {fact.confidence:.2f})")
    return 0


def cmd_history(args: argparse.Namespace, store: ChatStore) -> int:
    """Show previous versions of one fact."""
    with _open_existing(store, args.chat_id):
        current = store.get_profile_fact(args.chat_id, args.key)
        history = store.get_fact_history(args.chat_id, args.key)

    if args.json:
        _print_json({
            "current": current.to_dict() if current else None,
            "history": [fact.to_dict() for fact in history],
        })
        return 0

    print(f"\nFact: {args.key}")
    print("=" * 50)
    print(f"Current: {current.value if current else '(none)'}")
    for fact in history:
        print(f"  {fact.last_seen:%Y-%m-%d %H:%M:%S}  {fact.value}")
    return 0


def _parse_vector(raw: str) -> List[float]:
    try:
        values = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"--vector must be a JSON array: {e}") from e
    if not isinstance(values, list) or not values:
        raise ValueError("--vector must be a non-empty JSON array of numbers")
    try:
        return [float(v) for v in values]
    except (TypeError, ValueError) as e:
        raise ValueError(f"--vector must contain only numbers: {e}") from e


def cmd_search(args: argparse.Namespace, store: ChatStore) -> int:
    """Similarity search over a chat."""
    query = _parse_vector(args.vector)

    with _open_existing(store, args.chat_id):
        if args.chunks:
            search = store.search_context_and_chunks if args.context else store.search_similar_with_chunks
            result = search(query, args.top_k)
            messages, chunks = result.messages, result.chunks
        elif args.context:
            messages, chunks = store.search_context(query, args.top_k), []
        else:
            messages, chunks = store.search_similar(query, args.top_k), []

    if args.json:
        output = {"messages": _hits_to_dicts(messages)}
        if args.chunks:
            output["chunks"] = _hits_to_dicts(chunks)
        _print_json(output)
        return 0

    _print_hits("Messages", messages)
    if args.chunks:
        _print_hits("Chunks", chunks)
    return 0


def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Chat vector store CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--base-dir", help="Chat store directory (overrides config)")
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--json", action="store_true", help="Output JSON")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    list_parser = subparsers.add_parser("list", help="List chats")
    list_parser.set_defaults(func=cmd_list)

    show_parser = subparsers.add_parser("show", help="Show chat metadata")
    show_parser.add_argument("chat_id", help="Chat ID")
    show_parser.set_defaults(func=cmd_show)

    delete_parser = subparsers.add_parser("delete", help="Delete a chat")
    delete_parser.add_argument("chat_id", help="Chat ID")
    delete_parser.set_defaults(func=cmd_delete)

    messages_parser = subparsers.add_parser("messages", help="Print a chat's messages")
    messages_parser.add_argument("chat_id", help="Chat ID")
    messages_parser.set_defaults(func=cmd_messages)

    documents_parser = subparsers.add_parser("documents", help="List a chat's documents")
    documents_parser.add_argument("chat_id", help="Chat ID")
    documents_parser.set_defaults(func=cmd_documents)

    facts_parser = subparsers.add_parser("facts", help="Show user profile facts")
    facts_parser.add_argument("chat_id", help="Chat ID")
    facts_parser.set_defaults(func=cmd_facts)

    history_parser = subparsers.add_parser("history", help="Show a fact's history")
    history_parser.add_argument("chat_id", help="Chat ID")
    history_parser.add_argument("key", help="Fact key")
    history_parser.set_defaults(func=cmd_history)

    search_parser = subparsers.add_parser("search", help="Similarity search")
    search_parser.add_argument("chat_id", help="Chat ID")
    search_parser.add_argument("--vector", required=True, help="Query embedding as a JSON array")
    search_parser.add_argument("--top-k", type=int, default=5, help="Number of results (default: 5)")
    search_parser.add_argument("--chunks", action="store_true", help="Include document chunks")
    search_parser.add_argument("--context", action="store_true", help="Only match context messages")
    search_parser.set_defaults(func=cmd_search)

    args = parser.parse_args(argv)

    try:
        config = StoreConfig.load(args.config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(args.verbose, config)

    if not args.command:
        parser.print_help()
        return 1

    try:
        with ChatStore(base_dir=args.base_dir, config=config) as store:
            return args.func(args, store)
    except (VectorStoreError, ValueError) as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
