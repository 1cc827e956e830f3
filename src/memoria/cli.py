"""Command-line interface for inspecting and feeding the memory pipeline."""

import argparse
import asyncio
import json
import sys
from dataclasses import replace
from pathlib import Path

from .config import MemoriaConfig
from .memory.formatting import truncate
from .memory.models import CATEGORIES, Exchange
from .memory.settings import InjectionLimits
from .pipeline import MemoryPipeline


def _offline(config: MemoriaConfig) -> MemoryPipeline:
    """Pipeline without an embedding client, for commands that never embed."""
    return MemoryPipeline(replace(config, embedding_api_key=None))


def _open(config: MemoriaConfig, embeddings: bool = False) -> MemoryPipeline:
    """Pipeline with the store opened; no agent component is built."""
    pipeline = MemoryPipeline(config) if embeddings else _offline(config)
    config.memory_dir.mkdir(parents=True, exist_ok=True)
    pipeline.store.init_db()
    return pipeline


def cmd_status(args: argparse.Namespace, config: MemoriaConfig) -> int:
    """Print processing status and store counters as JSON."""
    pipeline = _open(config)
    try:
        status = pipeline.get_processing_status().to_dict()
        status["entries"] = pipeline.store.count()
        status["dirty_embeddings"] = len(pipeline.store.dirty_keys())
        print(json.dumps(status, indent=2))
    finally:
        pipeline.store.close()
    return 0


def cmd_context(args: argparse.Namespace, config: MemoriaConfig) -> int:
    """Regenerate and print the context document."""
    pipeline = _open(config)
    try:
        print(pipeline.assembler.generate(), end="")
    finally:
        pipeline.store.close()
    return 0


def cmd_traces(args: argparse.Namespace, config: MemoriaConfig) -> int:
    """Print recent trace records, newest first."""
    pipeline = _offline(config)
    traces = pipeline.read_traces(args.limit, args.conversation)
    if not traces:
        print("No traces found.")
        return 0
    if args.json:
        for trace in traces:
            print(json.dumps(trace, ensure_ascii=False))
        return 0

    for trace in traces:
        exchange = trace.get("exchange", {})
        rag = trace.get("rag") or {}
        gate = trace.get("gate") or {}
        agent = trace.get("context_agent") or {}
        if gate and not gate.get("process", True):
            outcome = "skipped"
        elif agent.get("error"):
            outcome = f"error: {agent['error']}"
        else:
            outcome = rag.get("priority", "normal")
        print(
            f"{trace.get('timestamp', '?')}  {trace.get('id', '?')}  "
            f"[{exchange.get('conversation', '')}]  {outcome}"
        )
        print(f"    {truncate(exchange.get('user_message', ''), 100)}")
    print(f"\nTotal: {len(traces)} trace(s)")
    return 0


def _parse_assignments(items: list[str]) -> dict[str, str]:
    values: dict[str, str] = {}
    for item in items:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise ValueError(f"expected key=value, got {item!r}")
        values[name.strip()] = value.strip()
    return values


def cmd_limits(args: argparse.Namespace, config: MemoriaConfig) -> int:
    """Show or update the injection limits."""
    pipeline = _offline(config)
    if not args.set:
        limits = pipeline.get_limits()
    else:
        try:
            values = _parse_assignments(args.set)
        except ValueError as e:
            print(f"Error: {e}")
            return 1
        unknown = sorted(set(values) - set(InjectionLimits().to_dict()))
        if unknown:
            print(f"Error: unknown limit(s): {', '.join(unknown)}")
            return 1
        limits = pipeline.save_limits(**values)
        if config.db_path.exists():
            pipeline.store.init_db()
            pipeline.assembler.generate(limits)
            pipeline.store.close()
    print(json.dumps(limits.to_dict(), indent=2))
    return 0


async def _search(pipeline: MemoryPipeline, query: str, limit: int, category: str | None):
    try:
        return await pipeline.searcher.search(query, limit=limit, category=category)
    finally:
        if pipeline.embedder is not None:
            await pipeline.embedder.aclose()


def cmd_search(args: argparse.Namespace, config: MemoriaConfig) -> int:
    """Hybrid search over the store."""
    pipeline = _open(config, embeddings=True)
    try:
        hits = asyncio.run(_search(pipeline, args.query, args.limit, args.category))
    finally:
        pipeline.store.close()

    if not hits:
        print("No entries found.")
        return 0
    for hit in hits:
        entry = hit.entry
        print(f"{hit.score:.3f}  {entry.key} [{entry.category}] ({hit.match_type})")
        print(f"       {truncate(entry.content, 100)}")
    return 0


def _read_exchanges(path: Path) -> list[Exchange]:
    exchanges = []
    with open(path, "r", encoding="utf-8") as f:
        for number, line in enumerate(f, 1):
            if not line.strip():
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError as e:
                raise ValueError(f"line {number}: {e}") from e
            if not isinstance(data, dict):
                raise ValueError(f"line {number}: expected a JSON object")
            exchanges.append(Exchange.from_dict(data))
    return exchanges


async def _ingest(config: MemoriaConfig, exchanges: list[Exchange], timeout: float | None) -> bool:
    pipeline = MemoryPipeline(config)
    await pipeline.init()
    try:
        for exchange in exchanges:
            pipeline.feed_exchange(exchange)
        return await pipeline.wait_idle(timeout)
    finally:
        await pipeline.shutdown()


def cmd_ingest(args: argparse.Namespace, config: MemoriaConfig) -> int:
    """Feed exchanges from a JSONL file and wait for processing to finish."""
    path = Path(args.file)
    if not path.exists():
        print(f"Error: file not found: {path}")
        return 1
    try:
        exchanges = _read_exchanges(path)
    except (OSError, ValueError) as e:
        print(f"Error: {e}")
        return 1
    if not exchanges:
        print("No exchanges to ingest.")
        return 0

    idle = asyncio.run(_ingest(config, exchanges, args.timeout))
    if not idle:
        print(f"Timed out; processing of {len(exchanges)} exchange(s) was interrupted.")
        return 1
    print(f"Ingested {len(exchanges)} exchange(s).")
    return 0


async def _reset(config: MemoriaConfig) -> None:
    pipeline = MemoryPipeline(config)
    await pipeline.init()
    try:
        await pipeline.reset()
    finally:
        await pipeline.shutdown()


def cmd_reset(args: argparse.Namespace, config: MemoriaConfig) -> int:
    """Wipe the store, context document, urgent files and pending traces."""
    if not args.yes:
        print("Error: this deletes all memory. Re-run with --yes to confirm.")
        return 1
    asyncio.run(_reset(config))
    print(f"Memory reset: {config.memory_dir}")
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the memoria CLI."""
    parser = argparse.ArgumentParser(
        prog="memoria",
        description="Long-term memory pipeline",
    )
    subparsers = parser.add_subparsers(dest="command", help="Sub-command help")

    subparsers.add_parser("status", help="Show processing status")
    subparsers.add_parser("context", help="Regenerate and print the context document")

    traces_parser = subparsers.add_parser("traces", help="Show recent exchange traces")
    traces_parser.add_argument("-n", "--limit", type=int, default=20, help="Max traces")
    traces_parser.add_argument("-c", "--conversation", help="Only this conversation")
    traces_parser.add_argument("--json", action="store_true", help="Print raw JSON lines")

    limits_parser = subparsers.add_parser("limits", help="Show or update injection limits")
    limits_parser.add_argument(
        "--set",
        nargs="+",
        metavar="KEY=VALUE",
        help="Limits to change, e.g. people=8 relation_depth=1",
    )

    search_parser = subparsers.add_parser("search", help="Search memory entries")
    search_parser.add_argument("query", help="Search text")
    search_parser.add_argument("-n", "--limit", type=int, default=10, help="Max results")
    search_parser.add_argument("--category", choices=CATEGORIES, help="Only this category")

    ingest_parser = subparsers.add_parser("ingest", help="Feed exchanges from a JSONL file")
    ingest_parser.add_argument("file", help="JSONL file, one exchange object per line")
    ingest_parser.add_argument(
        "--timeout", type=float, default=None, help="Max seconds to wait for processing"
    )

    reset_parser = subparsers.add_parser("reset", help="Delete all memory")
    reset_parser.add_argument("--yes", action="store_true", help="Confirm the wipe")

    return parser


COMMANDS = {
    "status": cmd_status,
    "context": cmd_context,
    "traces": cmd_traces,
    "limits": cmd_limits,
    "search": cmd_search,
    "ingest": cmd_ingest,
    "reset": cmd_reset,
}


def run_cli(argv: list[str] | None, config: MemoriaConfig) -> int:
    """Run a CLI command.

    Args:
        argv: Arguments after the program name (defaults to sys.argv[1:]).
        config: Loaded configuration.

    Returns:
        Exit code.
    """
    parser = create_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    if args.command is None:
        parser.print_help()
        return 1
    return COMMANDS[args.command](args, config)
