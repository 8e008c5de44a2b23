from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Any

import yaml
from rich.console import Console
from rich.panel import Panel
from rich.pretty import Pretty
from rich.table import Table
from loguru import logger

from world_narrator.config import load_config
from world_narrator.config.loader import masked_env_snapshot
from world_narrator.config.schema import AppConfigRoot
from world_narrator.domain.entities import entity_from_mapping
from world_narrator.domain.errors import NarrativeError
from world_narrator.domain.events import StoryEvent
from world_narrator.domain.projection import EntityRecord
from world_narrator.narrative.engine import NarrativeEngine
from world_narrator.narrative.service import build_engine
from world_narrator.utils.logging import setup_logging

console = Console()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="world-narrator")
    parser.add_argument("--config", type=Path, default=None, help="Path to custom config YAML")
    parser.add_argument("--profile", type=str, default=None, help="Config profile name")
    parser.add_argument("--data-dir", type=Path, default=None, help="Override data directory")
    parser.add_argument("--db", type=Path, default=None, help="Override SQLite database path")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("config", help="Validate and print effective config")

    create_parser = subparsers.add_parser("create-world", help="Create a world and optionally seed its entities")
    create_parser.add_argument("--world-id", type=str, default=None, help="World id (generated when absent)")
    create_parser.add_argument("--title", type=str, required=True, help="World title")
    create_parser.add_argument("--seed", type=Path, default=None, help="YAML file with an 'entities' list")

    act_parser = subparsers.add_parser("act", help="Submit one player action and print the resulting events")
    act_parser.add_argument("--world-id", type=str, required=True, help="Target world id")
    act_parser.add_argument("--actor", type=str, required=True, help="Acting character entity id")
    act_parser.add_argument("--input", type=str, required=True, help="Free-text player action")

    events_parser = subparsers.add_parser("events", help="List logged events of a world")
    events_parser.add_argument("--world-id", type=str, required=True, help="World id")
    events_parser.add_argument("--after", type=int, default=0, help="Only events after this sequence")
    events_parser.add_argument("--limit", type=int, default=None, help="Maximum number of events")

    verify_parser = subparsers.add_parser("verify", help="Replay the log and compare with the cached projection")
    verify_parser.add_argument("--world-id", type=str, required=True, help="World id")
    verify_parser.add_argument("--rebuild", action="store_true", help="Rewrite the cache from the log on drift")

    subparsers.add_parser("worlds", help="List known worlds")

    return parser


def _build_overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if args.data_dir:
        overrides["app"] = {"data_dir": str(args.data_dir)}
    if args.db:
        overrides["storage"] = {"sqlite_path": str(args.db)}
    return overrides


def _print_config(config: AppConfigRoot) -> None:
    env_snapshot = masked_env_snapshot(config)
    console.print(Panel(Pretty(config.model_dump(mode="json")), title="Effective Config"))
    console.print(Panel(Pretty(env_snapshot), title="Env Snapshot"))


def load_seed_file(path: Path) -> list[EntityRecord]:
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    entries = data.get("entities", []) if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise ValueError(f"Seed file {path} must contain an 'entities' list")
    return [entity_from_mapping(entry) for entry in entries]


def _summarize_payload(event: StoryEvent) -> str:
    payload = event.payload
    if "text" in payload:
        return f"{payload.get('speaker')}: {payload['text']}"
    if "entity" in payload:
        entity = payload["entity"]
        return f"{entity.get('kind')} {entity.get('id')}"
    if "changes" in payload:
        return f"{payload.get('entity_id')} {payload['changes']}"
    if "sentiment" in payload:
        return f"{payload.get('source')} -> {payload.get('target')} sentiment={payload['sentiment']}"
    if "item_id" in payload:
        return f"{payload['item_id']} -> {payload.get('recipient')}"
    if "label" in payload:
        return str(payload["label"])
    return str(payload.get("description") or payload.get("content") or "")


def _events_table(title: str, events: list[StoryEvent]) -> Table:
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Seq", justify="right")
    table.add_column("Kind")
    table.add_column("Summary")
    table.add_column("Timestamp")
    for event in events:
        table.add_row(str(event.sequence), event.kind, _summarize_payload(event), event.timestamp.isoformat())
    return table


async def _run_command(args: argparse.Namespace, engine: NarrativeEngine) -> None:
    if args.command == "create-world":
        records = load_seed_file(args.seed) if args.seed else []
        world = await engine.create_world(args.title, world_id=args.world_id, entities=records)
        table = Table(title="World Created", show_header=True, header_style="bold")
        table.add_column("Metric")
        table.add_column("Value")
        table.add_row("World ID", world.world_id)
        table.add_row("Title", world.title)
        table.add_row("Entities seeded", str(len(records)))
        table.add_row("Sequence", str(world.sequence))
        console.print(table)
        return

    if args.command == "act":
        result = await engine.submit_action(args.world_id, args.actor, args.input)
        console.print(_events_table(f"Turn {result.turn_id[:12]} ({result.status})", result.events))
        if result.reason:
            console.print(f"[yellow]{result.failure_kind}: {result.reason}[/yellow]")
        return

    if args.command == "events":
        events = await engine.read_events(args.world_id, after_sequence=args.after, limit=args.limit)
        console.print(_events_table(f"Events of {args.world_id}", events))
        return

    if args.command == "verify":
        report = await engine.verify_projection(args.world_id)
        table = Table(title="Projection Check", show_header=True, header_style="bold")
        table.add_column("Metric")
        table.add_column("Value")
        table.add_row("Sequence", str(report.sequence))
        table.add_row("Log hash", report.log_hash[:16])
        table.add_row("Cache hash", report.cache_hash[:16])
        table.add_row("Consistent", "yes" if report.consistent else "no")
        console.print(table)
        if not report.consistent and args.rebuild:
            projection = await engine.rebuild_projection(args.world_id)
            console.print(f"[green]Cache rebuilt at sequence {projection.sequence}[/green]")
        return

    if args.command == "worlds":
        table = Table(title="Worlds", show_header=True, header_style="bold")
        table.add_column("World ID")
        table.add_column("Title")
        table.add_column("Sequence", justify="right")
        table.add_column("Created")
        for world in await engine.list_worlds():
            table.add_row(world.world_id, world.title, str(world.sequence), str(world.created_at))
        console.print(table)
        return

    raise ValueError(f"Unknown command: {args.command}")


async def _main_async() -> None:
    parser = _build_parser()
    args = parser.parse_args()

    config = load_config(
        config_path=args.config,
        profile=args.profile,
        overrides=_build_overrides(args),
    )

    setup_logging(config.app.log_level)
    logger.info("Loaded configuration")

    if args.command == "config":
        _print_config(config)
        return

    engine = await build_engine(config)
    try:
        await _run_command(args, engine)
    except NarrativeError as exc:
        console.print(f"[red]{type(exc).__name__}: {exc}[/red]")
        raise SystemExit(1) from exc
    finally:
        await engine.shutdown()


def main() -> None:
    asyncio.run(_main_async())


if __name__ == "__main__":
    main()
