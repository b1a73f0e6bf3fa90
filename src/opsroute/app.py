"""Application entry point for the opsroute routing engine."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional, TextIO

from art import tprint
from rich.console import Console
from rich.table import Table

from opsroute import settings as settings_module
from opsroute.adapters.json_config import parse_seed
from opsroute.adapters.log_delivery import LogDelivery
from opsroute.adapters.sqlite_storage import SQLiteStorage
from opsroute.adapters.whatsapp_bridge import WhatsAppBridgeClient
from opsroute.core.engine import RoutingEngine
from opsroute.core.errors import ConfigInvalid, RoutingError
from opsroute.core.models import ClassifiedMessage
from opsroute.core.workers import RoutingWorkerPool
from opsroute.settings import Settings

NAME = "OPSROUTE"
FONT = "tarty-1"

console = Console()


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", False):
        return []
    values = []
    for name in redact_cfg.get("patterns", []):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging(config: Dict[str, Any]) -> None:
    if not config.get("enabled", False):
        return

    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(config)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/opsroute.log")
        if not os.path.isabs(path):
            path = os.path.join(settings_module.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        max_bytes = int(file_cfg.get("max_bytes", 5 * 1024 * 1024))
        backup_count = int(file_cfg.get("backup_count", 5))
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)


def _open_storage(settings: Settings) -> SQLiteStorage:
    storage = SQLiteStorage(settings.db_path)
    storage.init_db()
    return storage


def _build_engine(settings: Settings, storage: SQLiteStorage, dry_run: bool = False) -> RoutingEngine:
    """Wire the engine with the delivery adapter the settings select."""

    logger = logging.getLogger(__name__)
    if settings.bridge_url and not dry_run:
        bridge = WhatsAppBridgeClient(settings.bridge_url, settings.bridge_token)
        delivery, liveness = bridge, bridge
        logger.info("Delivering through WhatsApp bridge at %s", settings.bridge_url)
    else:
        delivery = LogDelivery()
        liveness = None
        logger.info("No bridge configured; notifications are only logged")

    return RoutingEngine.create(
        delivery=delivery,
        liveness=liveness,
        store=storage,
        audit_sinks=[storage],
        event_sinks=[storage],
        config=settings.engine,
    )


def _load_configuration(engine: RoutingEngine, settings: Settings, storage: SQLiteStorage) -> None:
    """Publish the stored configuration, seeding the store from config.json when empty."""

    logger = logging.getLogger(__name__)
    categories, channels, rules = storage.load_configuration()
    if categories or channels or rules:
        engine.guard.load_from_store()
        return
    seed = parse_seed(settings.seed)
    engine.guard.reseed(seed.categories, seed.channels, seed.rules)
    logger.info("Empty store seeded from %s", settings.config_path)


def parse_message(payload: Dict[str, Any]) -> ClassifiedMessage:
    """Build a ClassifiedMessage from one JSON input line."""

    received = payload.get("received_at")
    received_at = datetime.fromisoformat(received) if received else datetime.now(timezone.utc)
    return ClassifiedMessage(
        id=str(payload["id"]),
        text=str(payload.get("text", "")),
        detected_category_name=payload.get("detected_category_name") or payload.get("category"),
        ai_category=str(payload.get("ai_category", "CASUAL")).upper(),
        severity=str(payload.get("severity", "low")).lower(),
        received_at=received_at,
        matched_keywords=tuple(payload.get("matched_keywords", ())),
        sender=payload.get("sender"),
    )


async def _consume(engine: RoutingEngine, stream: TextIO, workers: int, linger: float) -> None:
    """Feed JSON lines to the worker pool.

    A line is either a classified message or ``{"ack": "<message id>"}``.
    """

    logger = logging.getLogger(__name__)
    pool = RoutingWorkerPool(engine, workers=workers)
    pool.start()
    loop = asyncio.get_running_loop()
    try:
        while True:
            line = await loop.run_in_executor(None, stream.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
                if "ack" in payload:
                    # Acks must see every earlier message already routed.
                    await pool.join()
                    if not engine.acknowledge(str(payload["ack"])):
                        logger.info("Nothing to acknowledge for %s", payload["ack"])
                    continue
                await pool.submit(parse_message(payload))
            except (ValueError, KeyError, TypeError):
                logger.exception("Skipping malformed input line: %s", line[:200])

        await pool.join()
        if linger > 0 and engine.escalations.open_chains():
            logger.info("Input finished; waiting %.0fs for escalation timers", linger)
            await asyncio.sleep(linger)
        await engine.wait_idle()
    finally:
        await pool.stop()
        engine.close()
    logger.info(
        "Done: routed=%s unrouted=%s failed=%s crashed=%s",
        pool.stats.routed,
        pool.stats.unrouted,
        pool.stats.failed,
        pool.stats.crashed,
    )
    summary = engine.stats.snapshot()
    logger.info(
        "Routing statistics: success_rate=%.2f escalations=%s average=%.1fms",
        summary.success_rate,
        summary.escalations,
        summary.average_routing_ms,
    )


def _run(settings: Settings, args: argparse.Namespace) -> None:
    _print_banner()
    logger = logging.getLogger(__name__)
    logger.info("Starting opsroute")

    storage = _open_storage(settings)
    engine = _build_engine(settings, storage, dry_run=args.dry_run)
    _load_configuration(engine, settings, storage)
    logger.info("%s active rules are loaded", len(engine.rules.load_active()))

    if args.input and args.input != "-":
        with open(args.input, "r", encoding="utf-8") as handle:
            asyncio.run(_consume(engine, handle, settings.engine.workers, args.linger))
    else:
        asyncio.run(_consume(engine, sys.stdin, settings.engine.workers, args.linger))


def _reseed(settings: Settings) -> None:
    storage = _open_storage(settings)
    engine = _build_engine(settings, storage, dry_run=True)
    try:
        seed = parse_seed(settings.seed)
        report = engine.guard.reseed(seed.categories, seed.channels, seed.rules)
    except ConfigInvalid as exc:
        console.print("[bold red]Configuration rejected:[/bold red]")
        for problem in exc.problems:
            console.print(f"  - {problem}")
        raise SystemExit(1) from exc
    console.print(
        f"Reseeded {report.categories} categories, {report.channels} channels, {report.rules} rules"
    )


def _rules(settings: Settings) -> None:
    storage = _open_storage(settings)
    categories, channels, rules = storage.load_configuration()
    category_names = {c.id: c.name for c in categories}
    channel_names = {c.id: c.name for c in channels}

    table = Table(title="Routing rules")
    for column in ("ID", "Priority", "Name", "Category", "Channel", "AI", "Severity", "Escalation"):
        table.add_column(column)
    for rule in sorted(rules, key=lambda r: (r.priority, r.id)):
        escalation = f"{rule.escalation_timeout_minutes} min" if rule.escalation_enabled else "-"
        table.add_row(
            str(rule.id),
            str(rule.priority),
            rule.name if rule.is_active else f"[dim]{rule.name} (inactive)[/dim]",
            category_names.get(rule.category_id, "?"),
            channel_names.get(rule.channel_id, "?"),
            ", ".join(sorted(rule.accepted_ai_categories)) or "*",
            ", ".join(sorted(rule.accepted_severities)) or "*",
            escalation,
        )
    console.print(table)


def _resolve(settings: Settings, args: argparse.Namespace) -> None:
    storage = _open_storage(settings)
    engine = _build_engine(settings, storage, dry_run=True)
    _load_configuration(engine, settings, storage)
    message = parse_message(
        {
            "id": "dry-run",
            "text": args.text or "",
            "category": args.category,
            "ai_category": args.ai_category,
            "severity": args.severity,
        }
    )
    matched = engine.resolve(message)
    if not matched:
        console.print("[yellow]No rule matches; the message would be unrouted.[/yellow]")
        return
    table = Table(title="Matching rules (first one wins)")
    for column in ("ID", "Priority", "Name", "Channel"):
        table.add_column(column)
    for rule in matched:
        channel = engine.channels.get(rule.channel_id)
        table.add_row(str(rule.id), str(rule.priority), rule.name, channel.name if channel else "?")
    console.print(table)


def _audit(settings: Settings, args: argparse.Namespace) -> None:
    storage = _open_storage(settings)
    table = Table(title="Dispatch records")
    for column in ("Record", "State", "Level", "Attempts", "Dispatched", "Detail"):
        table.add_column(column)
    for record in storage.list_dispatch_records(message_id=args.message, limit=args.limit):
        table.add_row(
            record.record_id,
            record.state.value,
            str(record.escalation_level),
            str(record.attempts),
            record.dispatched_at.strftime("%Y-%m-%d %H:%M:%S") if record.dispatched_at else "",
            record.detail,
        )
    console.print(table)


def _events(settings: Settings, args: argparse.Namespace) -> None:
    storage = _open_storage(settings)
    table = Table(title="Operator events")
    for column in ("Time", "Kind", "Message", "Detail"):
        table.add_column(column)
    for event in storage.list_operator_events(kind=args.kind, limit=args.limit):
        table.add_row(
            event.created_at.strftime("%Y-%m-%d %H:%M:%S") if event.created_at else "",
            event.kind,
            event.message_id or "",
            event.detail,
        )
    console.print(table)


def _stats(settings: Settings) -> None:
    storage = _open_storage(settings)
    table = Table(title="Routing statistics per rule")
    for column in ("ID", "Name", "Routed", "Delivered", "Success", "Acked", "Escalated", "Abandoned"):
        table.add_column(column)
    for row in storage.rule_statistics():
        table.add_row(
            str(row["rule_id"]),
            row["name"] or "[dim](deleted)[/dim]",
            str(row["total_routed"]),
            str(row["successful_routes"]),
            f"{row['success_rate']:.0%}",
            str(row["acknowledged"]),
            str(row["escalated"]),
            str(row["abandoned"]),
        )
    console.print(table)


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="opsroute")
    parser.add_argument("--config", help="Path to config.json (defaults to $OPSROUTE_CONFIG or ./config.json)")
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Route classified messages read as JSON lines")
    run_parser.add_argument("--input", default="-", help="JSON-lines file, '-' for stdin")
    run_parser.add_argument("--dry-run", action="store_true", help="Log notifications instead of sending them")
    run_parser.add_argument("--linger", type=float, default=0.0, help="Seconds to keep escalation timers alive")

    subparsers.add_parser("reseed", help="Replace stored categories, channels and rules from config.json")
    subparsers.add_parser("rules", help="List the stored routing rules")

    resolve_parser = subparsers.add_parser("resolve", help="Show which rules a message would match")
    resolve_parser.add_argument("--category", help="Detected category name")
    resolve_parser.add_argument("--ai-category", default="COMPLAINT")
    resolve_parser.add_argument("--severity", default="medium")
    resolve_parser.add_argument("--text", help="Message text, used for keyword detection without --category")

    audit_parser = subparsers.add_parser("audit", help="Show dispatch records")
    audit_parser.add_argument("--message", help="Only records of this message id")
    audit_parser.add_argument("--limit", type=int, default=50)

    events_parser = subparsers.add_parser("events", help="Show operator events")
    events_parser.add_argument("--kind", help="unrouted, channel_unavailable, delivery_failed, ...")
    events_parser.add_argument("--limit", type=int, default=50)

    subparsers.add_parser("stats", help="Show per-rule routing outcomes from the audit trail")

    args = parser.parse_args(argv)
    settings = settings_module.load_settings(args.config)
    _configure_logging(settings.logging)

    try:
        if args.command == "reseed":
            _reseed(settings)
        elif args.command == "rules":
            _rules(settings)
        elif args.command == "resolve":
            _resolve(settings, args)
        elif args.command == "audit":
            _audit(settings, args)
        elif args.command == "events":
            _events(settings, args)
        elif args.command == "stats":
            _stats(settings)
        elif args.command == "run":
            _run(settings, args)
        else:
            parser.print_help()
    except RoutingError as exc:
        console.print(f"[bold red]{exc}[/bold red]")
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
