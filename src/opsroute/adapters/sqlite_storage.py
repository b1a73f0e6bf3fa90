"""SQLite storage adapter.

Implements the core ConfigStorePort, AuditPort and EventSinkPort using a
single SQLite database.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from opsroute.core.models import (
    Category,
    Channel,
    DispatchRecord,
    DispatchState,
    Keyword,
    OperatorEvent,
    RoutingRule,
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _dump_set(values) -> str:
    # Empty list is the stored form of "accept any".
    return json.dumps(sorted(values))


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies the storage ports."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - categories: issue categories with their keyword lists
        - channels: WhatsApp groups that receive notifications
        - routing_rules: category -> channel mappings (foreign keys to both)
        - dispatch_records: latest state of every delivery
        - dispatch_events: append-only log of state changes
        - operator_events: append-only operator-facing events
        """

        with self._connect() as conn:
            # categories mirrors the Category model. Keywords are stored as a
            # JSON list of [text, language] pairs.
            # Fields:
            # - name: unique display name, matched case-insensitively
            # - priority_weight: 1 (most urgent) .. 5
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS categories (
                    id INTEGER PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE COLLATE NOCASE,
                    department TEXT NOT NULL,
                    keywords TEXT NOT NULL DEFAULT '[]',
                    priority_weight INTEGER NOT NULL DEFAULT 3,
                    escalation_threshold INTEGER NOT NULL DEFAULT 1,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    description TEXT NOT NULL DEFAULT ''
                )
                """
            )
            # channels holds one row per WhatsApp group.
            # Fields:
            # - group_id: transport identifier of the group
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS channels (
                    id INTEGER PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    group_id TEXT NOT NULL,
                    department TEXT NOT NULL DEFAULT ''
                )
                """
            )
            # routing_rules references categories and channels. The foreign
            # keys reject dangling rules at the database level too.
            # Fields:
            # - accepted_ai_categories / accepted_severities: JSON lists,
            #   empty list means any value
            # - priority: lower is more urgent
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS routing_rules (
                    id INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    category_id INTEGER NOT NULL REFERENCES categories(id),
                    channel_id INTEGER NOT NULL REFERENCES channels(id),
                    accepted_ai_categories TEXT NOT NULL DEFAULT '[]',
                    accepted_severities TEXT NOT NULL DEFAULT '[]',
                    priority INTEGER NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    escalation_enabled INTEGER NOT NULL DEFAULT 0,
                    escalation_timeout_minutes INTEGER NOT NULL DEFAULT 0,
                    description TEXT NOT NULL DEFAULT ''
                )
                """
            )
            # dispatch_records keeps the latest state per record_id.
            # Fields:
            # - record_id: "<message>:<channel>:<level>" (PRIMARY KEY)
            # - state: routed | acknowledged | timed_out | escalated | abandoned | failed
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS dispatch_records (
                    record_id TEXT PRIMARY KEY,
                    message_id TEXT NOT NULL,
                    rule_id INTEGER NOT NULL,
                    channel_id INTEGER NOT NULL,
                    dispatched_at TIMESTAMP NOT NULL,
                    state TEXT NOT NULL,
                    escalation_level INTEGER NOT NULL DEFAULT 0,
                    escalated_at TIMESTAMP,
                    resolved_at TIMESTAMP,
                    attempts INTEGER NOT NULL DEFAULT 1,
                    detail TEXT NOT NULL DEFAULT ''
                )
                """
            )
            # dispatch_events is an append-only audit trail of every state
            # written to dispatch_records.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS dispatch_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    record_id TEXT NOT NULL,
                    message_id TEXT NOT NULL,
                    state TEXT NOT NULL,
                    recorded_at TIMESTAMP NOT NULL,
                    detail TEXT NOT NULL DEFAULT ''
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS operator_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    kind TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    detail TEXT NOT NULL,
                    message_id TEXT,
                    rule_id INTEGER,
                    channel_id INTEGER,
                    record_id TEXT
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_dispatch_records_message ON dispatch_records(message_id)"
            )

    # -- configuration -----------------------------------------------------

    def load_configuration(self) -> Tuple[List[Category], List[Channel], List[RoutingRule]]:
        """Return every category, channel and rule, ordered by id."""

        with self._connect() as conn:
            category_rows = conn.execute("SELECT * FROM categories ORDER BY id").fetchall()
            channel_rows = conn.execute("SELECT * FROM channels ORDER BY id").fetchall()
            rule_rows = conn.execute("SELECT * FROM routing_rules ORDER BY id").fetchall()

        categories = [
            Category(
                id=row["id"],
                name=row["name"],
                department=row["department"],
                keywords=tuple(Keyword(text, language) for text, language in json.loads(row["keywords"])),
                priority_weight=row["priority_weight"],
                escalation_threshold=row["escalation_threshold"],
                is_active=bool(row["is_active"]),
                description=row["description"],
            )
            for row in category_rows
        ]
        channels = [
            Channel(id=row["id"], name=row["name"], group_id=row["group_id"], department=row["department"])
            for row in channel_rows
        ]
        rules = [self._row_to_rule(row) for row in rule_rows]
        return categories, channels, rules

    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> RoutingRule:
        return RoutingRule(
            id=row["id"],
            name=row["name"],
            category_id=row["category_id"],
            channel_id=row["channel_id"],
            accepted_ai_categories=frozenset(json.loads(row["accepted_ai_categories"])),
            accepted_severities=frozenset(json.loads(row["accepted_severities"])),
            priority=row["priority"],
            is_active=bool(row["is_active"]),
            escalation_enabled=bool(row["escalation_enabled"]),
            escalation_timeout_minutes=row["escalation_timeout_minutes"],
            description=row["description"],
        )

    @staticmethod
    def _insert_rule(conn: sqlite3.Connection, rule: RoutingRule) -> None:
        conn.execute(
            """
            INSERT INTO routing_rules (
                id,
                name,
                category_id,
                channel_id,
                accepted_ai_categories,
                accepted_severities,
                priority,
                is_active,
                escalation_enabled,
                escalation_timeout_minutes,
                description
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                category_id = excluded.category_id,
                channel_id = excluded.channel_id,
                accepted_ai_categories = excluded.accepted_ai_categories,
                accepted_severities = excluded.accepted_severities,
                priority = excluded.priority,
                is_active = excluded.is_active,
                escalation_enabled = excluded.escalation_enabled,
                escalation_timeout_minutes = excluded.escalation_timeout_minutes,
                description = excluded.description
            """,
            (
                rule.id,
                rule.name,
                rule.category_id,
                rule.channel_id,
                _dump_set(rule.accepted_ai_categories),
                _dump_set(rule.accepted_severities),
                rule.priority,
                int(rule.is_active),
                int(rule.escalation_enabled),
                rule.escalation_timeout_minutes,
                rule.description,
            ),
        )

    def save_configuration(
        self,
        categories: Sequence[Category],
        channels: Sequence[Channel],
        rules: Sequence[RoutingRule],
    ) -> None:
        """Replace the whole configuration in one transaction.

        Rules are deleted before the rows they reference and inserted after
        them, so the foreign keys hold at every statement.
        """

        with self._connect() as conn:
            conn.execute("DELETE FROM routing_rules")
            conn.execute("DELETE FROM categories")
            conn.execute("DELETE FROM channels")
            conn.executemany(
                """
                INSERT INTO categories (
                    id, name, department, keywords, priority_weight,
                    escalation_threshold, is_active, description
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        category.id,
                        category.name,
                        category.department,
                        json.dumps([[kw.text, kw.language] for kw in category.keywords], ensure_ascii=False),
                        category.priority_weight,
                        category.escalation_threshold,
                        int(category.is_active),
                        category.description,
                    )
                    for category in categories
                ],
            )
            conn.executemany(
                "INSERT INTO channels (id, name, group_id, department) VALUES (?, ?, ?, ?)",
                [(channel.id, channel.name, channel.group_id, channel.department) for channel in channels],
            )
            for rule in rules:
                self._insert_rule(conn, rule)

    def save_rule(self, rule: RoutingRule) -> None:
        """Insert or update a single rule."""

        with self._connect() as conn:
            self._insert_rule(conn, rule)

    def delete_rule(self, rule_id: int) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM routing_rules WHERE id = ?", (rule_id,))

    # -- audit -------------------------------------------------------------

    def save_dispatch_record(self, record: DispatchRecord) -> None:
        """Upsert the record's latest state and append it to the event trail."""

        recorded_at = datetime.now(timezone.utc)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO dispatch_records (
                    record_id,
                    message_id,
                    rule_id,
                    channel_id,
                    dispatched_at,
                    state,
                    escalation_level,
                    escalated_at,
                    resolved_at,
                    attempts,
                    detail
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(record_id) DO UPDATE SET
                    state = excluded.state,
                    escalated_at = excluded.escalated_at,
                    resolved_at = excluded.resolved_at,
                    attempts = excluded.attempts,
                    detail = excluded.detail
                """,
                (
                    record.record_id,
                    record.message_id,
                    record.rule_id,
                    record.channel_id,
                    _iso(record.dispatched_at),
                    record.state.value,
                    record.escalation_level,
                    _iso(record.escalated_at),
                    _iso(record.resolved_at),
                    record.attempts,
                    record.detail,
                ),
            )
            conn.execute(
                """
                INSERT INTO dispatch_events (record_id, message_id, state, recorded_at, detail)
                VALUES (?, ?, ?, ?, ?)
                """,
                (record.record_id, record.message_id, record.state.value, recorded_at.isoformat(), record.detail),
            )

    def list_dispatch_records(self, message_id: Optional[str] = None, limit: int = 100) -> List[DispatchRecord]:
        """Return the most recent records, optionally for one message."""

        query = "SELECT * FROM dispatch_records"
        params: tuple = ()
        if message_id is not None:
            query += " WHERE message_id = ?"
            params = (message_id,)
        query += " ORDER BY dispatched_at DESC, record_id LIMIT ?"
        with self._connect() as conn:
            rows = conn.execute(query, params + (limit,)).fetchall()
        return [
            DispatchRecord(
                record_id=row["record_id"],
                message_id=row["message_id"],
                rule_id=row["rule_id"],
                channel_id=row["channel_id"],
                dispatched_at=_parse_dt(row["dispatched_at"]),
                state=DispatchState(row["state"]),
                escalation_level=row["escalation_level"],
                escalated_at=_parse_dt(row["escalated_at"]),
                resolved_at=_parse_dt(row["resolved_at"]),
                attempts=row["attempts"],
                detail=row["detail"],
            )
            for row in rows
        ]

    def rule_statistics(self) -> List[Dict[str, Any]]:
        """Per-rule outcome counts over every stored dispatch record.

        ``successful_routes`` counts records that reached the channel (any
        state except ``failed``); ``success_rate`` is 0.0 for unused rules.
        """

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT d.rule_id AS rule_id,
                       COALESCE(r.name, '') AS name,
                       COUNT(*) AS total_routed,
                       SUM(d.state != 'failed') AS successful_routes,
                       SUM(d.state = 'acknowledged') AS acknowledged,
                       SUM(d.state = 'escalated') AS escalated,
                       SUM(d.state = 'abandoned') AS abandoned
                FROM dispatch_records d
                LEFT JOIN routing_rules r ON r.id = d.rule_id
                GROUP BY d.rule_id
                ORDER BY d.rule_id
                """
            ).fetchall()
        stats = []
        for row in rows:
            item = dict(row)
            total = item["total_routed"]
            item["success_rate"] = item["successful_routes"] / total if total else 0.0
            stats.append(item)
        return stats

    def list_dispatch_events(self, record_id: str) -> List[str]:
        """Return the states a record went through, oldest first."""

        with self._connect() as conn:
            rows = conn.execute(
                "SELECT state FROM dispatch_events WHERE record_id = ? ORDER BY id",
                (record_id,),
            ).fetchall()
        return [row["state"] for row in rows]

    # -- operator events ---------------------------------------------------

    def save_operator_event(self, event: OperatorEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO operator_events (
                    kind, created_at, detail, message_id, rule_id, channel_id, record_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.kind,
                    _iso(event.created_at),
                    event.detail,
                    event.message_id,
                    event.rule_id,
                    event.channel_id,
                    event.record_id,
                ),
            )

    def list_operator_events(self, kind: Optional[str] = None, limit: int = 50) -> List[OperatorEvent]:
        query = "SELECT * FROM operator_events"
        params: tuple = ()
        if kind is not None:
            query += " WHERE kind = ?"
            params = (kind,)
        query += " ORDER BY id DESC LIMIT ?"
        with self._connect() as conn:
            rows = conn.execute(query, params + (limit,)).fetchall()
        return [
            OperatorEvent(
                kind=row["kind"],
                created_at=_parse_dt(row["created_at"]),
                detail=row["detail"],
                message_id=row["message_id"],
                rule_id=row["rule_id"],
                channel_id=row["channel_id"],
                record_id=row["record_id"],
            )
            for row in rows
        ]
