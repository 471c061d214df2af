"""SQLite storage adapter.

Implements the core RuleStorePort plus the message and chat bookkeeping used
by the webhook handler, using a simple SQLite database.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from core.models import IncomingMessage, RuleFireRecord, StoredRuleSet

EMPTY_SOURCE = "version: 1\nrules: []\n"
EMPTY_PARSED = {"version": 1, "rules": []}

# Ordered, named migrations. Applied names are recorded so each runs once.
MIGRATIONS: list[tuple[str, str]] = [
    (
        "001_create_chats",
        """
        CREATE TABLE IF NOT EXISTS wa_chat (
            id TEXT PRIMARY KEY,
            type TEXT NOT NULL CHECK(type IN ('group', 'direct')),
            name TEXT NOT NULL,
            enabled INTEGER DEFAULT 1,
            last_message_at TIMESTAMP,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );
        CREATE INDEX IF NOT EXISTS idx_wa_chat_type ON wa_chat(type);
        """,
    ),
    (
        "002_create_messages",
        """
        CREATE TABLE IF NOT EXISTS wa_message (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            provider_message_id TEXT UNIQUE,
            chat_id TEXT NOT NULL,
            sender_id TEXT,
            sender_name TEXT,
            text TEXT,
            event_type TEXT,
            raw_payload TEXT,
            received_at TIMESTAMP NOT NULL,
            processed INTEGER DEFAULT 0
        );
        CREATE INDEX IF NOT EXISTS idx_wa_message_chat ON wa_message(chat_id);
        CREATE INDEX IF NOT EXISTS idx_wa_message_received ON wa_message(received_at);
        """,
    ),
    (
        "003_create_ruleset",
        """
        CREATE TABLE IF NOT EXISTS wa_ruleset (
            id INTEGER PRIMARY KEY CHECK(id = 1),
            source_text TEXT NOT NULL,
            parsed_json TEXT,
            version INTEGER DEFAULT 1,
            updated_at TIMESTAMP
        );
        """,
    ),
    (
        "004_create_rule_fires",
        """
        CREATE TABLE IF NOT EXISTS wa_rule_fire (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            rule_id TEXT NOT NULL,
            rule_name TEXT,
            message_id INTEGER,
            chat_id TEXT,
            sender_id TEXT,
            matched_text TEXT,
            actions_executed TEXT,
            success INTEGER DEFAULT 1,
            error_message TEXT,
            event_type TEXT,
            fired_at TIMESTAMP NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_rule_fire_rule ON wa_rule_fire(rule_id);
        CREATE INDEX IF NOT EXISTS idx_rule_fire_fired ON wa_rule_fire(fired_at);
        """,
    ),
    (
        "005_create_cooldowns",
        """
        CREATE TABLE IF NOT EXISTS wa_cooldown (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            rule_id TEXT NOT NULL,
            scope_key TEXT NOT NULL,
            expires_at TIMESTAMP NOT NULL,
            UNIQUE(rule_id, scope_key)
        );
        CREATE INDEX IF NOT EXISTS idx_cooldown_expires ON wa_cooldown(expires_at);
        """,
    ),
]


def _ts(value: datetime) -> str:
    # All timestamps are stored as UTC ISO strings so they compare as text.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies the RuleStorePort contract."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> list[str]:
        """Apply pending migrations and return the names applied."""

        applied_now: list[str] = []
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS migrations (
                    id INTEGER PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            applied = {row["name"] for row in conn.execute("SELECT name FROM migrations")}
            for name, sql in MIGRATIONS:
                if name in applied:
                    continue
                conn.executescript(sql)
                conn.execute("INSERT INTO migrations (name) VALUES (?)", (name,))
                applied_now.append(name)
            # Seed the single active rule set row with an empty document.
            conn.execute(
                "INSERT OR IGNORE INTO wa_ruleset (id, source_text, parsed_json, version, updated_at) "
                "VALUES (1, ?, ?, 1, ?)",
                (EMPTY_SOURCE, json.dumps(EMPTY_PARSED), _ts(_now())),
            )
        return applied_now

    # Rule set

    def get_active_ruleset(self) -> Optional[StoredRuleSet]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT source_text, parsed_json, version, updated_at FROM wa_ruleset WHERE id = 1"
            ).fetchone()
        if row is None:
            return None
        return StoredRuleSet(
            source_text=row["source_text"],
            parsed_json=row["parsed_json"],
            version=int(row["version"]),
            updated_at=row["updated_at"],
        )

    def save_ruleset(self, source_text: str, parsed_json: str) -> int:
        """Replace the active rule set and return its new version."""

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO wa_ruleset (id, source_text, parsed_json, version, updated_at)
                VALUES (1, ?, ?, 1, ?)
                ON CONFLICT(id) DO UPDATE SET
                    source_text = excluded.source_text,
                    parsed_json = excluded.parsed_json,
                    version = wa_ruleset.version + 1,
                    updated_at = excluded.updated_at
                """,
                (source_text, parsed_json, _ts(_now())),
            )
            row = conn.execute("SELECT version FROM wa_ruleset WHERE id = 1").fetchone()
        return int(row["version"])

    # Cooldowns

    def purge_expired_cooldowns(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM wa_cooldown WHERE expires_at <= ?", (_ts(now),))
            return cur.rowcount

    def has_active_cooldown(self, rule_id: str, scope_key: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM wa_cooldown WHERE rule_id = ? AND scope_key = ? AND expires_at > ?",
                (rule_id, scope_key, _ts(now)),
            ).fetchone()
        return row is not None

    def upsert_cooldown(self, rule_id: str, scope_key: str, expires_at: datetime) -> None:
        """Insert or overwrite the expiry for (rule_id, scope_key) atomically."""

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO wa_cooldown (rule_id, scope_key, expires_at)
                VALUES (?, ?, ?)
                ON CONFLICT(rule_id, scope_key) DO UPDATE SET expires_at = excluded.expires_at
                """,
                (rule_id, scope_key, _ts(expires_at)),
            )

    # Rule fires

    def append_rule_fire(self, record: RuleFireRecord) -> None:
        """Persist a fire to the append-only wa_rule_fire table."""

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO wa_rule_fire (
                    rule_id,
                    rule_name,
                    message_id,
                    chat_id,
                    sender_id,
                    matched_text,
                    actions_executed,
                    success,
                    error_message,
                    event_type,
                    fired_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.rule_id,
                    record.rule_name,
                    record.message_ref,
                    record.chat_id,
                    record.sender_id,
                    record.matched_text,
                    json.dumps([outcome.to_dict() for outcome in record.actions]),
                    1 if record.success else 0,
                    record.error_summary,
                    record.event_type,
                    _ts(record.fired_at),
                ),
            )

    def list_rule_fires(self, rule_id: Optional[str] = None, page: int = 1, limit: int = 50) -> list[dict[str, Any]]:
        """Return fires newest first, paginated (limit clamped to 1..100)."""

        page = max(1, page)
        limit = min(100, max(1, limit))
        query = "SELECT * FROM wa_rule_fire"
        params: list[Any] = []
        if rule_id:
            query += " WHERE rule_id = ?"
            params.append(rule_id)
        query += " ORDER BY fired_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([limit, (page - 1) * limit])

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            {
                "id": row["id"],
                "rule_id": row["rule_id"],
                "rule_name": row["rule_name"],
                "message_id": row["message_id"],
                "chat_id": row["chat_id"],
                "sender_id": row["sender_id"],
                "matched_text": row["matched_text"],
                "actions": json.loads(row["actions_executed"]) if row["actions_executed"] else [],
                "success": row["success"] == 1,
                "error_message": row["error_message"],
                "event_type": row["event_type"],
                "fired_at": row["fired_at"],
            }
            for row in rows
        ]

    def stats(self, hours: int = 24) -> dict[str, Any]:
        """Summary counts for the last hours (clamped to 1..168)."""

        hours = min(168, max(1, hours))
        since = _ts(_now() - timedelta(hours=hours))
        with self._connect() as conn:
            messages = conn.execute(
                "SELECT COUNT(*) AS total, COALESCE(SUM(processed), 0) AS processed "
                "FROM wa_message WHERE received_at > ?",
                (since,),
            ).fetchone()
            fires = conn.execute(
                "SELECT COUNT(*) AS total, COALESCE(SUM(success), 0) AS successful "
                "FROM wa_rule_fire WHERE fired_at > ?",
                (since,),
            ).fetchone()
            top_rules = conn.execute(
                """
                SELECT rule_id, rule_name, COUNT(*) AS fire_count
                FROM wa_rule_fire
                WHERE fired_at > ?
                GROUP BY rule_id
                ORDER BY fire_count DESC
                LIMIT 5
                """,
                (since,),
            ).fetchall()
        return {
            "period_hours": hours,
            "messages": {"total": messages["total"], "processed": messages["processed"]},
            "rule_fires": {
                "total": fires["total"],
                "successful": fires["successful"],
                "failed": fires["total"] - fires["successful"],
            },
            "top_rules": [dict(row) for row in top_rules],
        }

    # Messages and chats (webhook bookkeeping)

    def record_message(self, message: IncomingMessage, raw_payload: Optional[dict] = None) -> Optional[int]:
        """Store an inbound message; return its row id, or None if already seen."""

        received_at = _ts(_now())
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO wa_message (
                    provider_message_id, chat_id, sender_id, sender_name, text,
                    event_type, raw_payload, received_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.message_id,
                    message.chat_id,
                    message.sender_id,
                    message.sender_name,
                    message.text,
                    message.event,
                    json.dumps(raw_payload) if raw_payload is not None else None,
                    received_at,
                ),
            )
            if cur.rowcount == 0:
                return None
            if message.chat_id:
                conn.execute(
                    """
                    INSERT INTO wa_chat (id, type, name, last_message_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET last_message_at = excluded.last_message_at
                    """,
                    (
                        message.chat_id,
                        message.chat_type,
                        message.sender_name or message.chat_id.split("@", 1)[0],
                        received_at,
                    ),
                )
            return int(cur.lastrowid)

    def mark_processed(self, message_row_id: int) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE wa_message SET processed = 1 WHERE id = ?", (message_row_id,))

    def list_chats(self) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM wa_chat ORDER BY last_message_at DESC").fetchall()
        return [dict(row) for row in rows]
