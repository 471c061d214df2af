from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from typing import Optional

from adapters.sqlite_storage import EMPTY_SOURCE, MIGRATIONS, SQLiteStorage
from core.models import ActionOutcome, IncomingMessage, RuleFireRecord

ALICE = "31612345678@s.whatsapp.net"


def _storage(tmp_path) -> SQLiteStorage:
    storage = SQLiteStorage(str(tmp_path / "wabridge.db"))
    storage.init_db()
    return storage


def _fire(rule_id: str, success: bool = True, fired_at: Optional[datetime] = None) -> RuleFireRecord:
    return RuleFireRecord(
        rule_id=rule_id,
        rule_name=rule_id.title(),
        chat_id=ALICE,
        sender_id=ALICE,
        matched_text="good night",
        actions=(ActionOutcome(type="reply_whatsapp", success=success, details='Reply: "hi"', duration_ms=3),),
        success=success,
        event_type="MESSAGES_UPSERT",
        fired_at=fired_at or datetime.now(timezone.utc),
        error_summary=None if success else "boom",
    )


def _message(message_id: Optional[str] = "ABC123", text: str = "hello") -> IncomingMessage:
    return IncomingMessage(
        chat_id=ALICE,
        chat_type="direct",
        sender_id=ALICE,
        text=text,
        sender_name="Alice",
        message_id=message_id,
    )


def test_migrations_apply_once(tmp_path) -> None:
    storage = SQLiteStorage(str(tmp_path / "wabridge.db"))

    assert storage.init_db() == [name for name, _ in MIGRATIONS]
    assert storage.init_db() == []


def test_fresh_database_has_empty_ruleset(tmp_path) -> None:
    stored = _storage(tmp_path).get_active_ruleset()

    assert stored is not None
    assert stored.source_text == EMPTY_SOURCE
    assert json.loads(stored.parsed_json) == {"version": 1, "rules": []}
    assert stored.version == 1


def test_save_ruleset_bumps_version(tmp_path) -> None:
    storage = _storage(tmp_path)

    assert storage.save_ruleset("version: 1\nrules: []\n# edited\n", '{"version": 1, "rules": []}') == 2
    assert storage.save_ruleset("version: 1\nrules: []\n", '{"version": 1, "rules": []}') == 3
    assert storage.get_active_ruleset().source_text == "version: 1\nrules: []\n"


def test_cooldown_upsert_keeps_one_row(tmp_path) -> None:
    storage = _storage(tmp_path)
    now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    storage.upsert_cooldown("r1", ALICE, datetime(2024, 1, 1, 12, 5, tzinfo=timezone.utc))
    storage.upsert_cooldown("r1", ALICE, datetime(2024, 1, 1, 12, 1, tzinfo=timezone.utc))

    with sqlite3.connect(str(tmp_path / "wabridge.db")) as conn:
        assert conn.execute("SELECT COUNT(*) FROM wa_cooldown").fetchone()[0] == 1
    assert storage.has_active_cooldown("r1", ALICE, now) is True

    later = datetime(2024, 1, 1, 12, 1, tzinfo=timezone.utc)
    assert storage.purge_expired_cooldowns(later) == 1
    assert storage.has_active_cooldown("r1", ALICE, later) is False


def test_rule_fires_are_listed_newest_first_with_filter(tmp_path) -> None:
    storage = _storage(tmp_path)
    storage.append_rule_fire(_fire("goodnight", fired_at=datetime(2024, 1, 1, 22, 0, tzinfo=timezone.utc)))
    storage.append_rule_fire(_fire("status", success=False, fired_at=datetime(2024, 1, 1, 23, 0, tzinfo=timezone.utc)))

    fires = storage.list_rule_fires()

    assert [fire["rule_id"] for fire in fires] == ["status", "goodnight"]
    assert fires[0]["success"] is False
    assert fires[0]["error_message"] == "boom"
    assert fires[1]["actions"] == [
        {"type": "reply_whatsapp", "success": True, "details": 'Reply: "hi"', "duration_ms": 3, "error": None}
    ]
    assert [fire["rule_id"] for fire in storage.list_rule_fires("goodnight")] == ["goodnight"]
    assert storage.list_rule_fires(page=2, limit=1)[0]["rule_id"] == "goodnight"


def test_record_message_drops_duplicates(tmp_path) -> None:
    storage = _storage(tmp_path)

    first = storage.record_message(_message(), raw_payload={"event": "messages.upsert"})
    again = storage.record_message(_message(text="retry"))

    assert isinstance(first, int)
    assert again is None
    chats = storage.list_chats()
    assert [(chat["id"], chat["type"], chat["name"]) for chat in chats] == [(ALICE, "direct", "Alice")]


def test_messages_without_provider_id_are_all_kept(tmp_path) -> None:
    storage = _storage(tmp_path)

    assert storage.record_message(_message(message_id=None)) is not None
    assert storage.record_message(_message(message_id=None)) is not None


def test_stats_counts_recent_activity(tmp_path) -> None:
    storage = _storage(tmp_path)
    row_id = storage.record_message(_message())
    storage.record_message(_message("DEF456"))
    storage.mark_processed(row_id)
    storage.append_rule_fire(_fire("goodnight"))
    storage.append_rule_fire(_fire("goodnight"))
    storage.append_rule_fire(_fire("status", success=False))

    stats = storage.stats(hours=0)

    assert stats["period_hours"] == 1
    assert stats["messages"] == {"total": 2, "processed": 1}
    assert stats["rule_fires"] == {"total": 3, "successful": 2, "failed": 1}
    assert stats["top_rules"][0] == {"rule_id": "goodnight", "rule_name": "Goodnight", "fire_count": 2}
