"""Per-rule cooldown windows backed by the rule store."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from core.ports import RuleStorePort

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CooldownTracker:
    """Suppression windows keyed by (rule id, scope key).

    State lives in the store rather than in process memory so windows survive
    restarts and are shared by concurrent webhook handlers. The store's upsert
    on the unique key is what makes set_cooldown atomic.
    """

    def __init__(self, store: RuleStorePort, clock: Optional[Clock] = None) -> None:
        self._store = store
        self._clock = clock or utc_now

    def is_on_cooldown(self, rule_id: str, scope_key: str) -> bool:
        now = self._clock()
        self._store.purge_expired_cooldowns(now)
        return self._store.has_active_cooldown(rule_id, scope_key, now)

    def set_cooldown(self, rule_id: str, scope_key: str, seconds: int) -> None:
        """Start (or restart) a window of seconds from now; not additive."""

        expires_at = self._clock() + timedelta(seconds=seconds)
        self._store.upsert_cooldown(rule_id, scope_key, expires_at)
