"""Cross-run dedup state: the thread watermark and the recent message-id history."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from inbox_router.agent.ports import SettingsStore

logger = logging.getLogger(__name__)

WATERMARK_KEY = "last_processed_thread_time"
HISTORY_KEY = "message_id_history"

SAFETY_MARGIN_MS = 10 * 60 * 1000
HISTORY_MAX = 5000


class DedupLedger:
    """Watermark + bounded message-id history, loaded at run start and committed at run end.

    Lifecycle of one run::

        ledger = DedupLedger.load(settings, now_ms)
        floor = ledger.search_floor_ms
        for thread in threads:
            if not ledger.observe_thread(thread.last_update_ms):
                continue
            for msg in reversed(thread.messages):
                ledger.record_seen(msg.id)
                if ledger.has_seen(msg.id):
                    break
                ...
        ledger.commit(settings)

    Membership checks use the history as it was loaded; ids visited during the
    run are only merged into it by commit().
    """

    def __init__(
        self,
        watermark_ms: int,
        history: list[str] | None = None,
        *,
        history_max: int = HISTORY_MAX,
        safety_margin_ms: int = SAFETY_MARGIN_MS,
    ) -> None:
        self._watermark_ms = watermark_ms
        self._observed_ms = watermark_ms
        # dict keeps insertion order; values unused
        self._history: dict[str, None] = dict.fromkeys(history or [])
        self._visited: list[str] = []
        self._history_max = history_max
        self._safety_margin_ms = safety_margin_ms

    # ── Loading ────────────────────────────────────────────────────────────────

    @classmethod
    def load(
        cls,
        settings: SettingsStore,
        now_ms: int,
        *,
        history_max: int = HISTORY_MAX,
        safety_margin_ms: int = SAFETY_MARGIN_MS,
    ) -> DedupLedger:
        """Read the ledger from the settings store.

        On the very first run (no watermark stored) the watermark is set to
        ``now_ms - safety_margin_ms`` and written back immediately, bounding the
        initial lookback.
        """
        watermark = _parse_watermark(settings.get_property(WATERMARK_KEY))
        if watermark is None:
            watermark = now_ms - safety_margin_ms
            settings.set_property(WATERMARK_KEY, str(watermark))
            logger.info("Initialised watermark to now - %d ms (%d)", safety_margin_ms, watermark)

        history = _parse_history(settings.get_property(HISTORY_KEY))
        return cls(
            watermark,
            history,
            history_max=history_max,
            safety_margin_ms=safety_margin_ms,
        )

    @classmethod
    def peek(cls, settings: SettingsStore) -> DedupLedger | None:
        """Read the stored ledger without initialising it; None before the first run."""
        watermark = _parse_watermark(settings.get_property(WATERMARK_KEY))
        if watermark is None:
            return None
        return cls(watermark, _parse_history(settings.get_property(HISTORY_KEY)))

    # ── Read API ───────────────────────────────────────────────────────────────

    @property
    def watermark_ms(self) -> int:
        """Watermark as loaded at run start."""
        return self._watermark_ms

    @property
    def observed_watermark_ms(self) -> int:
        """Watermark that commit() will persist."""
        return self._observed_ms

    @property
    def search_floor_ms(self) -> int:
        """Lower search bound: the watermark minus the skew margin, never negative."""
        return max(0, self._watermark_ms - self._safety_margin_ms)

    @property
    def history(self) -> list[str]:
        return list(self._history)

    def has_seen(self, message_id: str) -> bool:
        return message_id in self._history

    # ── Mutation ───────────────────────────────────────────────────────────────

    def observe_thread(self, last_update_ms: int) -> bool:
        """Account for a candidate thread; return False if it predates the search floor.

        The watermark advances regardless of what happens to the thread's
        messages.
        """
        self._observed_ms = max(self._observed_ms, last_update_ms)
        return last_update_ms > self.search_floor_ms

    def record_seen(self, message_id: str) -> None:
        """Queue a visited message id for the history, whatever its outcome."""
        self._visited.append(message_id)

    def merged_history(self) -> list[str]:
        """History after this run: loaded ids then visited ids, newest ``history_max`` kept."""
        merged = dict(self._history)
        for message_id in self._visited:
            merged.setdefault(message_id, None)
        ids = list(merged)
        if len(ids) > self._history_max:
            ids = ids[len(ids) - self._history_max :]
        return ids

    def commit(self, settings: SettingsStore) -> None:
        """Persist the merged history and the advanced watermark in one write."""
        history = self.merged_history()
        settings.set_properties(
            {HISTORY_KEY: json.dumps(history), WATERMARK_KEY: str(self._observed_ms)}
        )
        logger.info(
            "Ledger committed: watermark %d → %d, history %d id(s)",
            self._watermark_ms,
            self._observed_ms,
            len(history),
        )


def _parse_watermark(raw: str | None) -> int | None:
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning("Stored watermark %r is not an integer; re-initialising", raw)
        return None


def _parse_history(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Stored message-id history is not valid JSON; starting empty")
        return []
    if not isinstance(data, list):
        logger.warning("Stored message-id history is not a list; starting empty")
        return []
    return [str(item) for item in data if item]
