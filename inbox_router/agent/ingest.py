"""One ingestion run — search, extract, classify, buffer, write, commit the ledger."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from urllib.parse import quote

from inbox_router.agent.config import IngestConfig
from inbox_router.agent.ports import ConfigSource, MailSearch, SettingsStore, TableStore
from inbox_router.mcp.gmail_client import gmail_client
from inbox_router.mcp.types import CandidateThread, MailMessage
from inbox_router.processing.classifier import ClassificationIndex, domain_of
from inbox_router.processing.extractor import extract_fields
from inbox_router.processing.ledger import DedupLedger
from inbox_router.processing.types import OutputRow, RunSummary, SkipReason
from inbox_router.storage.db import MissingHeaderError, RouterDatabase
from inbox_router.storage.models import MANAGED_HEADERS

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def build_search_query(search_floor_ms: int) -> str:
    """Gmail query for inbox mail after the floor (Gmail's after: takes Unix seconds)."""
    return f"in:inbox after:{search_floor_ms // 1000}"


def attachment_marker(subject: str, has_attachment: bool, group_base_url: str = "") -> str:
    """Return the Attachment cell for a message.

    With a group base URL configured, attachments are linked to a group
    search that finds the original message.
    """
    if not has_attachment:
        return "no"
    if not group_base_url:
        return "yes"
    safe_subject = subject.replace('"', '\\"')
    if " " in subject:
        query = f'"{safe_subject}" has:attachment'
    else:
        query = f"subject:({safe_subject}) has:attachment"
    return group_base_url + quote(query, safe="!*'()")


def thread_time_ms(thread: CandidateThread, now_ms: int) -> int:
    """Thread update time as the watermark may see it.

    Message dates come from sender-supplied headers: a future date is capped
    at ``now_ms`` and an unknown one (0) counts as ``now_ms``.
    """
    if thread.last_update_ms <= 0:
        logger.warning("Thread %s has no readable date; treating it as current", thread.id)
        return now_ms
    if thread.last_update_ms > now_ms:
        logger.warning(
            "Thread %s is dated %d ms in the future; capping at the run clock",
            thread.id,
            thread.last_update_ms - now_ms,
        )
        return now_ms
    return thread.last_update_ms


class IngestionEngine:
    """Runs one incremental sweep of the inbox into the destination tables.

    Collaborators are injected so each run is explicit about the state it
    reads and writes::

        db = RouterDatabase(config.db_path)
        async with gmail_client() as gmail:
            summary = await IngestionEngine(gmail, db, db, db, config).run()

    Per-message problems are logged and skipped.  Failures of the mail or
    storage collaborators propagate and leave the ledger uncommitted, so the
    next scheduled run retries the same window.
    """

    def __init__(
        self,
        mail: MailSearch,
        store: TableStore,
        routes: ConfigSource,
        settings: SettingsStore,
        config: IngestConfig | None = None,
        now_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self._mail = mail
        self._store = store
        self._routes = routes
        self._settings = settings
        self._config = config or IngestConfig()
        self._now_ms = now_ms
        self._default_tz = self._config.default_tz()

    async def run(self) -> RunSummary:
        """Execute one run and return its counters."""
        started = time.monotonic()
        summary = RunSummary()

        run_now_ms = self._now_ms()
        ledger = DedupLedger.load(self._settings, run_now_ms)
        query = build_search_query(ledger.search_floor_ms)
        logger.info("Search query: %s", query)

        limit = self._config.candidate_limit
        threads = await self._mail.search(query, 0, limit)
        summary.threads = len(threads)
        logger.info("Fetched %d candidate thread(s)", len(threads))
        if len(threads) >= limit:
            logger.warning(
                "Search returned the full %d-thread limit; older threads wait for a later run",
                limit,
            )

        index = ClassificationIndex.build(self._routes.route_rows())
        index.load_seen_ids(self._store)

        buffer: dict[str, list[OutputRow]] = {}
        for position, thread in enumerate(threads, start=1):
            self._process_thread(position, thread, run_now_ms, ledger, index, buffer, summary)

        self._write_buffer(buffer, summary)
        ledger.commit(self._settings)

        summary.elapsed_seconds = time.monotonic() - started
        logger.info(
            "Run complete: saved=%d, history skips=%d, elapsed=%.2fs",
            summary.saved,
            summary.skipped_for(SkipReason.HISTORY_HIT),
            summary.elapsed_seconds,
        )
        return summary

    # ── Internal ───────────────────────────────────────────────────────────────

    def _process_thread(
        self,
        position: int,
        thread: CandidateThread,
        run_now_ms: int,
        ledger: DedupLedger,
        index: ClassificationIndex,
        buffer: dict[str, list[OutputRow]],
        summary: RunSummary,
    ) -> None:
        """Walk one thread newest → oldest, stopping at the first history hit."""
        if not ledger.observe_thread(thread_time_ms(thread, run_now_ms)):
            logger.debug("Thread [%d] %s predates the search floor; skipped", position, thread.id)
            summary.skip(SkipReason.STALE_THREAD)
            return

        logger.debug(
            "Thread [%d] id=%s, %d message(s)", position, thread.id, len(thread.messages)
        )
        for message in reversed(thread.messages):
            ledger.record_seen(message.id)

            if ledger.has_seen(message.id):
                # Everything older in this thread was handled by an earlier run.
                logger.info("History hit on message %s; stopping thread %s", message.id, thread.id)
                summary.skip(SkipReason.HISTORY_HIT)
                break

            try:
                outcome = self._route_message(thread, message, index)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Routing failed for message %s (thread %s): %s",
                    message.id,
                    thread.id,
                    exc,
                    exc_info=True,
                )
                summary.skip(SkipReason.ERROR)
                continue

            if isinstance(outcome, SkipReason):
                summary.skip(outcome)
                continue

            destination, row = outcome
            buffer.setdefault(destination, []).append(row)
            index.mark_recorded(destination, message.id)
            summary.saved += 1

    def _route_message(
        self,
        thread: CandidateThread,
        message: MailMessage,
        index: ClassificationIndex,
    ) -> tuple[str, OutputRow] | SkipReason:
        fields = extract_fields(message.raw_body, self._default_tz)
        if fields.forwarded_address is None or fields.forwarded_timestamp is None:
            logger.info(
                "Message %s: forwarded address or date not found (address=%r, date=%s)",
                message.id,
                fields.forwarded_address,
                fields.forwarded_timestamp,
            )
            return SkipReason.PARSE_MISS

        domain = domain_of(fields.forwarded_address)
        if domain is None:
            logger.info("Message %s: no domain in %r", message.id, fields.forwarded_address)
            return SkipReason.NO_DOMAIN

        destination = index.classify(domain)
        if destination is None:
            logger.info("Message %s: domain %s is not routed", message.id, domain)
            return SkipReason.UNROUTED

        if index.is_recorded(destination, message.id):
            logger.info("Message %s already recorded in %r; skipped", message.id, destination)
            return SkipReason.DUPLICATE

        row = OutputRow(
            original_timestamp=fields.forwarded_timestamp,
            sender=fields.forwarded_name or fields.forwarded_address or message.display_from,
            subject=message.subject,
            body_preview=fields.body_preview,
            attachment_marker=attachment_marker(
                message.subject, message.has_attachment, self._config.group_base_url
            ),
            thread_id=thread.id,
            message_id=message.id,
        )
        logger.debug("Message %s → %r", message.id, destination)
        return destination, row

    def _write_buffer(self, buffer: dict[str, list[OutputRow]], summary: RunSummary) -> None:
        """Prepend each destination's rows, newest forwarded date first."""
        for destination, rows in buffer.items():
            if not rows:
                continue
            rows.sort(key=lambda r: r.original_timestamp, reverse=True)

            created = self._store.ensure_destination(destination)
            start = self._store.managed_column_offset(destination)
            if start is None:
                raise MissingHeaderError(destination)
            if created:
                self._store.restrict_columns(
                    destination, (start, start + len(MANAGED_HEADERS)), self._config.owner
                )

            self._store.append_rows_at_top(destination, [r.to_cells() for r in rows])
            summary.saved_by_destination[destination] = len(rows)


async def run_ingest(config: IngestConfig, db: RouterDatabase | None = None) -> RunSummary:
    """Open a Gmail session, run the engine once against ``db`` and clean up.

    Without ``db`` a database is opened at ``config.db_path`` and closed
    afterwards; a database passed in stays open for the caller.
    """
    database = db if db is not None else RouterDatabase(db_path=config.db_path)
    try:
        async with gmail_client() as gmail:
            engine = IngestionEngine(gmail, database, database, database, config)
            return await engine.run()
    finally:
        if db is None:
            database.close()
