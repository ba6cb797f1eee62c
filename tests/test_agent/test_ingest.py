"""Tests for IngestionEngine — real SQLite store, mocked Gmail search."""

import json
from contextlib import asynccontextmanager
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from conftest import forwarded_body, make_message, make_thread

from inbox_router.agent.config import IngestConfig
from inbox_router.agent.ingest import (
    IngestionEngine,
    attachment_marker,
    build_search_query,
    run_ingest,
)
from inbox_router.mcp.gmail_client import MCPError
from inbox_router.mcp.types import CandidateThread
from inbox_router.processing.extractor import extract_fields
from inbox_router.processing.ledger import HISTORY_KEY, SAFETY_MARGIN_MS, WATERMARK_KEY
from inbox_router.processing.types import SkipReason
from inbox_router.storage.db import MissingHeaderError, RouterDatabase
from inbox_router.storage.models import MANAGED_HEADERS, ColumnRestriction

NOW_MS = 1_704_420_000_000  # 2024-01-05T02:00:00Z
CONFIG = IngestConfig(timezone="UTC", owner="ops@corp.example")


# ── Helpers ────────────────────────────────────────────────────────────────────


def make_engine(
    db: RouterDatabase,
    threads: list[CandidateThread],
    config: IngestConfig = CONFIG,
) -> tuple[IngestionEngine, AsyncMock]:
    mail = AsyncMock()
    mail.search.return_value = threads
    engine = IngestionEngine(mail, db, db, db, config, now_ms=lambda: NOW_MS)
    return engine, mail


def rows_of(db: RouterDatabase, destination: str) -> list[list[str]]:
    table = db.get_table(destination)
    assert table is not None
    start = table.headers.index(MANAGED_HEADERS[0])
    return [cells[start : start + len(MANAGED_HEADERS)] for cells in table.rows]


def stored_history(db: RouterDatabase) -> list[str]:
    raw = db.get_property(HISTORY_KEY)
    return json.loads(raw) if raw else []


def routed_thread(*messages, id: str = "thread_1", last_update_ms: int = NOW_MS) -> CandidateThread:
    return make_thread(id=id, last_update_ms=last_update_ms, messages=list(messages))


# ── Module helpers ─────────────────────────────────────────────────────────────


class TestBuildSearchQuery:
    def test_uses_unix_seconds(self) -> None:
        assert build_search_query(1_704_420_000_999) == "in:inbox after:1704420000"

    def test_zero_floor(self) -> None:
        assert build_search_query(0) == "in:inbox after:0"


class TestAttachmentMarker:
    def test_no_attachment(self) -> None:
        assert attachment_marker("Anything", False, "https://groups.example/?q=") == "no"

    def test_attachment_without_group_url(self) -> None:
        assert attachment_marker("Report", True) == "yes"

    def test_subject_with_spaces_is_quoted(self) -> None:
        marker = attachment_marker("Fwd: Quote", True, "https://groups.example/?q=")
        assert marker == (
            "https://groups.example/?q=%22Fwd%3A%20Quote%22%20has%3Aattachment"
        )

    def test_single_word_subject_uses_subject_operator(self) -> None:
        marker = attachment_marker("Report", True, "https://groups.example/?q=")
        assert marker == "https://groups.example/?q=subject%3A(Report)%20has%3Aattachment"

    def test_embedded_quotes_are_escaped(self) -> None:
        marker = attachment_marker('Say "hi" now', True, "u?q=")
        assert marker == "u?q=%22Say%20%5C%22hi%5C%22%20now%22%20has%3Aattachment"


# ── Engine ─────────────────────────────────────────────────────────────────────


class TestRoutesForwardedMail:
    async def test_row_lands_in_routed_destination(self, db: RouterDatabase) -> None:
        db.add_route("Sales", "example.com")
        engine, _ = make_engine(db, [routed_thread(make_message())])

        summary = await engine.run()

        assert summary.saved == 1
        assert summary.saved_by_destination == {"Sales": 1}
        assert rows_of(db, "Sales") == [
            [
                "2024-01-05T10:00:00+00:00",
                "Taro Yamada",
                "Fwd: Quote request",
                "Please see the quote below.",
                "no",
                "thread_1",
                "msg_1",
            ]
        ]

    async def test_search_uses_floor_and_limit(self, db: RouterDatabase) -> None:
        engine, mail = make_engine(db, [])
        await engine.run()

        floor_seconds = (NOW_MS - 2 * SAFETY_MARGIN_MS) // 1000
        mail.search.assert_awaited_once_with(f"in:inbox after:{floor_seconds}", 0, 11)

    async def test_sender_falls_back_to_address(self, db: RouterDatabase) -> None:
        db.add_route("Sales", "example.com")
        message = make_message(body=forwarded_body(name=None))
        engine, _ = make_engine(db, [routed_thread(message)])

        await engine.run()

        assert rows_of(db, "Sales")[0][1] == "taro@example.com"

    async def test_attachment_linked_to_group_search(self, db: RouterDatabase) -> None:
        db.add_route("Sales", "example.com")
        config = IngestConfig(
            timezone="UTC", owner="ops", group_base_url="https://groups.example/?q="
        )
        message = make_message(subject="Report", has_attachment=True)
        engine, _ = make_engine(db, [routed_thread(message)], config)

        await engine.run()

        assert rows_of(db, "Sales")[0][4] == (
            "https://groups.example/?q=subject%3A(Report)%20has%3Aattachment"
        )

    async def test_new_destination_gets_headers_and_restriction(
        self, db: RouterDatabase
    ) -> None:
        db.add_route("Sales", "example.com")
        engine, _ = make_engine(db, [routed_thread(make_message())])

        await engine.run()

        start = db.managed_column_offset("Sales")
        assert start == 3
        assert db.get_restrictions("Sales") == [
            ColumnRestriction("Sales", 3, 3 + len(MANAGED_HEADERS), "ops@corp.example")
        ]

    async def test_existing_destination_is_not_restricted(self, db: RouterDatabase) -> None:
        db.add_route("Sales", "example.com")
        db.ensure_destination("Sales")
        engine, _ = make_engine(db, [routed_thread(make_message())])

        await engine.run()

        assert db.get_restrictions("Sales") == []

    async def test_conflicting_routes_last_row_wins(self, db: RouterDatabase) -> None:
        db.add_route("Sales", "example.com")
        db.add_route("Support", "example.com")
        engine, _ = make_engine(db, [routed_thread(make_message())])

        await engine.run()

        assert db.get_table("Sales") is None
        assert len(rows_of(db, "Support")) == 1

    async def test_rows_sorted_newest_first(self, db: RouterDatabase) -> None:
        db.add_route("Sales", "example.com")
        thread = routed_thread(
            make_message(id="jan_3", body=forwarded_body(date="2024-01-03 09:00")),
            make_message(id="jan_5", body=forwarded_body(date="2024-01-05 09:00")),
            make_message(id="jan_4", body=forwarded_body(date="2024-01-04 09:00")),
        )
        engine, _ = make_engine(db, [thread])

        await engine.run()

        assert [r[6] for r in rows_of(db, "Sales")] == ["jan_5", "jan_4", "jan_3"]

    async def test_later_runs_prepend_above_earlier_rows(self, db: RouterDatabase) -> None:
        db.add_route("Sales", "example.com")
        first, _ = make_engine(db, [routed_thread(make_message(id="first"))])
        await first.run()

        second, _ = make_engine(
            db,
            [routed_thread(make_message(id="second"), id="thread_2", last_update_ms=NOW_MS + 1)],
        )
        await second.run()

        assert [r[6] for r in rows_of(db, "Sales")] == ["second", "first"]


class TestSkips:
    async def test_unrouted_domain_is_skipped(self, db: RouterDatabase) -> None:
        db.add_route("Sales", "other.example")
        engine, _ = make_engine(db, [routed_thread(make_message())])

        summary = await engine.run()

        assert summary.saved == 0
        assert summary.skipped_for(SkipReason.UNROUTED) == 1
        assert db.list_destinations() == []

    async def test_parse_miss_is_skipped_but_remembered(self, db: RouterDatabase) -> None:
        db.add_route("Sales", "example.com")
        message = make_message(id="plain", body="Just a note, no metadata.")
        engine, _ = make_engine(db, [routed_thread(message)])

        summary = await engine.run()

        assert summary.skipped_for(SkipReason.PARSE_MISS) == 1
        assert stored_history(db) == ["plain"]

    async def test_missing_date_is_a_parse_miss(self, db: RouterDatabase) -> None:
        db.add_route("Sales", "example.com")
        message = make_message(body=forwarded_body(date=None))
        engine, _ = make_engine(db, [routed_thread(message)])

        summary = await engine.run()

        assert summary.skipped_for(SkipReason.PARSE_MISS) == 1

    async def test_bare_at_sign_is_a_parse_miss(self, db: RouterDatabase) -> None:
        message = make_message(body=forwarded_body(address="taro@"))
        engine, _ = make_engine(db, [routed_thread(message)])

        summary = await engine.run()

        assert summary.skipped_for(SkipReason.PARSE_MISS) == 1

    async def test_address_without_domain(self, db: RouterDatabase) -> None:
        db.add_route("Sales", "example.com")
        engine, _ = make_engine(db, [routed_thread(make_message())])

        with patch("inbox_router.agent.ingest.domain_of", return_value=None):
            summary = await engine.run()

        assert summary.skipped_for(SkipReason.NO_DOMAIN) == 1
        assert db.get_table("Sales") is None

    async def test_stale_thread_is_not_walked(self, db: RouterDatabase) -> None:
        db.add_route("Sales", "example.com")
        db.set_property(WATERMARK_KEY, str(NOW_MS))
        thread = routed_thread(make_message(), last_update_ms=NOW_MS - 2 * SAFETY_MARGIN_MS)
        engine, _ = make_engine(db, [thread])

        summary = await engine.run()

        assert summary.skipped_for(SkipReason.STALE_THREAD) == 1
        assert db.get_table("Sales") is None
        assert db.get_property(WATERMARK_KEY) == str(NOW_MS)
        assert stored_history(db) == []

    async def test_routing_error_skips_only_that_message(self, db: RouterDatabase) -> None:
        db.add_route("Sales", "example.com")

        def flaky(body, default_tz=None):
            if "boom" in body:
                raise RuntimeError("unexpected body")
            return extract_fields(body, default_tz)

        thread = routed_thread(
            make_message(id="good"),
            make_message(id="bad", body=forwarded_body(text="boom")),
        )
        engine, _ = make_engine(db, [thread])

        with patch("inbox_router.agent.ingest.extract_fields", side_effect=flaky):
            summary = await engine.run()

        assert summary.saved == 1
        assert summary.skipped_for(SkipReason.ERROR) == 1
        assert [r[6] for r in rows_of(db, "Sales")] == ["good"]
        assert set(stored_history(db)) == {"good", "bad"}


class TestDeduplication:
    async def test_second_run_saves_nothing(self, db: RouterDatabase) -> None:
        db.add_route("Sales", "example.com")
        threads = [routed_thread(make_message())]
        first, _ = make_engine(db, threads)
        await first.run()

        second, _ = make_engine(db, threads)
        summary = await second.run()

        assert summary.saved == 0
        assert summary.skipped_for(SkipReason.HISTORY_HIT) == 1
        assert len(rows_of(db, "Sales")) == 1

    async def test_destination_ids_catch_lost_history(self, db: RouterDatabase) -> None:
        db.add_route("Sales", "example.com")
        threads = [routed_thread(make_message())]
        first, _ = make_engine(db, threads)
        await first.run()
        db.set_property(HISTORY_KEY, "[]")

        second, _ = make_engine(db, threads)
        summary = await second.run()

        assert summary.skipped_for(SkipReason.DUPLICATE) == 1
        assert len(rows_of(db, "Sales")) == 1

    async def test_same_message_twice_in_one_run_written_once(
        self, db: RouterDatabase
    ) -> None:
        db.add_route("Sales", "example.com")
        threads = [
            routed_thread(make_message(id="dup"), id="thread_a"),
            routed_thread(make_message(id="dup"), id="thread_b"),
        ]
        engine, _ = make_engine(db, threads)

        summary = await engine.run()

        assert summary.saved == 1
        assert summary.skipped_for(SkipReason.DUPLICATE) == 1
        assert stored_history(db) == ["dup"]

    async def test_history_hit_stops_the_thread(self, db: RouterDatabase) -> None:
        db.add_route("Sales", "example.com")
        db.set_properties({WATERMARK_KEY: str(NOW_MS), HISTORY_KEY: json.dumps(["mid"])})
        thread = routed_thread(
            make_message(id="old"),
            make_message(id="mid"),
            make_message(id="new"),
        )
        engine, _ = make_engine(db, [thread])

        summary = await engine.run()

        assert summary.saved == 1
        assert [r[6] for r in rows_of(db, "Sales")] == ["new"]
        assert stored_history(db) == ["mid", "new"]


class TestLedger:
    async def test_first_run_initialises_watermark(self, db: RouterDatabase) -> None:
        engine, _ = make_engine(db, [])
        await engine.run()
        assert db.get_property(WATERMARK_KEY) == str(NOW_MS - SAFETY_MARGIN_MS)

    async def test_watermark_advances_without_rows(self, db: RouterDatabase) -> None:
        db.set_property(WATERMARK_KEY, str(NOW_MS - 60_000))
        thread = routed_thread(make_message(), last_update_ms=NOW_MS - 5_000)
        engine, _ = make_engine(db, [thread])

        summary = await engine.run()

        assert summary.saved == 0
        assert db.get_property(WATERMARK_KEY) == str(NOW_MS - 5_000)

    async def test_future_dated_thread_capped_at_run_clock(self, db: RouterDatabase) -> None:
        db.add_route("Sales", "example.com")
        far_future = 4_102_444_800_000  # 2100-01-01
        thread = routed_thread(make_message(), last_update_ms=far_future)
        first, _ = make_engine(db, [thread])

        await first.run()

        assert db.get_property(WATERMARK_KEY) == str(NOW_MS)
        second, mail = make_engine(db, [])
        await second.run()
        floor_seconds = (NOW_MS - SAFETY_MARGIN_MS) // 1000
        mail.search.assert_awaited_once_with(f"in:inbox after:{floor_seconds}", 0, 11)

    async def test_undated_thread_is_walked_as_current(self, db: RouterDatabase) -> None:
        db.add_route("Sales", "example.com")
        db.set_property(WATERMARK_KEY, str(NOW_MS - 60_000))
        thread = routed_thread(make_message(), last_update_ms=0)
        engine, _ = make_engine(db, [thread])

        summary = await engine.run()

        assert summary.saved == 1
        assert summary.skipped_for(SkipReason.STALE_THREAD) == 0
        assert db.get_property(WATERMARK_KEY) == str(NOW_MS)

    async def test_mail_failure_leaves_ledger_untouched(self, db: RouterDatabase) -> None:
        db.set_property(WATERMARK_KEY, str(NOW_MS))
        engine, mail = make_engine(db, [])
        mail.search.side_effect = MCPError("gmail unavailable")

        with pytest.raises(MCPError):
            await engine.run()

        assert db.get_property(WATERMARK_KEY) == str(NOW_MS)
        assert db.get_property(HISTORY_KEY) is None

    async def test_missing_header_aborts_before_commit(self, db: RouterDatabase) -> None:
        db.add_route("Sales", "example.com")
        db.set_property(WATERMARK_KEY, str(NOW_MS))
        db.create_destination("Sales", ["Notes"])
        with db._conn:
            db._conn.execute(
                "INSERT INTO destination_rows (destination, batch, position, cells) "
                "VALUES ('Sales', 1, 0, '[\"hand-written\"]')"
            )
        thread = routed_thread(make_message(), last_update_ms=NOW_MS + 5_000)
        engine, _ = make_engine(db, [thread])

        with pytest.raises(MissingHeaderError):
            await engine.run()

        assert db.get_property(WATERMARK_KEY) == str(NOW_MS)
        assert db.get_property(HISTORY_KEY) is None

    async def test_full_candidate_page_is_logged(
        self, db: RouterDatabase, caplog: pytest.LogCaptureFixture
    ) -> None:
        config = IngestConfig(timezone="UTC", owner="ops", candidate_limit=2)
        threads = [routed_thread(make_message(id=f"m{i}"), id=f"t{i}") for i in range(2)]
        engine, mail = make_engine(db, threads, config)

        summary = await engine.run()

        assert summary.threads == 2
        assert mail.search.await_args.args[2] == 2
        assert "full 2-thread limit" in caplog.text


class StaleSeenIds:
    """Store view whose message-id column was read before another run wrote to it."""

    def __init__(self, db: RouterDatabase) -> None:
        self._db = db

    def __getattr__(self, name: str):
        return getattr(self._db, name)

    def read_column(self, destination: str, column_offset: int) -> list[str]:
        return []


class SettingsSnapshot:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}

    def get_property(self, key: str) -> str | None:
        return self.values.get(key)

    def set_property(self, key: str, value: str) -> None:
        self.values[key] = value

    def set_properties(self, values: dict[str, str]) -> None:
        self.values.update(values)


class TestOverlappingRuns:
    async def test_runs_with_stale_state_write_twice(self, db: RouterDatabase) -> None:
        # No locking inside the engine: the scheduler's max_instances=1 keeps runs apart.
        db.add_route("Sales", "example.com")
        threads = [routed_thread(make_message())]
        first, _ = make_engine(db, threads)
        await first.run()

        mail = AsyncMock()
        mail.search.return_value = threads
        overlapping = IngestionEngine(
            mail, StaleSeenIds(db), db, SettingsSnapshot(), CONFIG, now_ms=lambda: NOW_MS
        )
        await overlapping.run()

        assert [r[6] for r in rows_of(db, "Sales")] == ["msg_1", "msg_1"]


class TestRunIngest:
    async def test_opens_and_closes_resources(self, tmp_path: Path) -> None:
        mail = AsyncMock()
        mail.search.return_value = []

        @asynccontextmanager
        async def fake_client():
            yield mail

        config = IngestConfig(db_path=tmp_path / "router.db", timezone="UTC", owner="ops")
        with patch("inbox_router.agent.ingest.gmail_client", fake_client):
            summary = await run_ingest(config)

        assert summary.threads == 0
        mail.search.assert_awaited_once()
        reopened = RouterDatabase(db_path=tmp_path / "router.db")
        try:
            assert reopened.get_property(WATERMARK_KEY) is not None
        finally:
            reopened.close()

    async def test_given_database_stays_open(self, db: RouterDatabase) -> None:
        mail = AsyncMock()
        mail.search.return_value = []

        @asynccontextmanager
        async def fake_client():
            yield mail

        with patch("inbox_router.agent.ingest.gmail_client", fake_client):
            await run_ingest(CONFIG, db=db)

        assert db.get_property(WATERMARK_KEY) is not None
        db.add_route("Sales", "example.com")
        assert db.route_rows() == [("Sales", "example.com")]
