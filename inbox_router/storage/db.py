"""SQLite storage — destination tables, routing rules and run state."""

import json
import logging
import sqlite3
from collections.abc import Sequence
from pathlib import Path

from inbox_router.storage.models import (
    ALL_TABLES,
    INITIAL_HEADERS,
    MANAGED_HEADERS,
    ColumnRestriction,
    DestinationSummary,
    DestinationTable,
    RouteRecord,
)

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path("data/inbox_router.db")


class MissingHeaderError(Exception):
    """Raised when an existing destination with data has no managed header."""

    def __init__(self, destination: str) -> None:
        super().__init__(
            f"Destination {destination!r} has rows but no {MANAGED_HEADERS[0]!r} header; "
            "refusing to write"
        )
        self.destination = destination


class RouterDatabase:
    """Wraps SQLite as the router's table store, routing config and settings store.

    A destination is a header row plus data rows; prepending a batch puts it
    above all earlier batches.  Single-threaded use only.

    Usage::

        db = RouterDatabase()
        db.add_route("Sales", "example.com")
        db.ensure_destination("Sales")
        db.append_rows_at_top("Sales", [row.to_cells()])
    """

    def __init__(self, db_path: str | Path = _DEFAULT_DB_PATH) -> None:
        self._path = Path(db_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    def close(self) -> None:
        """Close the underlying database connection."""
        self._conn.close()

    # ── Destination tables ──────────────────────────────────────────────────────

    def ensure_destination(self, destination: str) -> bool:
        """Create ``destination`` with the initial header row if it does not exist.

        An existing destination with no data and no managed header gets the
        managed headers appended.  Returns True only when a new destination
        was created.
        """
        with self._conn:
            headers = self._headers(destination)
            if headers is None:
                self._conn.execute(
                    "INSERT INTO destinations (name, headers) VALUES (?, ?)",
                    (destination, json.dumps(INITIAL_HEADERS)),
                )
                logger.info("Created destination %r", destination)
                return True

            if MANAGED_HEADERS[0] not in headers and self._row_count(destination) == 0:
                self._conn.execute(
                    "UPDATE destinations SET headers = ? WHERE name = ?",
                    (json.dumps([*headers, *MANAGED_HEADERS]), destination),
                )
                logger.info("Appended managed headers to destination %r", destination)
        return False

    def create_destination(self, destination: str, headers: Sequence[str]) -> None:
        """Create a destination with an arbitrary header row (existing ones are untouched)."""
        with self._conn:
            self._conn.execute(
                "INSERT OR IGNORE INTO destinations (name, headers) VALUES (?, ?)",
                (destination, json.dumps(list(headers))),
            )

    def managed_column_offset(self, destination: str) -> int | None:
        """Return the column index of the first managed header.

        Raises:
            MissingHeaderError: the destination has data rows but no managed header.
        """
        headers = self._headers(destination)
        if headers is None:
            return None
        if MANAGED_HEADERS[0] in headers:
            return headers.index(MANAGED_HEADERS[0])
        if self._row_count(destination) == 0:
            return None
        raise MissingHeaderError(destination)

    def read_column(self, destination: str, column_offset: int) -> list[str]:
        """Return one column of every data row, top to bottom."""
        values: list[str] = []
        for cells in self._ordered_cells(destination):
            values.append(cells[column_offset] if column_offset < len(cells) else "")
        return values

    def append_rows_at_top(self, destination: str, rows: Sequence[Sequence[str]]) -> None:
        """Prepend ``rows`` (managed-column cells) as one batch, in a single transaction.

        Raises:
            MissingHeaderError: the destination has data but no managed header.
            KeyError: the destination does not exist.
        """
        if not rows:
            return
        with self._conn:
            headers = self._headers(destination)
            if headers is None:
                raise KeyError(f"Unknown destination {destination!r}")
            start = self.managed_column_offset(destination)
            if start is None:
                raise MissingHeaderError(destination)

            batch = self._conn.execute(
                "SELECT COALESCE(MAX(batch), 0) + 1 FROM destination_rows WHERE destination = ?",
                (destination,),
            ).fetchone()[0]
            width = max(len(headers), start + len(MANAGED_HEADERS))
            for position, row in enumerate(rows):
                cells = [""] * width
                cells[start : start + len(row)] = [str(c) for c in row]
                self._conn.execute(
                    "INSERT INTO destination_rows (destination, batch, position, cells) "
                    "VALUES (?, ?, ?, ?)",
                    (destination, batch, position, json.dumps(cells, ensure_ascii=False)),
                )
        logger.info("Prepended %d row(s) to destination %r", len(rows), destination)

    def restrict_columns(
        self, destination: str, column_range: tuple[int, int], allowed_principal: str
    ) -> None:
        """Record that only ``allowed_principal`` may edit columns ``[start, end)``."""
        start, end = column_range
        with self._conn:
            self._conn.execute(
                "DELETE FROM column_restrictions "
                "WHERE destination = ? AND start_column = ? AND end_column = ?",
                (destination, start, end),
            )
            self._conn.execute(
                "INSERT INTO column_restrictions "
                "(destination, start_column, end_column, principal) VALUES (?, ?, ?, ?)",
                (destination, start, end, allowed_principal),
            )
        logger.info(
            "Restricted columns %d-%d of %r to %s", start, end - 1, destination, allowed_principal
        )

    def get_restrictions(self, destination: str) -> list[ColumnRestriction]:
        rows = self._conn.execute(
            "SELECT destination, start_column, end_column, principal "
            "FROM column_restrictions WHERE destination = ? ORDER BY id",
            (destination,),
        ).fetchall()
        return [ColumnRestriction(**dict(r)) for r in rows]

    def list_destinations(self) -> list[DestinationSummary]:
        """Return every destination with its row count, alphabetically."""
        rows = self._conn.execute(
            """SELECT d.name, d.headers, COUNT(r.id) AS row_count
               FROM destinations d
               LEFT JOIN destination_rows r ON r.destination = d.name
               GROUP BY d.name
               ORDER BY d.name"""
        ).fetchall()
        return [
            DestinationSummary(
                name=r["name"], headers=json.loads(r["headers"]), row_count=r["row_count"]
            )
            for r in rows
        ]

    def get_table(self, destination: str, limit: int | None = None) -> DestinationTable | None:
        """Return the header row and the top ``limit`` data rows, or None if unknown."""
        headers = self._headers(destination)
        if headers is None:
            return None
        cells = self._ordered_cells(destination, limit)
        return DestinationTable(name=destination, headers=headers, rows=cells)

    # ── Routing config ──────────────────────────────────────────────────────────

    def route_rows(self) -> list[tuple[str, str]]:
        """Return ``(destination, domain)`` rows in the order they were added."""
        rows = self._conn.execute(
            "SELECT destination, domain FROM domain_routes ORDER BY id"
        ).fetchall()
        return [(r["destination"], r["domain"]) for r in rows]

    def list_routes(self) -> list[RouteRecord]:
        rows = self._conn.execute(
            "SELECT id, destination, domain FROM domain_routes ORDER BY id"
        ).fetchall()
        return [RouteRecord(**dict(r)) for r in rows]

    def add_route(self, destination: str, domain: str) -> None:
        """Append a routing row.  Duplicates are allowed and collapsed at read time."""
        with self._conn:
            self._conn.execute(
                "INSERT INTO domain_routes (destination, domain) VALUES (?, ?)",
                (destination, domain),
            )

    def remove_route(self, destination: str, domain: str) -> int:
        """Delete every row routing ``domain`` to ``destination``; return the count."""
        with self._conn:
            cursor = self._conn.execute(
                "DELETE FROM domain_routes WHERE destination = ? AND lower(trim(domain)) = ?",
                (destination, domain.strip().lower()),
            )
        return cursor.rowcount

    # ── Settings ────────────────────────────────────────────────────────────────

    def get_property(self, key: str) -> str | None:
        row = self._conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_property(self, key: str, value: str) -> None:
        self.set_properties({key: value})

    def set_properties(self, values: dict[str, str]) -> None:
        """Upsert several settings in one transaction."""
        with self._conn:
            for key, value in values.items():
                self._conn.execute(
                    """
                    INSERT INTO settings (key, value) VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value      = excluded.value,
                        updated_at = datetime('now')
                    """,
                    (key, value),
                )

    # ── Private ─────────────────────────────────────────────────────────────────

    def _create_tables(self) -> None:
        with self._conn:
            for ddl in ALL_TABLES:
                self._conn.execute(ddl)

    def _headers(self, destination: str) -> list[str] | None:
        row = self._conn.execute(
            "SELECT headers FROM destinations WHERE name = ?", (destination,)
        ).fetchone()
        return json.loads(row["headers"]) if row else None

    def _row_count(self, destination: str) -> int:
        return self._conn.execute(
            "SELECT COUNT(*) FROM destination_rows WHERE destination = ?", (destination,)
        ).fetchone()[0]

    def _ordered_cells(self, destination: str, limit: int | None = None) -> list[list[str]]:
        sql = (
            "SELECT cells FROM destination_rows WHERE destination = ? "
            "ORDER BY batch DESC, position"
        )
        params: tuple[object, ...] = (destination,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (destination, limit)
        rows = self._conn.execute(sql, params).fetchall()
        return [json.loads(r["cells"]) for r in rows]
