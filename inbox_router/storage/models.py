"""SQLite table schemas, destination header layout and typed query results."""

from dataclasses import dataclass, field


# ── Destination layout ─────────────────────────────────────────────────────────

#: Columns written by the router, in OutputRow order.  Located on an existing
#: destination by searching for the first one.
MANAGED_HEADERS: list[str] = [
    "Sent At",
    "Sender",
    "Subject",
    "Body",
    "Attachment",
    "Thread ID",
    "Message ID",
]

#: Columns reserved for people working the table; never written by the router.
MANUAL_HEADERS: list[str] = ["Checked", "Notes", "Owner"]

#: Header row of a destination created by the router.
INITIAL_HEADERS: list[str] = [*MANUAL_HEADERS, *MANAGED_HEADERS]


# ── DDL ────────────────────────────────────────────────────────────────────────

_CREATE_DESTINATIONS = """
CREATE TABLE IF NOT EXISTS destinations (
    name        TEXT PRIMARY KEY,
    headers     TEXT NOT NULL DEFAULT '[]',
    created_at  TEXT NOT NULL DEFAULT (datetime('now'))
)
"""

# batch grows with every prepend; the newest batch is the top of the table.
_CREATE_DESTINATION_ROWS = """
CREATE TABLE IF NOT EXISTS destination_rows (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    destination  TEXT NOT NULL,
    batch        INTEGER NOT NULL,
    position     INTEGER NOT NULL,
    cells        TEXT NOT NULL,
    created_at   TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (destination) REFERENCES destinations(name)
)
"""

_CREATE_DESTINATION_ROWS_INDEX = """
CREATE INDEX IF NOT EXISTS idx_destination_rows_order
    ON destination_rows (destination, batch DESC, position)
"""

_CREATE_COLUMN_RESTRICTIONS = """
CREATE TABLE IF NOT EXISTS column_restrictions (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    destination   TEXT NOT NULL,
    start_column  INTEGER NOT NULL,
    end_column    INTEGER NOT NULL,
    principal     TEXT NOT NULL,
    created_at    TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (destination) REFERENCES destinations(name)
)
"""

_CREATE_DOMAIN_ROUTES = """
CREATE TABLE IF NOT EXISTS domain_routes (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    destination  TEXT NOT NULL,
    domain       TEXT NOT NULL,
    created_at   TEXT NOT NULL DEFAULT (datetime('now'))
)
"""

_CREATE_SETTINGS = """
CREATE TABLE IF NOT EXISTS settings (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    updated_at  TEXT NOT NULL DEFAULT (datetime('now'))
)
"""

#: All DDL statements in creation order (respects FK dependencies).
ALL_TABLES: list[str] = [
    _CREATE_DESTINATIONS,
    _CREATE_DESTINATION_ROWS,
    _CREATE_DESTINATION_ROWS_INDEX,
    _CREATE_COLUMN_RESTRICTIONS,
    _CREATE_DOMAIN_ROUTES,
    _CREATE_SETTINGS,
]


# ── Query result types ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class DestinationSummary:
    """A destination with its header row and data row count."""

    name: str
    headers: list[str]
    row_count: int


@dataclass(frozen=True)
class DestinationTable:
    """Header row plus data rows (top first) of one destination."""

    name: str
    headers: list[str]
    rows: list[list[str]] = field(default_factory=list)


@dataclass(frozen=True)
class RouteRecord:
    """A row from the domain_routes table."""

    id: int
    destination: str
    domain: str


@dataclass(frozen=True)
class ColumnRestriction:
    """A row from the column_restrictions table."""

    destination: str
    start_column: int
    end_column: int
    principal: str
