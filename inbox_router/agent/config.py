"""Runtime configuration for ingestion runs, read from the environment."""

from __future__ import annotations

import getpass
import logging
import os
from dataclasses import dataclass, field
from datetime import tzinfo
from pathlib import Path

from dateutil import tz

logger = logging.getLogger(__name__)

DEFAULT_CANDIDATE_LIMIT = 11
DEFAULT_INTERVAL_MINUTES = 5


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("Invalid %s %r; defaulting to %d", name, raw, default)
        return default
    if value <= 0:
        logger.warning("%s must be positive, got %d; defaulting to %d", name, value, default)
        return default
    return value


def _default_owner() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "inbox-router"


@dataclass
class IngestConfig:
    """Settings shared by the CLI, the scheduler and the ingestion engine."""

    db_path: Path = field(default_factory=lambda: Path("data/inbox_router.db"))
    candidate_limit: int = DEFAULT_CANDIDATE_LIMIT
    interval_minutes: int = DEFAULT_INTERVAL_MINUTES
    group_base_url: str = ""
    timezone: str = ""
    owner: str = field(default_factory=_default_owner)

    @classmethod
    def from_env(cls) -> IngestConfig:
        """Build IngestConfig from environment variables (call load_dotenv() first)."""
        return cls(
            db_path=Path(os.environ.get("ROUTER_DB_PATH", "data/inbox_router.db")),
            candidate_limit=_int_env("INGEST_CANDIDATE_LIMIT", DEFAULT_CANDIDATE_LIMIT),
            interval_minutes=_int_env("INGEST_INTERVAL_MINUTES", DEFAULT_INTERVAL_MINUTES),
            group_base_url=os.environ.get("GROUP_BASE_URL", ""),
            timezone=os.environ.get("ROUTER_TIMEZONE", ""),
            owner=os.environ.get("ROUTER_OWNER") or _default_owner(),
        )

    def default_tz(self) -> tzinfo:
        """Zone for forwarded dates that carry no offset; local time if unset or unknown."""
        if self.timezone:
            zone = tz.gettz(self.timezone)
            if zone is not None:
                return zone
            logger.warning("Unknown ROUTER_TIMEZONE %r; using local time", self.timezone)
        return tz.tzlocal()
