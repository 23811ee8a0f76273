"""SQLite state management with event sourcing.

The events table is the write model (source of truth) and doubles as the
replay log for event stream subscribers. The features table is a read model
(projection) holding the current record of every feature on the board.

Status-changing writes go through save_feature(), which inserts the event
and updates the projection in ONE transaction, so a failed write never
leaves a partial transition behind.
"""

import json
import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from agentboard.core.models import Feature, FeatureStatus

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of events in the event log and on the event stream."""

    # Core stream events
    FEATURE_STARTED = "feature:started"
    FEATURE_PROGRESS = "feature:progress"
    FEATURE_TOOL_USE = "feature:tool-use"
    FEATURE_COMPLETED = "feature:completed"
    FEATURE_ERROR = "feature:error"
    FEATURE_COMMITTED = "feature:committed"
    FEATURE_STOPPED = "feature:stopped"

    # Board bookkeeping
    FEATURE_CREATED = "feature:created"
    FEATURE_UPDATED = "feature:updated"
    FEATURE_VERIFIED = "feature:verified"
    FEATURE_ARCHIVED = "feature:archived"
    FEATURE_RESTORED = "feature:restored"
    FEATURE_DELETED = "feature:deleted"
    FEATURE_FOLLOW_UP_STARTED = "feature:follow-up-started"
    FEATURE_FOLLOW_UP_COMPLETED = "feature:follow-up-completed"


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime, Path and Pydantic models."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


def _safe_json_dumps(obj: Any) -> str:
    """Serialize object to JSON string, handling datetime and Pydantic models."""
    return json.dumps(obj, cls=_SafeJSONEncoder)


class Event(BaseModel):
    """Immutable event in the event log."""

    id: int | None = None
    feature_id: str
    event_type: EventType
    status: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utc_now)


class Database:
    """SQLite database with event sourcing for feature state."""

    SCHEMA = """
    -- Event log (immutable, source of truth)
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        feature_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        status TEXT,
        payload JSON,
        timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    -- Feature records (projection)
    CREATE TABLE IF NOT EXISTS features (
        id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        priority INTEGER NOT NULL,
        position INTEGER NOT NULL,
        record JSON NOT NULL,
        updated_by_event_id INTEGER,
        created_at TIMESTAMP,
        updated_at TIMESTAMP
    );

    CREATE INDEX IF NOT EXISTS idx_events_feature ON events(feature_id, id);
    CREATE INDEX IF NOT EXISTS idx_features_status ON features(status);
    """

    def __init__(self, db_path: str | Path = ".agentboard/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema and enable WAL mode for better concurrency."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # --- Event Sourcing ---

    def _insert_event(self, conn: sqlite3.Connection, event: Event) -> int:
        cursor = conn.execute(
            """
            INSERT INTO events (feature_id, event_type, status, payload, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                event.feature_id,
                event.event_type.value,
                event.status,
                _safe_json_dumps(event.payload),
                event.timestamp.isoformat(),
            ),
        )
        return cursor.lastrowid  # type: ignore[return-value]

    def append_event(self, event: Event) -> int:
        """Append an event that does not change the feature record."""
        with self._connect() as conn:
            return self._insert_event(conn, event)

    def save_feature(
        self,
        feature: Feature,
        event_type: EventType,
        payload: dict[str, Any] | None = None,
    ) -> int:
        """Persist a feature record together with the event that changed it.

        The event insert and the projection upsert share one transaction.

        Returns:
            Id of the recorded event
        """
        event = Event(
            feature_id=feature.id,
            event_type=event_type,
            status=feature.status.value,
            payload=payload or {},
        )
        with self._connect() as conn:
            event_id = self._insert_event(conn, event)
            position = conn.execute(
                "SELECT position FROM features WHERE id = ?", (feature.id,)
            ).fetchone()
            if position is None:
                next_pos = conn.execute(
                    "SELECT COALESCE(MAX(position), -1) + 1 FROM features"
                ).fetchone()[0]
                conn.execute(
                    """
                    INSERT INTO features (id, status, priority, position, record,
                                          updated_by_event_id, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        feature.id,
                        feature.status.value,
                        feature.priority,
                        next_pos,
                        feature.model_dump_json(),
                        event_id,
                        feature.created_at.isoformat(),
                        feature.updated_at.isoformat(),
                    ),
                )
            else:
                conn.execute(
                    """
                    UPDATE features
                    SET status = ?, priority = ?, record = ?,
                        updated_by_event_id = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        feature.status.value,
                        feature.priority,
                        feature.model_dump_json(),
                        event_id,
                        feature.updated_at.isoformat(),
                        feature.id,
                    ),
                )
        logger.debug(f"Saved feature {feature.id} ({event_type.value}, event {event_id})")
        return event_id

    def delete_feature(self, feature_id: str, payload: dict[str, Any] | None = None) -> int | None:
        """Remove a feature's record, keeping a deletion event in the log.

        Returns:
            Id of the deletion event, or None if there was no record
        """
        event = Event(
            feature_id=feature_id,
            event_type=EventType.FEATURE_DELETED,
            status=FeatureStatus.DELETED.value,
            payload=payload or {},
        )
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM features WHERE id = ?", (feature_id,))
            if cursor.rowcount == 0:
                return None
            return self._insert_event(conn, event)

    # --- Query Methods ---

    def get_feature(self, feature_id: str) -> Feature | None:
        """Get a feature by ID."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT record FROM features WHERE id = ?", (feature_id,)
            ).fetchone()
        if not row:
            return None
        return Feature.model_validate_json(row["record"])

    def list_features(self, statuses: list[FeatureStatus] | None = None) -> list[Feature]:
        """All features in board order (creation position)."""
        with self._connect() as conn:
            if statuses:
                placeholders = ",".join("?" * len(statuses))
                rows = conn.execute(
                    f"SELECT record FROM features WHERE status IN ({placeholders}) ORDER BY position",
                    [s.value for s in statuses],
                ).fetchall()
            else:
                rows = conn.execute("SELECT record FROM features ORDER BY position").fetchall()
        return [Feature.model_validate_json(row["record"]) for row in rows]

    def get_events(
        self,
        feature_id: str,
        event_types: list[EventType] | None = None,
        after_id: int = 0,
    ) -> list[Event]:
        """Get events for a feature in log order, optionally filtered by type."""
        with self._connect() as conn:
            if event_types:
                placeholders = ",".join("?" * len(event_types))
                rows = conn.execute(
                    f"""
                    SELECT * FROM events
                    WHERE feature_id = ? AND id > ? AND event_type IN ({placeholders})
                    ORDER BY id
                    """,
                    [feature_id, after_id] + [et.value for et in event_types],
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM events WHERE feature_id = ? AND id > ? ORDER BY id",
                    (feature_id, after_id),
                ).fetchall()
        return [self._row_to_event(row) for row in rows]

    def _row_to_event(self, row: sqlite3.Row) -> Event:
        """Convert database row to Event."""
        return Event(
            id=row["id"],
            feature_id=row["feature_id"],
            event_type=EventType(row["event_type"]),
            status=row["status"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            timestamp=datetime.fromisoformat(row["timestamp"]),
        )
