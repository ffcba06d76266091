"""
SQLite Store: Infrastructure adapter for durable scheduling state.

One database file backs four ports: card scheduling state, the card catalog,
the daily usage counters and the review log. Writes run inside ``BEGIN IMMEDIATE`` so two
processes sharing the file serialize on the write lock.
"""

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import date, datetime
from pathlib import Path

from mnemos.domain.constants import CHUNK_SIZE, SQLITE_BUSY_TIMEOUT, UNDO_HISTORY_LIMIT
from mnemos.domain.errors import (
    ConcurrentModificationError,
    CorruptStateError,
    StoreUnavailableError,
)
from mnemos.domain.models import (
    CardRef,
    CardSchedulingState,
    Rating,
    ReviewLogEntry,
    ScopeKey,
    UsageCounts,
    UsageKind,
)
from mnemos.domain.ports import (
    CardCatalog,
    CardStateStore,
    DailyUsageStore,
    ReviewLog,
    StoredState,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS cards (
    position INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    project_id TEXT NOT NULL,
    card_id TEXT NOT NULL,
    created_at TEXT,
    sibling_key TEXT,
    UNIQUE (user_id, project_id, card_id)
);

CREATE TABLE IF NOT EXISTS card_states (
    user_id TEXT NOT NULL,
    project_id TEXT NOT NULL,
    card_id TEXT NOT NULL,
    state TEXT NOT NULL,
    due TEXT NOT NULL,
    interval INTEGER NOT NULL,
    ease REAL NOT NULL,
    learning_step INTEGER NOT NULL DEFAULT 0,
    lapses INTEGER NOT NULL DEFAULT 0,
    repetitions INTEGER NOT NULL DEFAULT 0,
    is_leech INTEGER NOT NULL DEFAULT 0,
    created_at TEXT,
    last_reviewed TEXT,
    resume_state TEXT,
    last_rated_from TEXT,
    last_event_id TEXT,
    version INTEGER NOT NULL,
    PRIMARY KEY (user_id, project_id, card_id)
);

CREATE TABLE IF NOT EXISTS usage_counts (
    scope TEXT NOT NULL,
    day TEXT NOT NULL,
    new_cards INTEGER NOT NULL DEFAULT 0,
    reviews INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (scope, day)
);

CREATE TABLE IF NOT EXISTS usage_events (
    scope TEXT NOT NULL,
    event_id TEXT NOT NULL,
    day TEXT NOT NULL,
    kind TEXT NOT NULL,
    PRIMARY KEY (scope, event_id)
);

CREATE TABLE IF NOT EXISTS review_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    project_id TEXT NOT NULL,
    event_id TEXT NOT NULL,
    card_id TEXT NOT NULL,
    rating TEXT NOT NULL,
    rated_at TEXT NOT NULL,
    day TEXT NOT NULL,
    previous TEXT NOT NULL,
    UNIQUE (user_id, project_id, event_id)
);
"""

_STATE_COLUMNS = (
    "state",
    "due",
    "interval",
    "ease",
    "learning_step",
    "lapses",
    "repetitions",
    "is_leech",
    "created_at",
    "last_reviewed",
    "resume_state",
    "last_rated_from",
    "last_event_id",
)

_USAGE_COLUMN = {
    UsageKind.NEW_CARD: "new_cards",
    UsageKind.REVIEW: "reviews",
}


def _state_values(state: CardSchedulingState) -> tuple:
    data = state.to_dict()
    data["is_leech"] = int(state.is_leech)
    return tuple(data[col] for col in _STATE_COLUMNS)


def _row_to_state(row: sqlite3.Row) -> CardSchedulingState:
    return CardSchedulingState.from_dict(dict(row))


def _row_to_entry(row: sqlite3.Row) -> ReviewLogEntry:
    return ReviewLogEntry(
        event_id=row["event_id"],
        card_id=row["card_id"],
        rating=Rating(row["rating"]),
        rated_at=datetime.fromisoformat(row["rated_at"]),
        day=date.fromisoformat(row["day"]),
        previous=CardSchedulingState.from_dict(json.loads(row["previous"])),
    )


class SqliteStore(CardStateStore, CardCatalog, DailyUsageStore, ReviewLog):
    """
    SQLite-backed implementation of the persistence ports.

    A connection is opened per operation; sqlite3.Error never leaves this class
    except as StoreUnavailableError.
    """

    def __init__(
        self,
        db_path: Path | str,
        busy_timeout: float = SQLITE_BUSY_TIMEOUT,
        history_limit: int = UNDO_HISTORY_LIMIT,
    ):
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout
        self.history_limit = history_limit
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(SCHEMA)
        logger.debug(f"SQLite store ready at {self.db_path}")

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(
                str(self.db_path), timeout=self.busy_timeout, isolation_level=None
            )
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot open database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Database error: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    @staticmethod
    def _insert_state(
        conn: sqlite3.Connection, user_id: str, project_id: str, state: CardSchedulingState
    ) -> None:
        columns = ", ".join(_STATE_COLUMNS)
        placeholders = ", ".join("?" for _ in _STATE_COLUMNS)
        conn.execute(
            f"INSERT OR IGNORE INTO card_states "
            f"(user_id, project_id, card_id, {columns}, version) "
            f"VALUES (?, ?, ?, {placeholders}, 1)",
            (user_id, project_id, state.card_id, *_state_values(state)),
        )

    # ------------------------------------------------------------------
    # CardStateStore
    # ------------------------------------------------------------------

    async def load(
        self, user_id: str, project_id: str, card_ids: Iterable[str]
    ) -> dict[str, StoredState]:
        ids = list(card_ids)
        result: dict[str, StoredState] = {}
        if not ids:
            return result

        with self._connect() as conn:
            for i in range(0, len(ids), CHUNK_SIZE):
                chunk = ids[i : i + CHUNK_SIZE]
                placeholders = ",".join("?" for _ in chunk)
                rows = conn.execute(
                    f"SELECT * FROM card_states WHERE user_id = ? AND project_id = ? "
                    f"AND card_id IN ({placeholders})",
                    (user_id, project_id, *chunk),
                ).fetchall()
                for row in rows:
                    try:
                        result[row["card_id"]] = _row_to_state(row)
                    except CorruptStateError as e:
                        logger.warning(f"Undecodable state row for card {e.card_id}: {e}")
                        result[row["card_id"]] = e
        return result

    async def create_if_absent(
        self, user_id: str, project_id: str, state: CardSchedulingState
    ) -> CardSchedulingState:
        with self._transaction() as conn:
            self._insert_state(conn, user_id, project_id, state)
            row = conn.execute(
                "SELECT * FROM card_states WHERE user_id = ? AND project_id = ? AND card_id = ?",
                (user_id, project_id, state.card_id),
            ).fetchone()
        return _row_to_state(row)

    async def save(
        self, user_id: str, project_id: str, state: CardSchedulingState
    ) -> CardSchedulingState:
        assignments = ", ".join(f"{col} = ?" for col in _STATE_COLUMNS)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE card_states SET {assignments}, version = version + 1 "
                f"WHERE user_id = ? AND project_id = ? AND card_id = ? AND version = ?",
                (*_state_values(state), user_id, project_id, state.card_id, state.version),
            )
            if cursor.rowcount == 0:
                row = conn.execute(
                    "SELECT version FROM card_states "
                    "WHERE user_id = ? AND project_id = ? AND card_id = ?",
                    (user_id, project_id, state.card_id),
                ).fetchone()
                if row is None and state.version == 0:
                    # Never stored: version 0 means "expected absent"
                    self._insert_state(conn, user_id, project_id, state)
                    return replace(state, version=1)
                found = row["version"] if row else 0
                raise ConcurrentModificationError(
                    f"Card {state.card_id}: expected version {state.version}, found {found}"
                )
        return replace(state, version=state.version + 1)

    # ------------------------------------------------------------------
    # CardCatalog
    # ------------------------------------------------------------------

    async def list_cards(self, user_id: str, project_id: str) -> list[CardRef]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT card_id, created_at, sibling_key FROM cards "
                "WHERE user_id = ? AND project_id = ? ORDER BY position",
                (user_id, project_id),
            ).fetchall()
        return [
            CardRef(
                card_id=row["card_id"],
                created_at=datetime.fromisoformat(row["created_at"])
                if row["created_at"]
                else None,
                sibling_key=row["sibling_key"],
            )
            for row in rows
        ]

    async def add_card(self, user_id: str, project_id: str, card: CardRef) -> bool:
        """Register a card with the project. Returns False if it was already there."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO cards "
                "(user_id, project_id, card_id, created_at, sibling_key) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    user_id,
                    project_id,
                    card.card_id,
                    card.created_at.isoformat() if card.created_at else None,
                    card.sibling_key,
                ),
            )
        return cursor.rowcount > 0

    async def delete_card(self, user_id: str, project_id: str, card_id: str) -> None:
        """Remove a card and, with it, its scheduling state and review history."""
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM review_log WHERE user_id = ? AND project_id = ? AND card_id = ?",
                (user_id, project_id, card_id),
            )
            conn.execute(
                "DELETE FROM card_states WHERE user_id = ? AND project_id = ? AND card_id = ?",
                (user_id, project_id, card_id),
            )
            conn.execute(
                "DELETE FROM cards WHERE user_id = ? AND project_id = ? AND card_id = ?",
                (user_id, project_id, card_id),
            )
        logger.info(f"Deleted card {card_id} from {user_id}/{project_id}")

    # ------------------------------------------------------------------
    # DailyUsageStore
    # ------------------------------------------------------------------

    async def get_usage(self, scope: ScopeKey, day: date) -> UsageCounts:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT new_cards, reviews FROM usage_counts WHERE scope = ? AND day = ?",
                (str(scope), day.isoformat()),
            ).fetchone()
        if row is None:
            return UsageCounts()
        return UsageCounts(new_cards_studied=row["new_cards"], reviews_completed=row["reviews"])

    async def increment(
        self, scope: ScopeKey, day: date, kind: UsageKind, event_id: str
    ) -> bool:
        column = _USAGE_COLUMN[kind]
        with self._transaction() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO usage_events (scope, event_id, day, kind) "
                "VALUES (?, ?, ?, ?)",
                (str(scope), event_id, day.isoformat(), kind.value),
            )
            if cursor.rowcount == 0:
                return False
            conn.execute(
                "INSERT OR IGNORE INTO usage_counts (scope, day) VALUES (?, ?)",
                (str(scope), day.isoformat()),
            )
            conn.execute(
                f"UPDATE usage_counts SET {column} = {column} + 1 WHERE scope = ? AND day = ?",
                (str(scope), day.isoformat()),
            )
        return True

    async def release(
        self, scope: ScopeKey, day: date, kind: UsageKind, event_id: str
    ) -> bool:
        column = _USAGE_COLUMN[kind]
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM usage_events WHERE scope = ? AND event_id = ?",
                (str(scope), event_id),
            )
            if cursor.rowcount == 0:
                return False
            conn.execute(
                f"UPDATE usage_counts SET {column} = MAX({column} - 1, 0) "
                f"WHERE scope = ? AND day = ?",
                (str(scope), day.isoformat()),
            )
        return True

    # ------------------------------------------------------------------
    # ReviewLog
    # ------------------------------------------------------------------

    async def record(self, user_id: str, project_id: str, entry: ReviewLogEntry) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO review_log "
                "(user_id, project_id, event_id, card_id, rating, rated_at, day, previous) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    user_id,
                    project_id,
                    entry.event_id,
                    entry.card_id,
                    entry.rating.value,
                    entry.rated_at.isoformat(),
                    entry.day.isoformat(),
                    json.dumps(entry.previous.to_dict()),
                ),
            )
            conn.execute(
                "DELETE FROM review_log WHERE user_id = ? AND project_id = ? AND id NOT IN "
                "(SELECT id FROM review_log WHERE user_id = ? AND project_id = ? "
                "ORDER BY id DESC LIMIT ?)",
                (user_id, project_id, user_id, project_id, self.history_limit),
            )

    async def get(self, user_id: str, project_id: str, event_id: str) -> ReviewLogEntry | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM review_log WHERE user_id = ? AND project_id = ? AND event_id = ?",
                (user_id, project_id, event_id),
            ).fetchone()
        return _row_to_entry(row) if row else None

    async def remove(self, user_id: str, project_id: str, event_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM review_log WHERE user_id = ? AND project_id = ? AND event_id = ?",
                (user_id, project_id, event_id),
            )
        return cursor.rowcount > 0

    async def entries(self, user_id: str, project_id: str) -> list[ReviewLogEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM review_log WHERE user_id = ? AND project_id = ? ORDER BY id",
                (user_id, project_id),
            ).fetchall()
        return [_row_to_entry(row) for row in rows]
