"""AssignmentStore: SQLite-backed status ledger and claim table for AppReader.

This module implements the :class:`AssignmentStore` class and the Pydantic
models that cross module boundaries: :class:`StatusRecord`, :class:`Claim`,
:class:`SkipRecord`, :class:`FlagRecord` and :class:`SkipStats`.

Schema overview (assignments.db)
--------------------------------
- ``status_records`` — one row per (unit, event) with the completion count.
- ``status_readers`` — the ``consumed_by`` set of each status record; the
  composite primary key gives set semantics.
- ``claims`` — outstanding claims.  ``UNIQUE(reviewer, event)`` keeps one
  claim per reviewer per event; ``UNIQUE(event, unit)`` keeps a unit from
  being claimed by two reviewers of the same event.
- ``skips`` / ``flags`` — append-only exception logs used for reporting.

Design notes
------------
- :meth:`AssignmentStore.__init__` accepts a ``db_path: Path``.  Pass
  ``Path(":memory:")`` or a temp-dir path in tests.
- The connection runs in autocommit mode (``isolation_level=None``) so that
  :meth:`AssignmentStore.transaction` can issue ``BEGIN IMMEDIATE`` itself.
  Every public write opens (or joins) a transaction; callers that need several
  writes to land together wrap them in one ``with store.transaction():``.
- One connection is shared across threads and guarded by a re-entrant lock.
- Timestamps are stored as ISO 8601 strings in UTC.
- All SQL uses parameterised ``?`` placeholders.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def as_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


def _non_empty(v: str) -> str:
    if not v or not v.strip():
        raise ValueError("Field must be a non-empty string.")
    return v


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class DuplicateClaimError(RuntimeError):
    """Raised when a claim insert violates a claim-table uniqueness constraint.

    Either the reviewer already holds a claim for the event, or another
    reviewer holds a claim on the same unit for the event.
    """


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class StatusRecord(BaseModel):
    """Fairness and consumption state of one unit within one event.

    Attributes
    ----------
    unit:
        Identifier of the assignable unit (an application).
    event:
        Identifier of the event the unit is registered for.
    completions:
        Number of successful submissions for this unit in this event.
    consumed_by:
        Reviewers who completed, skipped, flagged, or were
        excluded from this unit.
    """

    unit: str
    event: str
    completions: int = Field(default=0, ge=0)
    consumed_by: frozenset[str] = frozenset()


class Claim(BaseModel):
    """A reviewer's exclusive, time-bounded right to work on one unit.

    Attributes
    ----------
    claim_id:
        Unique identifier of this claim (``"claim-{hex}"``).
    reviewer:
        The reviewer holding the claim.
    event:
        The event the claim belongs to.
    unit:
        The claimed unit.
    start_time:
        When the claim was created; always normalised to UTC.
    """

    claim_id: str
    reviewer: str
    event: str
    unit: str
    start_time: datetime

    @field_validator("claim_id", "reviewer", "event", "unit")
    @classmethod
    def _non_empty_string(cls, v: str) -> str:
        """Reject empty or whitespace-only identifiers."""
        return _non_empty(v)

    @field_validator("start_time")
    @classmethod
    def _normalise_start_time(cls, v: datetime) -> datetime:
        """Store every start time as an aware UTC datetime."""
        return as_utc(v)


class SkipRecord(BaseModel):
    """One skip event, kept for reporting only."""

    skip_id: str
    reviewer: str
    unit: str
    event: str
    timestamp: datetime


class FlagRecord(BaseModel):
    """One flag-and-skip event with the reviewer's optional reason."""

    flag_id: str
    reviewer: str
    unit: str
    event: str
    timestamp: datetime
    reason: str | None = None


class SkipStats(BaseModel):
    """Number of skips a reviewer made within an event."""

    reviewer: str
    skip_count: int


# ---------------------------------------------------------------------------
# AssignmentStore
# ---------------------------------------------------------------------------


class AssignmentStore:
    """Persistent SQLite storage for the status ledger, claims and exception logs.

    On initialisation the database is created (if it does not exist) with the
    tables and indexes described in the module docstring.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Pass ``Path(":memory:")`` or a
        temp-dir path for tests.

    Notes
    -----
    Only :class:`~appreader.allocation.engine.AllocationEngine` is expected to
    call the write methods; they are narrow on purpose and perform no
    business-rule checks beyond the schema constraints.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path: Path = db_path
        self._lock = threading.RLock()
        self._depth: int = 0
        self._conn: sqlite3.Connection = self._open_connection(db_path)
        self._init_schema()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed block as one serialized write transaction.

        The first (outermost) entry takes the store lock and issues
        ``BEGIN IMMEDIATE``, which also holds SQLite's write lock against
        other connections to the same file.  Nested entries join the open
        transaction.  The transaction commits when the outermost block exits
        normally and rolls back on any exception.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            self._conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")
            finally:
                self._depth = 0

    def close(self) -> None:
        """Close the underlying connection."""
        with self._lock:
            self._conn.close()

    def ping(self) -> bool:
        """Return ``True`` if the database answers a trivial query."""
        try:
            with self._lock:
                self._conn.execute("SELECT 1")
            return True
        except sqlite3.Error:
            return False

    # ------------------------------------------------------------------
    # Status ledger
    # ------------------------------------------------------------------

    def register(self, unit: str, event: str) -> bool:
        """Create the status record for (*unit*, *event*) if it is missing.

        Returns
        -------
        bool
            ``True`` if a record was created, ``False`` if it already existed.
        """
        with self.transaction():
            cur = self._conn.execute(
                "INSERT OR IGNORE INTO status_records (unit, event, completions) "
                "VALUES (?, ?, 0)",
                (unit, event),
            )
            return cur.rowcount == 1

    def get_status(self, unit: str, event: str) -> StatusRecord | None:
        """Return the status record for (*unit*, *event*), or ``None``."""
        with self._lock:
            row = self._conn.execute(
                "SELECT unit, event, completions FROM status_records "
                "WHERE unit = ? AND event = ?",
                (unit, event),
            ).fetchone()
            if row is None:
                return None
            return self._status_from_row(row)

    def list_status(self, event: str) -> list[StatusRecord]:
        """Return every status record of *event*, ordered by unit id."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT unit, event, completions FROM status_records "
                "WHERE event = ? ORDER BY unit ASC",
                (event,),
            ).fetchall()
            return [self._status_from_row(row) for row in rows]

    def list_unconsumed(self, event: str, reviewer: str) -> list[StatusRecord]:
        """Return status records of *event* that *reviewer* has not consumed.

        Records are ordered by ``completions`` ascending with the unit id as
        the tie-break, so the order is fully determined by the stored state.
        """
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT s.unit, s.event, s.completions
                FROM status_records AS s
                WHERE s.event = ?
                  AND NOT EXISTS (
                      SELECT 1 FROM status_readers AS r
                      WHERE r.unit = s.unit AND r.event = s.event
                        AND r.reviewer = ?
                  )
                ORDER BY s.completions ASC, s.unit ASC
                """,
                (event, reviewer),
            ).fetchall()
            return [self._status_from_row(row) for row in rows]

    def add_reader(self, unit: str, event: str, reviewer: str) -> bool:
        """Add *reviewer* to the ``consumed_by`` set of (*unit*, *event*).

        Returns
        -------
        bool
            ``True`` if the reviewer was added, ``False`` if already present.
        """
        with self.transaction():
            cur = self._conn.execute(
                "INSERT OR IGNORE INTO status_readers (unit, event, reviewer) "
                "VALUES (?, ?, ?)",
                (unit, event, reviewer),
            )
            return cur.rowcount == 1

    def increment_completions(self, unit: str, event: str) -> int:
        """Increment the completion count of (*unit*, *event*) by one.

        Returns
        -------
        int
            The new completion count.

        Raises
        ------
        LookupError
            If no status record exists for the pair.
        """
        with self.transaction():
            cur = self._conn.execute(
                "UPDATE status_records SET completions = completions + 1 "
                "WHERE unit = ? AND event = ?",
                (unit, event),
            )
            if cur.rowcount != 1:
                raise LookupError(
                    f"No status record for unit {unit!r} in event {event!r}"
                )
            row = self._conn.execute(
                "SELECT completions FROM status_records WHERE unit = ? AND event = ?",
                (unit, event),
            ).fetchone()
            return int(row["completions"])

    # ------------------------------------------------------------------
    # Claim table
    # ------------------------------------------------------------------

    def get_claim_for(self, reviewer: str, event: str) -> Claim | None:
        """Return the claim *reviewer* holds for *event*, expired or not."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM claims WHERE reviewer = ? AND event = ?",
                (reviewer, event),
            ).fetchone()
            return Claim(**dict(row)) if row is not None else None

    def find_claim(
        self, claim_id: str, reviewer: str, unit: str, event: str
    ) -> Claim | None:
        """Return the claim matching the full (id, reviewer, unit, event) tuple."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM claims "
                "WHERE claim_id = ? AND reviewer = ? AND unit = ? AND event = ?",
                (claim_id, reviewer, unit, event),
            ).fetchone()
            return Claim(**dict(row)) if row is not None else None

    def list_claims(self, event: str | None = None) -> list[Claim]:
        """Return outstanding claims, optionally restricted to one event."""
        with self._lock:
            if event is None:
                rows = self._conn.execute(
                    "SELECT * FROM claims ORDER BY event, unit"
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM claims WHERE event = ? ORDER BY unit",
                    (event,),
                ).fetchall()
            return [Claim(**dict(row)) for row in rows]

    def claimed_units(self, event: str) -> set[str]:
        """Return the units currently claimed by any reviewer for *event*."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT unit FROM claims WHERE event = ?", (event,)
            ).fetchall()
            return {row["unit"] for row in rows}

    def insert_claim(self, claim: Claim) -> Claim:
        """Persist a new claim.

        Raises
        ------
        DuplicateClaimError
            If the reviewer already holds a claim for the event, or the unit is
            already claimed within the event.
        """
        with self.transaction():
            try:
                self._conn.execute(
                    "INSERT INTO claims (claim_id, reviewer, event, unit, start_time) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (
                        claim.claim_id,
                        claim.reviewer,
                        claim.event,
                        claim.unit,
                        claim.start_time.isoformat(),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateClaimError(
                    f"Claim on unit {claim.unit!r} for reviewer {claim.reviewer!r} "
                    f"in event {claim.event!r} conflicts with an existing claim"
                ) from exc
        return claim

    def delete_claim(self, claim_id: str) -> bool:
        """Delete a claim by id; returns ``True`` if a row was removed."""
        with self.transaction():
            cur = self._conn.execute(
                "DELETE FROM claims WHERE claim_id = ?", (claim_id,)
            )
            return cur.rowcount == 1

    # ------------------------------------------------------------------
    # Exception logs
    # ------------------------------------------------------------------

    def append_skip(
        self, reviewer: str, unit: str, event: str, timestamp: datetime
    ) -> SkipRecord:
        """Append a skip record."""
        record = SkipRecord(
            skip_id=_new_id("skip"),
            reviewer=reviewer,
            unit=unit,
            event=event,
            timestamp=as_utc(timestamp),
        )
        with self.transaction():
            self._conn.execute(
                "INSERT INTO skips (skip_id, reviewer, unit, event, timestamp) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    record.skip_id,
                    record.reviewer,
                    record.unit,
                    record.event,
                    record.timestamp.isoformat(),
                ),
            )
        return record

    def append_flag(
        self,
        reviewer: str,
        unit: str,
        event: str,
        timestamp: datetime,
        reason: str | None = None,
    ) -> FlagRecord:
        """Append a flag record with the reviewer's optional reason."""
        record = FlagRecord(
            flag_id=_new_id("flag"),
            reviewer=reviewer,
            unit=unit,
            event=event,
            timestamp=as_utc(timestamp),
            reason=reason,
        )
        with self.transaction():
            self._conn.execute(
                "INSERT INTO flags (flag_id, reviewer, unit, event, timestamp, reason) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    record.flag_id,
                    record.reviewer,
                    record.unit,
                    record.event,
                    record.timestamp.isoformat(),
                    record.reason,
                ),
            )
        return record

    def skip_counts(self, event: str) -> list[SkipStats]:
        """Return the number of skips per reviewer in *event*, by reviewer id."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT reviewer, COUNT(*) AS skip_count FROM skips "
                "WHERE event = ? GROUP BY reviewer ORDER BY reviewer",
                (event,),
            ).fetchall()
            return [SkipStats(**dict(row)) for row in rows]

    def list_flags(self, reviewer: str, event: str) -> list[FlagRecord]:
        """Return the flags *reviewer* raised in *event*, newest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM flags WHERE reviewer = ? AND event = ? "
                "ORDER BY timestamp DESC, flag_id",
                (reviewer, event),
            ).fetchall()
            return [FlagRecord(**dict(row)) for row in rows]

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _open_connection(db_path: Path) -> sqlite3.Connection:
        """Open a SQLite connection in autocommit mode and configure pragmas.

        Parameters
        ----------
        db_path:
            Path (or ``:memory:``) for the SQLite database.

        Returns
        -------
        sqlite3.Connection
            A connection with ``row_factory = sqlite3.Row`` that may be used
            from any thread (access is serialised by the store lock).
        """
        conn = sqlite3.connect(
            str(db_path), isolation_level=None, check_same_thread=False
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA busy_timeout = 5000")
        return conn

    def _init_schema(self) -> None:
        """Create the database tables and indexes if they do not exist."""
        with self.transaction():
            cur = self._conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS status_records (
                    unit TEXT NOT NULL,
                    event TEXT NOT NULL,
                    completions INTEGER NOT NULL DEFAULT 0
                        CHECK(completions >= 0),
                    PRIMARY KEY (unit, event)
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS status_readers (
                    unit TEXT NOT NULL,
                    event TEXT NOT NULL,
                    reviewer TEXT NOT NULL,
                    PRIMARY KEY (unit, event, reviewer)
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS claims (
                    claim_id TEXT PRIMARY KEY,
                    reviewer TEXT NOT NULL,
                    event TEXT NOT NULL,
                    unit TEXT NOT NULL,
                    start_time TIMESTAMP NOT NULL,
                    UNIQUE (reviewer, event),
                    UNIQUE (event, unit)
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS skips (
                    skip_id TEXT PRIMARY KEY,
                    reviewer TEXT NOT NULL,
                    unit TEXT NOT NULL,
                    event TEXT NOT NULL,
                    timestamp TIMESTAMP NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS flags (
                    flag_id TEXT PRIMARY KEY,
                    reviewer TEXT NOT NULL,
                    unit TEXT NOT NULL,
                    event TEXT NOT NULL,
                    timestamp TIMESTAMP NOT NULL,
                    reason TEXT
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_status_records_event "
                "ON status_records(event, completions, unit)"
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_skips_event ON skips(event)"
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_flags_reviewer_event "
                "ON flags(reviewer, event)"
            )

    def _status_from_row(self, row: sqlite3.Row) -> StatusRecord:
        readers = self._conn.execute(
            "SELECT reviewer FROM status_readers WHERE unit = ? AND event = ?",
            (row["unit"], row["event"]),
        ).fetchall()
        return StatusRecord(
            unit=row["unit"],
            event=row["event"],
            completions=row["completions"],
            consumed_by=frozenset(r["reviewer"] for r in readers),
        )
