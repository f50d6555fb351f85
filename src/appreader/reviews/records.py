"""Review-content collaborator for the AppReader allocation engine.

The allocation engine does not own review content (scores, red flags, review
timing); it only needs a narrow view of it, captured by the
:class:`ReviewContent` protocol:

- whether a reviewer already reviewed a unit (the drift check run during
  selection),
- creating the minimal review a submission or flag records,
- adding a red flag to a review,
- deleting a review together with its flags and scores,
- listing the reviewers of a unit (used to repair ``consumed_by`` sets).

:class:`ReviewStore` is the SQLite-backed implementation shipped with the
package.  Any object satisfying :class:`ReviewContent` can be injected into
the engine instead.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel

from appreader.store.assignments import as_utc

logger = logging.getLogger(__name__)


class ReviewContentError(RuntimeError):
    """Raised when the review-content store refuses or fails an operation."""


class Review(BaseModel):
    """Minimal review content authored by a reviewer for one unit.

    Attributes
    ----------
    review_id:
        Unique identifier (``"review-{hex}"``).
    author:
        The reviewer who wrote the review.
    unit:
        The reviewed unit.
    submitted_at:
        When the review was recorded (UTC).
    active_time:
        Seconds the reviewer actively spent on the unit, if reported.
    """

    review_id: str
    author: str
    unit: str
    submitted_at: datetime
    active_time: float | None = None


@runtime_checkable
class ReviewContent(Protocol):
    """The slice of the review-content store the allocation engine consumes."""

    def has_reviewed(self, reviewer: str, unit: str) -> bool: ...

    def find_review(self, reviewer: str, unit: str) -> str | None: ...

    def create_review(
        self,
        reviewer: str,
        unit: str,
        timestamp: datetime,
        active_time: float | None = None,
    ) -> str: ...

    def add_flag(self, reviewer: str, review_id: str) -> str: ...

    def delete_review_cascade(self, review_id: str) -> None: ...

    def list_reviewers(self, unit: str) -> list[str]: ...


class ReviewStore:
    """SQLite storage for reviews, their red flags and their scores.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Pass ``Path(":memory:")`` for
        tests.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    # ------------------------------------------------------------------
    # ReviewContent protocol
    # ------------------------------------------------------------------

    def find_review(self, reviewer: str, unit: str) -> str | None:
        """Return the id of *reviewer*'s review of *unit*, or ``None``."""
        with self._lock:
            row = self._conn.execute(
                "SELECT review_id FROM reviews WHERE author = ? AND unit = ?",
                (reviewer, unit),
            ).fetchone()
        return row["review_id"] if row is not None else None

    def has_reviewed(self, reviewer: str, unit: str) -> bool:
        """Return ``True`` if *reviewer* has review content for *unit*."""
        return self.find_review(reviewer, unit) is not None

    def create_review(
        self,
        reviewer: str,
        unit: str,
        timestamp: datetime,
        active_time: float | None = None,
    ) -> str:
        """Create a review of *unit* authored by *reviewer*.

        Parameters
        ----------
        reviewer:
            The review author.
        unit:
            The reviewed unit.
        timestamp:
            Submission time; naive values are taken as UTC.
        active_time:
            Seconds of active review time, if known.

        Returns
        -------
        str
            The new ``review_id``.

        Raises
        ------
        ReviewContentError
            If the reviewer already has a review for the unit, or
            *active_time* is negative.
        """
        if active_time is not None and active_time < 0:
            raise ReviewContentError(
                f"active_time must be non-negative, got {active_time!r}"
            )
        review_id = f"review-{uuid.uuid4().hex}"
        with self._lock:
            try:
                self._conn.execute(
                    "INSERT INTO reviews (review_id, author, unit, submitted_at, active_time) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (review_id, reviewer, unit, as_utc(timestamp).isoformat(), active_time),
                )
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                raise ReviewContentError(
                    f"Author {reviewer!r} has already submitted a review for unit {unit!r}"
                ) from exc
            self._conn.commit()
        return review_id

    def add_flag(self, reviewer: str, review_id: str) -> str:
        """Add *reviewer*'s red flag to their own review.

        Returns
        -------
        str
            The new flag id.

        Raises
        ------
        ReviewContentError
            If the review does not exist, is authored by someone else, or
            already carries this reviewer's flag.
        """
        with self._lock:
            review = self.get_review(review_id)
            if review is None:
                raise ReviewContentError(f"Review {review_id!r} not found")
            if review.author != reviewer:
                raise ReviewContentError(
                    "Only the author of the review can add a red flag to it"
                )
            flag_id = f"redflag-{uuid.uuid4().hex}"
            try:
                self._conn.execute(
                    "INSERT INTO red_flags (flag_id, review_id, author) VALUES (?, ?, ?)",
                    (flag_id, review_id, reviewer),
                )
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                raise ReviewContentError(
                    f"Author {reviewer!r} has already flagged review {review_id!r}"
                ) from exc
            self._conn.commit()
        return flag_id

    def delete_review_cascade(self, review_id: str) -> None:
        """Delete a review together with its red flags and scores.

        Deleting a review that does not exist is a no-op.
        """
        with self._lock:
            self._conn.execute("DELETE FROM red_flags WHERE review_id = ?", (review_id,))
            self._conn.execute("DELETE FROM scores WHERE review_id = ?", (review_id,))
            cur = self._conn.execute("DELETE FROM reviews WHERE review_id = ?", (review_id,))
            self._conn.commit()
        if cur.rowcount:
            logger.info("Deleted review %s with its flags and scores", review_id)

    def list_reviewers(self, unit: str) -> list[str]:
        """Return the authors of every review of *unit*, sorted."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT DISTINCT author FROM reviews WHERE unit = ? ORDER BY author",
                (unit,),
            ).fetchall()
        return [row["author"] for row in rows]

    # ------------------------------------------------------------------
    # Additional queries
    # ------------------------------------------------------------------

    def get_review(self, review_id: str) -> Review | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM reviews WHERE review_id = ?", (review_id,)
            ).fetchone()
        return Review(**dict(row)) if row is not None else None

    def has_flagged(self, reviewer: str, unit: str) -> bool:
        """Return ``True`` if *reviewer* flagged their review of *unit*."""
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM red_flags AS f JOIN reviews AS r ON r.review_id = f.review_id "
                "WHERE f.author = ? AND r.unit = ?",
                (reviewer, unit),
            ).fetchone()
        return row is not None

    def set_score(self, reviewer: str, review_id: str, criterion: str, value: float) -> str:
        """Set (insert or overwrite) one criterion score on the reviewer's review.

        Scores are owned by the review form, not the engine; they are kept here
        so that :meth:`delete_review_cascade` has dependent rows to remove.

        Returns the unit the review is for.

        Raises
        ------
        ReviewContentError
            If the review does not exist or belongs to someone else.
        """
        with self._lock:
            review = self.get_review(review_id)
            if review is None:
                raise ReviewContentError(f"Review {review_id!r} not found")
            if review.author != reviewer:
                raise ReviewContentError("Only the author of the review can set its scores")
            self._conn.execute(
                """
                INSERT INTO scores (score_id, review_id, criterion, value)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(review_id, criterion) DO UPDATE SET value = excluded.value
                """,
                (f"score-{uuid.uuid4().hex}", review_id, criterion, value),
            )
            self._conn.commit()
        return review.unit

    def count_scores(self, review_id: str) -> int:
        """Return the number of scores on *review_id*; used to check the cascade."""
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM scores WHERE review_id = ?", (review_id,)
            ).fetchone()
        return int(row[0])

    def ping(self) -> bool:
        """Return ``True`` if the database answers a trivial query."""
        try:
            with self._lock:
                self._conn.execute("SELECT 1")
            return True
        except sqlite3.Error:
            return False

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _init_schema(self) -> None:
        """Create the reviews, red_flags and scores tables if needed."""
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS reviews (
                    review_id TEXT PRIMARY KEY,
                    author TEXT NOT NULL,
                    unit TEXT NOT NULL,
                    submitted_at TIMESTAMP NOT NULL,
                    active_time REAL,
                    UNIQUE (author, unit)
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS red_flags (
                    flag_id TEXT PRIMARY KEY,
                    review_id TEXT NOT NULL,
                    author TEXT NOT NULL,
                    UNIQUE (review_id, author),
                    FOREIGN KEY (review_id) REFERENCES reviews(review_id)
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS scores (
                    score_id TEXT PRIMARY KEY,
                    review_id TEXT NOT NULL,
                    criterion TEXT NOT NULL,
                    value REAL NOT NULL,
                    UNIQUE (review_id, criterion),
                    FOREIGN KEY (review_id) REFERENCES reviews(review_id)
                )
                """
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_reviews_unit ON reviews(unit)")
            self._conn.commit()
