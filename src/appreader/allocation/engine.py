"""Allocation engine: hands out one unit at a time per reviewer per event.

This module implements :class:`AllocationEngine` and the exceptions it
raises.  The engine is the only writer of the status ledger and the claim
table (both held by :class:`~appreader.store.assignments.AssignmentStore`) and
reads review content through the
:class:`~appreader.reviews.records.ReviewContent` protocol.

Selection (``get_next_assignment``)
-----------------------------------
1. A claim the reviewer already holds for the event is returned unchanged,
   unless it is older than the expiry window, in which case it is deleted.
2. Stale claims of other reviewers in the event are expired, then every unit
   still claimed in the event is excluded.
3. Candidates are the event's status records the reviewer has not consumed.
4. Candidates the reviewer already has review content for are excluded and
   the reviewer is added to their ``consumed_by`` set (the two stores can
   disagree after a partial failure; selection repairs the ledger as it goes).
5. Candidates are ordered by ``completions`` ascending, then unit id.
6. The first candidate is claimed; with none left, :exc:`NoEligibleUnitError`
   is raised and no claim is created.

Steps 1-6 run inside one ``BEGIN IMMEDIATE`` transaction.  The claim table's
``UNIQUE(event, unit)`` and ``UNIQUE(reviewer, event)`` constraints back this
up across processes: a rejected insert is retried with a fresh selection up
to ``max_claim_retries`` times before :exc:`ClaimConflictError` is raised.

Terminal actions
----------------
``submit``, ``skip`` and ``flag_and_skip`` require a live claim matching the
full (claim id, reviewer, unit, event) tuple; ``abandon`` takes the live claim
of (reviewer, event).  Each action commits its ledger and claim changes in one
transaction.  Review content created during a failed action is deleted again
with ``delete_review_cascade``.  Every review-store failure surfaces as
:exc:`ReviewRecordingError`.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from appreader.reviews.records import ReviewContent, ReviewContentError
from appreader.store.assignments import (
    AssignmentStore,
    Claim,
    DuplicateClaimError,
    FlagRecord,
    SkipStats,
    StatusRecord,
    as_utc,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Age after which an unfinished claim is treated as abandoned.
DEFAULT_CLAIM_TTL: timedelta = timedelta(hours=12)

#: Selection attempts made when a claim insert loses a uniqueness race.
DEFAULT_MAX_CLAIM_RETRIES: int = 3


# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------


class AllocationError(RuntimeError):
    """Base class for every error raised by :class:`AllocationEngine`."""


class NoEligibleUnitError(AllocationError):
    """Raised when no unit can be assigned to the reviewer.

    Every unit of the event has been consumed by the reviewer or is currently
    claimed by another reviewer.  This is an expected outcome, not a fault.
    """

    def __init__(self, message: str = "no eligible unit") -> None:
        super().__init__(message)


class ClaimNotOwnedError(AllocationError):
    """Raised when a claim is not live or does not belong to the reviewer."""

    def __init__(self, message: str = "claim invalid or not owned by reviewer") -> None:
        super().__init__(message)


class NoActiveClaimError(AllocationError):
    """Raised by :meth:`AllocationEngine.abandon` when there is nothing to abandon."""

    def __init__(self, message: str = "no active claim") -> None:
        super().__init__(message)


class ClaimConflictError(AllocationError):
    """Raised when every selection attempt lost a claim-table uniqueness race."""


class ReviewRecordingError(AllocationError):
    """Raised when the review-content store fails during an engine operation.

    The underlying :exc:`~appreader.reviews.records.ReviewContentError` or
    :exc:`sqlite3.Error` is available as ``__cause__``.  No ledger or claim
    change is committed, except where a method documents otherwise.
    """


# ---------------------------------------------------------------------------
# AllocationEngine
# ---------------------------------------------------------------------------


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AllocationEngine:
    """Assigns units to reviewers fairly and tracks their claims.

    Parameters
    ----------
    store:
        The status ledger / claim table store.
    reviews:
        The review-content collaborator.
    claim_ttl:
        Age after which a claim expires.  Defaults to 12 hours.
    max_claim_retries:
        Selection attempts on claim-insert conflicts.  Must be at least 1.
    clock:
        Zero-argument callable returning the current time.  Injectable for
        tests; defaults to ``datetime.now(timezone.utc)``.
    """

    def __init__(
        self,
        store: AssignmentStore,
        reviews: ReviewContent,
        claim_ttl: timedelta = DEFAULT_CLAIM_TTL,
        max_claim_retries: int = DEFAULT_MAX_CLAIM_RETRIES,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if max_claim_retries < 1:
            raise ValueError(
                f"max_claim_retries must be at least 1, got {max_claim_retries!r}"
            )
        self._store = store
        self._reviews = reviews
        self._claim_ttl = claim_ttl
        self._max_claim_retries = max_claim_retries
        self._clock: Callable[[], datetime] = clock if clock is not None else _utc_now

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, unit: str, event: str) -> None:
        """Make *unit* assignable within *event*.  Idempotent; never fails."""
        if self._store.register(unit, event):
            logger.info("Registered unit %s for event %s", unit, event)

    def register_many(self, units: list[str], event: str) -> int:
        """Register several units for *event* in one transaction.

        Returns
        -------
        int
            The number of units that were not registered before.
        """
        created = 0
        with self._store.transaction():
            for unit in units:
                if self._store.register(unit, event):
                    created += 1
        logger.info("Registered %d new unit(s) for event %s", created, event)
        return created

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def get_next_assignment(
        self, reviewer: str, event: str, start_time: datetime
    ) -> Claim:
        """Return the reviewer's claim for *event*, creating one if needed.

        A live claim the reviewer already holds is returned as-is, so asking
        twice without a terminal action yields the same claim.

        Parameters
        ----------
        reviewer:
            The requesting reviewer.
        event:
            The event to draw a unit from.
        start_time:
            Start time recorded on a newly created claim.

        Returns
        -------
        Claim
            The existing live claim or the newly created one.

        Raises
        ------
        NoEligibleUnitError
            If every unit is consumed by the reviewer or claimed by others.
        ClaimConflictError
            If every attempt to insert the claim hit a uniqueness conflict.
        ReviewRecordingError
            If the review store failed during the drift check.
        """
        for attempt in range(1, self._max_claim_retries + 1):
            with self._store.transaction():
                current = self._live_claim(reviewer, event)
                if current is not None:
                    return current

                unit = self._select_unit(reviewer, event)
                if unit is None:
                    # Leave the block normally so expirations and ledger
                    # repairs made during selection are committed.
                    claim = None
                else:
                    claim = Claim(
                        claim_id=f"claim-{uuid.uuid4().hex}",
                        reviewer=reviewer,
                        event=event,
                        unit=unit,
                        start_time=start_time,
                    )
                    try:
                        self._store.insert_claim(claim)
                    except DuplicateClaimError:
                        logger.debug(
                            "Claim insert conflict for reviewer %s in event %s "
                            "(attempt %d of %d)",
                            reviewer,
                            event,
                            attempt,
                            self._max_claim_retries,
                        )
                        continue
            if claim is None:
                raise NoEligibleUnitError()
            logger.info(
                "Assigned unit %s to reviewer %s for event %s (claim %s)",
                claim.unit,
                reviewer,
                event,
                claim.claim_id,
            )
            return claim

        raise ClaimConflictError(
            f"Could not claim a unit for reviewer {reviewer!r} in event {event!r} "
            f"after {self._max_claim_retries} attempt(s)"
        )

    def get_current(self, reviewer: str, event: str) -> Claim | None:
        """Return the reviewer's live claim for *event*, or ``None``.

        An expired claim is deleted and ``None`` is returned.
        """
        with self._store.transaction():
            return self._live_claim(reviewer, event)

    # ------------------------------------------------------------------
    # Terminal actions
    # ------------------------------------------------------------------

    def submit(
        self,
        reviewer: str,
        claim: Claim,
        end_time: datetime,
        active_time: float | None = None,
    ) -> str:
        """Complete a claim: count the read and release the unit.

        When *active_time* is given and the reviewer has no review of the unit
        yet, a review is recorded first with ``end_time`` and ``active_time``.

        Returns
        -------
        str
            The submitted unit id.

        Raises
        ------
        ClaimNotOwnedError
            If the claim is not live or not the reviewer's.
        ReviewRecordingError
            If the review store failed.  Nothing is changed.
        """
        created_review: str | None = None
        try:
            with self._store.transaction():
                live = self._require_owned_claim(reviewer, claim)
                if active_time is not None:
                    with self._review_call("record review"):
                        if not self._reviews.has_reviewed(reviewer, live.unit):
                            created_review = self._reviews.create_review(
                                reviewer, live.unit, end_time, active_time
                            )
                completions = self._store.increment_completions(live.unit, live.event)
                self._store.add_reader(live.unit, live.event, reviewer)
                self._store.delete_claim(live.claim_id)
        except Exception:
            if created_review is not None:
                with self._review_call("remove review"):
                    self._reviews.delete_review_cascade(created_review)
            raise

        logger.info(
            "Reviewer %s submitted unit %s for event %s (completions=%d)",
            reviewer,
            live.unit,
            live.event,
            completions,
        )
        return live.unit

    def skip(self, reviewer: str, claim: Claim) -> None:
        """Decline a claim; the unit is never offered to this reviewer again.

        ``completions`` is unchanged and a skip record is appended.  Review
        content the reviewer already holds for the unit is deleted once the
        skip has been committed.

        Raises
        ------
        ClaimNotOwnedError
            If the claim is not live or not the reviewer's.
        ReviewRecordingError
            If the review store failed.  A failure while deleting the stray
            review is raised after the skip itself was recorded.
        """
        with self._store.transaction():
            live = self._require_owned_claim(reviewer, claim)
            with self._review_call("look up review"):
                stray_review = self._reviews.find_review(reviewer, live.unit)
            self._store.add_reader(live.unit, live.event, reviewer)
            self._store.append_skip(reviewer, live.unit, live.event, self._clock())
            self._store.delete_claim(live.claim_id)
        if stray_review is not None:
            with self._review_call("delete stray review"):
                self._reviews.delete_review_cascade(stray_review)
        logger.info(
            "Reviewer %s skipped unit %s for event %s", reviewer, live.unit, live.event
        )

    def abandon(self, reviewer: str, event: str) -> None:
        """Drop the reviewer's claim for *event* without any accounting.

        An expired claim is purged as usual and counts as no claim.

        Raises
        ------
        NoActiveClaimError
            If the reviewer holds no live claim for the event.
        """
        with self._store.transaction():
            current = self._live_claim(reviewer, event)
            if current is not None:
                self._store.delete_claim(current.claim_id)
        if current is None:
            raise NoActiveClaimError()
        logger.info(
            "Reviewer %s abandoned unit %s for event %s", reviewer, current.unit, event
        )

    def flag_and_skip(
        self, reviewer: str, claim: Claim, reason: str | None = None
    ) -> None:
        """Flag the claimed unit for someone else's attention and move on.

        A minimal review (``active_time=0``) is recorded, or the reviewer's
        existing review reused, and a red flag added to it.  The reviewer is
        added to ``consumed_by`` and a flag record with *reason* is appended.
        No skip record is written.

        Raises
        ------
        ClaimNotOwnedError
            If the claim is not live or not the reviewer's.
        ReviewRecordingError
            If the review or the flag could not be recorded.  Nothing is
            changed.
        """
        created_review: str | None = None
        now = self._clock()
        try:
            with self._store.transaction():
                live = self._require_owned_claim(reviewer, claim)
                with self._review_call("record red flag"):
                    review_id = self._reviews.find_review(reviewer, live.unit)
                    if review_id is None:
                        review_id = created_review = self._reviews.create_review(
                            reviewer, live.unit, now, 0
                        )
                    self._reviews.add_flag(reviewer, review_id)
                self._store.add_reader(live.unit, live.event, reviewer)
                self._store.append_flag(reviewer, live.unit, live.event, now, reason)
                self._store.delete_claim(live.claim_id)
        except Exception:
            if created_review is not None:
                with self._review_call("remove review"):
                    self._reviews.delete_review_cascade(created_review)
            raise

        logger.info(
            "Reviewer %s flagged unit %s for event %s", reviewer, live.unit, live.event
        )

    # ------------------------------------------------------------------
    # Reporting and maintenance
    # ------------------------------------------------------------------

    def get_status(self, unit: str, event: str) -> StatusRecord | None:
        return self._store.get_status(unit, event)

    def list_status(self, event: str) -> list[StatusRecord]:
        return self._store.list_status(event)

    def get_skip_stats(self, event: str) -> list[SkipStats]:
        """Return skip counts per reviewer for *event*.  Flags are not counted."""
        return self._store.skip_counts(event)

    def get_flagged_units(self, reviewer: str, event: str) -> list[FlagRecord]:
        """Return the flags *reviewer* raised in *event*, newest first."""
        return self._store.list_flags(reviewer, event)

    def expire_stale_claims(self, event: str | None = None) -> int:
        """Delete every expired claim, optionally within one event.

        Returns
        -------
        int
            The number of claims removed.
        """
        with self._store.transaction():
            return self._expire_claims(self._store.list_claims(event))

    def reconcile_consumed(self, event: str) -> int:
        """Add reviewers who already reviewed a unit to its ``consumed_by`` set.

        Repairs status records that fell out of step with the review-content
        store.  Running it again finds nothing to do.

        Returns
        -------
        int
            The number of (unit, reviewer) pairs added.
        """
        added = 0
        with self._store.transaction():
            for record in self._store.list_status(event):
                for reviewer in self._reviews.list_reviewers(record.unit):
                    if reviewer in record.consumed_by:
                        continue
                    if self._store.add_reader(record.unit, event, reviewer):
                        added += 1
                        logger.info(
                            "Added reviewer %s to consumed_by of unit %s in event %s",
                            reviewer,
                            record.unit,
                            event,
                        )
        return added

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _is_expired(self, claim: Claim) -> bool:
        return as_utc(self._clock()) - claim.start_time > self._claim_ttl

    def _expire_claims(self, claims: list[Claim]) -> int:
        removed = 0
        for claim in claims:
            if self._is_expired(claim) and self._store.delete_claim(claim.claim_id):
                removed += 1
                logger.warning(
                    "Expired claim %s of reviewer %s on unit %s in event %s "
                    "(started %s)",
                    claim.claim_id,
                    claim.reviewer,
                    claim.unit,
                    claim.event,
                    claim.start_time.isoformat(),
                )
        return removed

    def _live_claim(self, reviewer: str, event: str) -> Claim | None:
        """Return the reviewer's claim for *event*, deleting it if expired.

        Must be called inside a store transaction.
        """
        current = self._store.get_claim_for(reviewer, event)
        if current is None:
            return None
        if self._expire_claims([current]):
            return None
        return current

    def _select_unit(self, reviewer: str, event: str) -> str | None:
        """Pick the fewest-completions unit the reviewer may take, or ``None``.

        Must be called inside a store transaction.
        """
        self._expire_claims(self._store.list_claims(event))
        in_flight = self._store.claimed_units(event)

        for record in self._store.list_unconsumed(event, reviewer):
            if record.unit in in_flight:
                continue
            with self._review_call("check review content"):
                reviewed = self._reviews.has_reviewed(reviewer, record.unit)
            if reviewed:
                logger.warning(
                    "Reviewer %s has review content for unit %s but is missing "
                    "from its consumed_by set in event %s; excluding it",
                    reviewer,
                    record.unit,
                    event,
                )
                self._store.add_reader(record.unit, event, reviewer)
                continue
            return record.unit
        return None

    def _require_owned_claim(self, reviewer: str, claim: Claim) -> Claim:
        """Return the stored claim matching *claim* and *reviewer* if it is live.

        Raises
        ------
        ClaimNotOwnedError
            If no such claim exists or it has expired.
        """
        found = self._store.find_claim(claim.claim_id, reviewer, claim.unit, claim.event)
        if found is None or self._is_expired(found):
            raise ClaimNotOwnedError()
        return found

    @contextmanager
    def _review_call(self, action: str) -> Iterator[None]:
        """Re-raise review-store failures in the block as :exc:`ReviewRecordingError`."""
        try:
            yield
        except (ReviewContentError, sqlite3.Error) as exc:
            raise ReviewRecordingError(f"Failed to {action}: {exc}") from exc
