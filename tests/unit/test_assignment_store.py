"""Tests for AssignmentStore and the status / claim models.

Covers:
    - schema: tables and the two claim-table uniqueness constraints
    - register is idempotent and starts completions at zero
    - consumed_by has set semantics
    - list_unconsumed ordering (completions, then unit id) and exclusion
    - increment_completions on a missing record raises LookupError
    - transaction() commits on success, rolls back on error, and nests
    - claim timestamps round-trip as aware UTC datetimes
    - skip counts per reviewer and flag listing order
    - data survives reopening a file-backed database

All database operations use in-memory SQLite (:memory:) unless a test needs a
file, in which case pytest's ``tmp_path`` is used.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from pydantic import ValidationError

from appreader.store.assignments import (
    AssignmentStore,
    Claim,
    DuplicateClaimError,
    StatusRecord,
    as_utc,
)

# ---------------------------------------------------------------------------
# Fixtures and helpers
# ---------------------------------------------------------------------------

T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
EVENT = "fall-2025"


def _make_store() -> AssignmentStore:
    """Return a fresh in-memory AssignmentStore."""
    return AssignmentStore(db_path=Path(":memory:"))


def _make_claim(
    claim_id: str = "claim-001",
    reviewer: str = "alice",
    event: str = EVENT,
    unit: str = "app-1",
    start_time: datetime = T0,
) -> Claim:
    """Construct a valid Claim for tests."""
    return Claim(
        claim_id=claim_id,
        reviewer=reviewer,
        event=event,
        unit=unit,
        start_time=start_time,
    )


def _table_names(store: AssignmentStore) -> set[str]:
    rows = store._conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table'"
    ).fetchall()
    return {row["name"] for row in rows}


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class TestSchema:
    def test_tables_created(self) -> None:
        store = _make_store()
        assert {"status_records", "status_readers", "claims", "skips", "flags"} <= _table_names(
            store
        )

    def test_reopening_schema_is_idempotent(self, tmp_path: Path) -> None:
        db = tmp_path / "assignments.db"
        AssignmentStore(db).close()
        store = AssignmentStore(db)
        assert store.ping() is True

    def test_ping_false_after_close(self) -> None:
        store = _make_store()
        store.close()
        assert store.ping() is False


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class TestModels:
    def test_claim_rejects_empty_identifiers(self) -> None:
        with pytest.raises(ValidationError):
            _make_claim(reviewer="  ")

    def test_claim_naive_start_time_becomes_utc(self) -> None:
        claim = _make_claim(start_time=datetime(2025, 3, 1, 9, 0))
        assert claim.start_time.tzinfo is timezone.utc
        assert claim.start_time == T0

    def test_claim_offset_start_time_converted_to_utc(self) -> None:
        offset = timezone(timedelta(hours=2))
        claim = _make_claim(start_time=datetime(2025, 3, 1, 11, 0, tzinfo=offset))
        assert claim.start_time == T0
        assert claim.start_time.utcoffset() == timedelta(0)

    def test_status_record_rejects_negative_completions(self) -> None:
        with pytest.raises(ValidationError):
            StatusRecord(unit="app-1", event=EVENT, completions=-1)

    def test_as_utc_naive(self) -> None:
        assert as_utc(datetime(2025, 3, 1, 9, 0)) == T0


# ---------------------------------------------------------------------------
# Status ledger
# ---------------------------------------------------------------------------


class TestStatusLedger:
    def test_register_creates_record_with_zero_completions(self) -> None:
        store = _make_store()
        assert store.register("app-1", EVENT) is True
        record = store.get_status("app-1", EVENT)
        assert record == StatusRecord(unit="app-1", event=EVENT)

    def test_register_is_idempotent(self) -> None:
        store = _make_store()
        store.register("app-1", EVENT)
        store.increment_completions("app-1", EVENT)
        assert store.register("app-1", EVENT) is False
        record = store.get_status("app-1", EVENT)
        assert record is not None
        assert record.completions == 1

    def test_same_unit_in_two_events_is_independent(self) -> None:
        store = _make_store()
        store.register("app-1", EVENT)
        store.register("app-1", "spring-2026")
        store.increment_completions("app-1", EVENT)
        other = store.get_status("app-1", "spring-2026")
        assert other is not None
        assert other.completions == 0

    def test_get_status_missing_returns_none(self) -> None:
        assert _make_store().get_status("nope", EVENT) is None

    def test_add_reader_has_set_semantics(self) -> None:
        store = _make_store()
        store.register("app-1", EVENT)
        assert store.add_reader("app-1", EVENT, "alice") is True
        assert store.add_reader("app-1", EVENT, "alice") is False
        store.add_reader("app-1", EVENT, "bob")
        record = store.get_status("app-1", EVENT)
        assert record is not None
        assert record.consumed_by == frozenset({"alice", "bob"})

    def test_increment_missing_record_raises_lookup_error(self) -> None:
        with pytest.raises(LookupError):
            _make_store().increment_completions("ghost", EVENT)

    def test_increment_returns_new_count(self) -> None:
        store = _make_store()
        store.register("app-1", EVENT)
        assert store.increment_completions("app-1", EVENT) == 1
        assert store.increment_completions("app-1", EVENT) == 2

    def test_list_status_ordered_by_unit(self) -> None:
        store = _make_store()
        for unit in ("app-3", "app-1", "app-2"):
            store.register(unit, EVENT)
        store.register("app-9", "other-event")
        assert [r.unit for r in store.list_status(EVENT)] == ["app-1", "app-2", "app-3"]

    def test_list_unconsumed_orders_by_completions_then_unit(self) -> None:
        store = _make_store()
        for unit in ("app-b", "app-a", "app-c"):
            store.register(unit, EVENT)
        store.increment_completions("app-a", EVENT)
        result = store.list_unconsumed(EVENT, "alice")
        assert [r.unit for r in result] == ["app-b", "app-c", "app-a"]

    def test_list_unconsumed_excludes_reviewers_own_units_only(self) -> None:
        store = _make_store()
        store.register("app-1", EVENT)
        store.register("app-2", EVENT)
        store.add_reader("app-1", EVENT, "alice")
        assert [r.unit for r in store.list_unconsumed(EVENT, "alice")] == ["app-2"]
        assert [r.unit for r in store.list_unconsumed(EVENT, "bob")] == ["app-1", "app-2"]


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class TestTransaction:
    def test_rollback_on_exception(self) -> None:
        store = _make_store()
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.register("app-1", EVENT)
                store.add_reader("app-1", EVENT, "alice")
                raise RuntimeError("boom")
        assert store.get_status("app-1", EVENT) is None

    def test_nested_blocks_commit_together(self) -> None:
        store = _make_store()
        with store.transaction():
            store.register("app-1", EVENT)
            with store.transaction():
                store.register("app-2", EVENT)
        assert len(store.list_status(EVENT)) == 2

    def test_inner_failure_rolls_back_outer_work(self) -> None:
        store = _make_store()
        with pytest.raises(LookupError):
            with store.transaction():
                store.register("app-1", EVENT)
                store.increment_completions("ghost", EVENT)
        assert store.list_status(EVENT) == []

    def test_store_usable_after_rollback(self) -> None:
        store = _make_store()
        with pytest.raises(ValueError):
            with store.transaction():
                raise ValueError("nothing written")
        assert store.register("app-1", EVENT) is True


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------


class TestClaims:
    def test_insert_and_get_claim_for(self) -> None:
        store = _make_store()
        claim = _make_claim()
        store.insert_claim(claim)
        assert store.get_claim_for("alice", EVENT) == claim

    def test_start_time_round_trips_as_utc(self) -> None:
        store = _make_store()
        store.insert_claim(_make_claim())
        loaded = store.get_claim_for("alice", EVENT)
        assert loaded is not None
        assert loaded.start_time == T0
        assert loaded.start_time.utcoffset() == timedelta(0)

    def test_second_claim_for_same_reviewer_and_event_rejected(self) -> None:
        store = _make_store()
        store.insert_claim(_make_claim())
        with pytest.raises(DuplicateClaimError):
            store.insert_claim(_make_claim(claim_id="claim-002", unit="app-2"))

    def test_same_unit_claimed_twice_in_event_rejected(self) -> None:
        store = _make_store()
        store.insert_claim(_make_claim())
        with pytest.raises(DuplicateClaimError) as exc_info:
            store.insert_claim(_make_claim(claim_id="claim-002", reviewer="bob"))
        assert isinstance(exc_info.value.__cause__, sqlite3.IntegrityError)

    def test_same_unit_in_different_events_allowed(self) -> None:
        store = _make_store()
        store.insert_claim(_make_claim())
        store.insert_claim(_make_claim(claim_id="claim-002", event="spring-2026"))
        assert len(store.list_claims()) == 2
        assert store.claimed_units(EVENT) == {"app-1"}

    def test_find_claim_requires_full_tuple(self) -> None:
        store = _make_store()
        claim = _make_claim()
        store.insert_claim(claim)
        assert store.find_claim("claim-001", "alice", "app-1", EVENT) == claim
        assert store.find_claim("claim-001", "bob", "app-1", EVENT) is None
        assert store.find_claim("claim-001", "alice", "app-2", EVENT) is None
        assert store.find_claim("claim-999", "alice", "app-1", EVENT) is None

    def test_delete_claim(self) -> None:
        store = _make_store()
        store.insert_claim(_make_claim())
        assert store.delete_claim("claim-001") is True
        assert store.delete_claim("claim-001") is False
        assert store.get_claim_for("alice", EVENT) is None

    def test_list_claims_filters_by_event(self) -> None:
        store = _make_store()
        store.insert_claim(_make_claim())
        store.insert_claim(_make_claim(claim_id="claim-002", event="spring-2026"))
        assert [c.claim_id for c in store.list_claims(EVENT)] == ["claim-001"]


# ---------------------------------------------------------------------------
# Exception logs
# ---------------------------------------------------------------------------


class TestExceptionLogs:
    def test_skip_counts_grouped_by_reviewer(self) -> None:
        store = _make_store()
        store.append_skip("bob", "app-1", EVENT, T0)
        store.append_skip("alice", "app-1", EVENT, T0)
        store.append_skip("alice", "app-2", EVENT, T0)
        store.append_skip("alice", "app-3", "other-event", T0)
        stats = store.skip_counts(EVENT)
        assert [(s.reviewer, s.skip_count) for s in stats] == [("alice", 2), ("bob", 1)]

    def test_skip_counts_empty_event(self) -> None:
        assert _make_store().skip_counts(EVENT) == []

    def test_flags_listed_newest_first_with_reason(self) -> None:
        store = _make_store()
        store.append_flag("alice", "app-1", EVENT, T0, "conflict of interest")
        store.append_flag("alice", "app-2", EVENT, T0 + timedelta(hours=1))
        flags = store.list_flags("alice", EVENT)
        assert [f.unit for f in flags] == ["app-2", "app-1"]
        assert flags[1].reason == "conflict of interest"
        assert flags[0].reason is None

    def test_flags_do_not_count_as_skips(self) -> None:
        store = _make_store()
        store.append_flag("alice", "app-1", EVENT, T0)
        assert store.skip_counts(EVENT) == []


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def test_state_survives_reopen(tmp_path: Path) -> None:
    db = tmp_path / "assignments.db"
    store = AssignmentStore(db)
    store.register("app-1", EVENT)
    store.add_reader("app-1", EVENT, "alice")
    store.insert_claim(_make_claim(reviewer="bob"))
    store.close()

    reopened = AssignmentStore(db)
    record = reopened.get_status("app-1", EVENT)
    assert record is not None
    assert record.consumed_by == frozenset({"alice"})
    claim = reopened.get_claim_for("bob", EVENT)
    assert claim is not None
    assert claim.start_time == T0
