"""End-to-end integration tests for the AppReader review lifecycle.

Covers the full lifecycle:
    1. The app is built from configuration alone, creating both SQLite files
       under a temporary data directory.
    2. An administrator registers an event's applications.
    3. Several reviewers work through the event: submit, skip, flag and
       abandon, until nothing is left for them.
    4. Every application ends up read by every reviewer exactly once, and
       completions equal the number of submissions.
    5. State survives rebuilding the app over the same files.

Concurrency:
    - Many threads asking for work at once through one engine never receive
      the same application.
    - Two engines over two connections to the same database file (the shape
      of two server processes) never hand out the same application either.

No live network calls are made; ``TestClient`` drives the app in-process.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi.testclient import TestClient

from appreader.allocation import AllocationEngine, NoEligibleUnitError
from appreader.api.main import create_app
from appreader.config import AppConfig
from appreader.reviews import ReviewStore
from appreader.store import AssignmentStore

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EVENT = "fall-2025"
UNITS = [f"app-{n:02d}" for n in range(1, 6)]
REVIEWERS = ["alice", "bob", "carol"]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        data_dir=tmp_path,
        assignments_db_path=tmp_path / "db" / "assignments.db",
        reviews_db_path=tmp_path / "db" / "reviews.db",
    )


def _post(client: TestClient, path: str, reviewer: str, payload: dict[str, Any]) -> Any:
    resp = client.post(path, json=payload, headers={"X-Reviewer-Id": reviewer})
    assert resp.status_code == 200, resp.text
    return resp.json()


def _next(client: TestClient, reviewer: str) -> dict[str, Any] | None:
    body = _post(client, "/assignments/next", reviewer, {"reviewer": reviewer, "event": EVENT})
    return body["assignment"] if body["available"] else None


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def test_full_review_lifecycle(tmp_path: Path) -> None:
    config = _config(tmp_path)
    client = TestClient(create_app(config=config))
    assert config.assignments_db_path.exists()
    assert config.reviews_db_path.exists()

    resp = client.post("/units/register", json={"event": EVENT, "units": UNITS})
    assert resp.json() == {"registered": len(UNITS)}

    # alice abandons her first application, then flags it on the second try.
    first = _next(client, "alice")
    assert first is not None
    _post(client, "/assignments/abandon", "alice", {"reviewer": "alice", "event": EVENT})
    again = _next(client, "alice")
    assert again is not None and again["unit"] == first["unit"]
    _post(
        client,
        "/assignments/flag",
        "alice",
        {"reviewer": "alice", "assignment": again, "reason": "knows the applicant"},
    )

    # bob skips his first application.
    skipped = _next(client, "bob")
    assert skipped is not None
    _post(client, "/assignments/skip", "bob", {"reviewer": "bob", "assignment": skipped})

    # Everyone submits everything else.
    submissions = 0
    for reviewer in REVIEWERS:
        while (claim := _next(client, reviewer)) is not None:
            body = _post(
                client,
                "/assignments/submit",
                reviewer,
                {"reviewer": reviewer, "assignment": claim, "active_time": 60},
            )
            assert body == {"unit": claim["unit"]}
            submissions += 1

    assert submissions == len(UNITS) * len(REVIEWERS) - 2

    engine: AllocationEngine = client.app.state.engine  # type: ignore[attr-defined]
    records = engine.list_status(EVENT)
    assert [r.unit for r in records] == UNITS
    assert sum(r.completions for r in records) == submissions
    assert all(r.consumed_by == frozenset(REVIEWERS) for r in records)
    # The flagged and skipped application is the same one; only carol read it.
    assert skipped["unit"] == first["unit"]
    completions = {r.unit: r.completions for r in records}
    assert completions.pop(first["unit"]) == 1
    assert set(completions.values()) == {len(REVIEWERS)}

    stats = client.get(f"/events/{EVENT}/skip-stats").json()
    assert stats["stats"] == [{"reviewer": "bob", "skip_count": 1}]
    assert [f.unit for f in engine.get_flagged_units("alice", EVENT)] == [first["unit"]]

    # Rebuilding over the same files keeps every record.
    client.app.state.assignment_store.close()  # type: ignore[attr-defined]
    client.app.state.review_store.close()  # type: ignore[attr-defined]
    rebuilt = TestClient(create_app(config=config))
    assert _next(rebuilt, "alice") is None
    assert rebuilt.post(
        "/units/register", json={"event": EVENT, "units": UNITS}
    ).json() == {"registered": 0}


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


def _claim_all(engines: list[AllocationEngine], reviewers: list[str]) -> list[str | None]:
    """Ask for one assignment per reviewer concurrently; return claimed units."""
    start = datetime.now(timezone.utc)

    def _ask(index: int) -> str | None:
        engine = engines[index % len(engines)]
        try:
            return engine.get_next_assignment(reviewers[index], EVENT, start).unit
        except NoEligibleUnitError:
            return None

    with ThreadPoolExecutor(max_workers=8) as pool:
        return list(pool.map(_ask, range(len(reviewers))))


def test_concurrent_requests_never_share_a_unit() -> None:
    store = AssignmentStore(Path(":memory:"))
    engine = AllocationEngine(store, ReviewStore(Path(":memory:")))
    units = [f"app-{n:03d}" for n in range(20)]
    engine.register_many(units, EVENT)

    claimed = _claim_all([engine], [f"reviewer-{n}" for n in range(30)])

    granted = [u for u in claimed if u is not None]
    assert sorted(granted) == units
    assert claimed.count(None) == 10
    assert len(store.list_claims(EVENT)) == 20


def test_two_connections_never_share_a_unit(tmp_path: Path) -> None:
    db = tmp_path / "assignments.db"
    reviews = ReviewStore(tmp_path / "reviews.db")
    store_a = AssignmentStore(db)
    store_b = AssignmentStore(db)
    engine_a = AllocationEngine(store_a, reviews)
    engine_b = AllocationEngine(store_b, reviews)
    units = [f"app-{n:03d}" for n in range(12)]
    engine_a.register_many(units, EVENT)

    claimed = _claim_all([engine_a, engine_b], [f"reviewer-{n}" for n in range(16)])

    granted = [u for u in claimed if u is not None]
    assert len(granted) == len(set(granted)) == 12
    assert claimed.count(None) == 4
    assert {c.unit for c in store_b.list_claims(EVENT)} == set(units)
