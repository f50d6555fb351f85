"""FastAPI router for the AppReader assignments API.

Endpoints:

- ``POST /units/register``          — register units for an event
- ``POST /assignments/next``        — claim the next assignment
- ``GET  /assignments/current``     — the caller's live assignment
- ``POST /assignments/submit``      — submit and count a read
- ``POST /assignments/skip``        — skip the assignment
- ``POST /assignments/abandon``     — give the assignment back unread
- ``POST /assignments/flag``        — flag the application and skip it
- ``GET  /assignments/flagged``     — units the caller flagged in an event
- ``GET  /events/{event}/skip-stats`` — skip counts per reviewer
- ``GET  /health``                  — liveness check

Every reviewer action requires the ``X-Reviewer-Id`` header.  Authentication
happens upstream; this layer only checks that the authenticated caller is the
reviewer named in the request body and answers 403 otherwise.
"""

from __future__ import annotations

import importlib.metadata
import logging
from datetime import datetime, timezone
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from appreader.allocation.engine import (
    AllocationEngine,
    ClaimConflictError,
    ClaimNotOwnedError,
    NoActiveClaimError,
    NoEligibleUnitError,
    ReviewRecordingError,
)
from appreader.api.models import (
    AbandonRequest,
    AckResponse,
    AssignmentBody,
    AssignmentResponse,
    FlagRequest,
    FlaggedUnitEntry,
    FlaggedUnitsResponse,
    HealthResponse,
    NextAssignmentRequest,
    RegisterRequest,
    RegisterResponse,
    SkipRequest,
    SkipStatsEntry,
    SkipStatsResponse,
    SubmitRequest,
    SubmitResponse,
)
from appreader.store.assignments import Claim

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Dependency accessor helpers
# ---------------------------------------------------------------------------


def _get_engine(request: Request) -> AllocationEngine:
    """Extract the :class:`AllocationEngine` from application state."""
    return request.app.state.engine  # type: ignore[no-any-return]


Engine = Annotated[AllocationEngine, Depends(_get_engine)]
Caller = Annotated[str, Header(alias="X-Reviewer-Id", min_length=1)]


def _verify_caller(caller: str, reviewer: str) -> None:
    """Reject requests where the caller acts on behalf of another reviewer."""
    if caller != reviewer:
        logger.warning("Caller %s attempted to act as reviewer %s", caller, reviewer)
        raise HTTPException(
            status_code=403,
            detail="Caller does not match the reviewer in the request.",
        )


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@router.post(
    "/units/register",
    response_model=RegisterResponse,
    summary="Register units for assignment within an event",
    tags=["units"],
)
def register_units(body: RegisterRequest, engine: Engine) -> RegisterResponse:
    """Register every unit in ``body.units`` for ``body.event``; idempotent."""
    # Admin authorisation is enforced by the upstream gateway.
    created = engine.register_many(body.units, body.event)
    return RegisterResponse(registered=created)


# ---------------------------------------------------------------------------
# Assignments
# ---------------------------------------------------------------------------


@router.post(
    "/assignments/next",
    response_model=AssignmentResponse,
    summary="Claim the next assignment",
    tags=["assignments"],
)
def next_assignment(
    body: NextAssignmentRequest, caller: Caller, engine: Engine
) -> AssignmentResponse:
    """Return the caller's assignment for the event, creating one if needed.

    When no unit is eligible, HTTP 200 is returned with
    ``{"available": false}``.  Exhausted claim retries map to HTTP 409 and
    review-store failures to HTTP 502.
    """
    _verify_caller(caller, body.reviewer)
    start_time = body.start_time or datetime.now(timezone.utc)
    try:
        claim = engine.get_next_assignment(body.reviewer, body.event, start_time)
    except NoEligibleUnitError:
        return AssignmentResponse(available=False)
    except ClaimConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ReviewRecordingError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return AssignmentResponse(assignment=_claim_to_body(claim))


@router.get(
    "/assignments/current",
    response_model=AssignmentResponse,
    summary="Return the caller's live assignment",
    tags=["assignments"],
)
def current_assignment(event: str, caller: Caller, engine: Engine) -> AssignmentResponse:
    """Return the caller's live assignment for *event*, or ``available=false``."""
    claim = engine.get_current(caller, event)
    if claim is None:
        return AssignmentResponse(available=False)
    return AssignmentResponse(assignment=_claim_to_body(claim))


@router.post(
    "/assignments/submit",
    response_model=SubmitResponse,
    summary="Submit a completed assignment",
    tags=["assignments"],
)
def submit_assignment(body: SubmitRequest, caller: Caller, engine: Engine) -> SubmitResponse:
    """Count the read, release the claim, and return the unit id.

    Ownership failures map to HTTP 403; review-store failures to HTTP 502.
    """
    _verify_caller(caller, body.reviewer)
    end_time = body.end_time or datetime.now(timezone.utc)
    try:
        unit = engine.submit(
            body.reviewer, _body_to_claim(body.assignment), end_time, body.active_time
        )
    except ClaimNotOwnedError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except ReviewRecordingError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return SubmitResponse(unit=unit)


@router.post(
    "/assignments/skip",
    response_model=AckResponse,
    summary="Skip the current assignment",
    tags=["assignments"],
)
def skip_assignment(body: SkipRequest, caller: Caller, engine: Engine) -> AckResponse:
    _verify_caller(caller, body.reviewer)
    try:
        engine.skip(body.reviewer, _body_to_claim(body.assignment))
    except ClaimNotOwnedError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except ReviewRecordingError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return AckResponse()


@router.post(
    "/assignments/abandon",
    response_model=AckResponse,
    summary="Give the current assignment back without reading it",
    tags=["assignments"],
)
def abandon_assignment(body: AbandonRequest, caller: Caller, engine: Engine) -> AckResponse:
    _verify_caller(caller, body.reviewer)
    try:
        engine.abandon(body.reviewer, body.event)
    except NoActiveClaimError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return AckResponse()


@router.post(
    "/assignments/flag",
    response_model=AckResponse,
    summary="Flag the current application and skip it",
    tags=["assignments"],
)
def flag_assignment(body: FlagRequest, caller: Caller, engine: Engine) -> AckResponse:
    _verify_caller(caller, body.reviewer)
    try:
        engine.flag_and_skip(body.reviewer, _body_to_claim(body.assignment), body.reason)
    except ClaimNotOwnedError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except ReviewRecordingError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return AckResponse()


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


@router.get(
    "/assignments/flagged",
    response_model=FlaggedUnitsResponse,
    summary="Units the caller flagged in an event",
    tags=["reporting"],
)
def flagged_units(event: str, caller: Caller, engine: Engine) -> FlaggedUnitsResponse:
    """Return the units the caller flagged in *event*, newest first."""
    flags = engine.get_flagged_units(caller, event)
    return FlaggedUnitsResponse(
        event=event,
        flagged=[
            FlaggedUnitEntry(unit=f.unit, flagged_at=f.timestamp, reason=f.reason)
            for f in flags
        ],
    )


@router.get(
    "/events/{event}/skip-stats",
    response_model=SkipStatsResponse,
    summary="Skip counts per reviewer for an event",
    tags=["reporting"],
)
def skip_stats(event: str, engine: Engine) -> SkipStatsResponse:
    stats = engine.get_skip_stats(event)
    return SkipStatsResponse(
        event=event,
        stats=[SkipStatsEntry(reviewer=s.reviewer, skip_count=s.skip_count) for s in stats],
    )


# ---------------------------------------------------------------------------
# GET /health
# ---------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Liveness check",
    tags=["health"],
)
def get_health(request: Request) -> HealthResponse:
    """Return a liveness check response.

    Always returns HTTP 200, reporting database reachability in the body.
    """
    return HealthResponse(
        status="ok",
        version=_get_package_version(),
        assignments_db_reachable=_probe(request.app.state.assignment_store),
        reviews_db_reachable=_probe(request.app.state.review_store),
    )


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _claim_to_body(claim: Claim) -> AssignmentBody:
    return AssignmentBody(
        claim_id=claim.claim_id,
        reviewer=claim.reviewer,
        event=claim.event,
        unit=claim.unit,
        start_time=claim.start_time,
    )


def _body_to_claim(body: AssignmentBody) -> Claim:
    return Claim(
        claim_id=body.claim_id,
        reviewer=body.reviewer,
        event=body.event,
        unit=body.unit,
        start_time=body.start_time,
    )


def _get_package_version() -> str:
    """Return the installed package version, or ``"unknown"``."""
    try:
        return importlib.metadata.version("appreader-assignments")
    except importlib.metadata.PackageNotFoundError:
        return "unknown"


def _probe(store: object) -> bool:
    """Return the store's ``ping()`` result; ``False`` if it has none."""
    ping = getattr(store, "ping", None)
    if ping is None:
        return False
    return bool(ping())
