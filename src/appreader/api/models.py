"""Pydantic models for the AppReader assignments API.

All request and response bodies are defined here as Pydantic v2 ``BaseModel``
subclasses.  No raw dicts are used at API boundaries.

Models
------
- :class:`AssignmentBody`           — a claim as exchanged over HTTP
- :class:`RegisterRequest`          — ``POST /units/register`` body
- :class:`NextAssignmentRequest`    — ``POST /assignments/next`` body
- :class:`AssignmentResponse`       — ``POST /assignments/next`` and
  ``GET /assignments/current`` response
- :class:`SubmitRequest` / :class:`SubmitResponse` — ``POST /assignments/submit``
- :class:`SkipRequest`              — ``POST /assignments/skip`` body
- :class:`AbandonRequest`           — ``POST /assignments/abandon`` body
- :class:`FlagRequest`              — ``POST /assignments/flag`` body
- :class:`AckResponse`              — empty success acknowledgement
- :class:`SkipStatsResponse`        — ``GET /events/{event}/skip-stats`` response
- :class:`FlaggedUnitsResponse`     — ``GET /assignments/flagged`` response
- :class:`HealthResponse`           — ``GET /health`` response
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class AssignmentBody(BaseModel):
    """A claim as returned to and echoed back by the reviewer's client.

    Attributes
    ----------
    claim_id:
        Identifier of the claim.
    reviewer:
        The reviewer holding the claim.
    event:
        The event the claim belongs to.
    unit:
        The claimed unit (application) id.
    start_time:
        When the claim was created (UTC).
    """

    claim_id: str = Field(min_length=1)
    reviewer: str = Field(min_length=1)
    event: str = Field(min_length=1)
    unit: str = Field(min_length=1)
    start_time: datetime


class RegisterRequest(BaseModel):
    """Register one or more units for an event."""

    event: str = Field(min_length=1)
    units: list[str] = Field(min_length=1)


class RegisterResponse(BaseModel):
    """Number of units that were newly registered."""

    registered: int


class NextAssignmentRequest(BaseModel):
    """Ask for the next assignment.

    ``start_time`` defaults to the server's current time.
    """

    reviewer: str = Field(min_length=1)
    event: str = Field(min_length=1)
    start_time: datetime | None = None


class AssignmentResponse(BaseModel):
    """An assignment, or ``{"available": false}`` when there is none.

    Attributes
    ----------
    available:
        ``False`` when no assignment could be made or none is held.
    assignment:
        The claim, when ``available`` is ``True``.
    """

    available: bool = True
    assignment: AssignmentBody | None = None


class SubmitRequest(BaseModel):
    """Submit a completed assignment.

    Attributes
    ----------
    reviewer:
        The submitting reviewer; must match the caller.
    assignment:
        The claim being submitted.
    end_time:
        When the review was finished; defaults to the server's current time.
    active_time:
        Seconds of active review time.  When present, a review record is
        created for the unit if the reviewer has none yet.
    """

    reviewer: str = Field(min_length=1)
    assignment: AssignmentBody
    end_time: datetime | None = None
    active_time: float | None = Field(default=None, ge=0)


class SubmitResponse(BaseModel):
    """The unit that was submitted, so the client can open its review form."""

    unit: str


class SkipRequest(BaseModel):
    reviewer: str = Field(min_length=1)
    assignment: AssignmentBody


class AbandonRequest(BaseModel):
    reviewer: str = Field(min_length=1)
    event: str = Field(min_length=1)


class FlagRequest(BaseModel):
    reviewer: str = Field(min_length=1)
    assignment: AssignmentBody
    reason: str | None = None


class AckResponse(BaseModel):
    """Acknowledges an action that returns no data."""

    ok: bool = True


class SkipStatsEntry(BaseModel):
    reviewer: str
    skip_count: int = Field(ge=0)


class SkipStatsResponse(BaseModel):
    """Skip counts per reviewer for one event."""

    event: str
    stats: list[SkipStatsEntry] = Field(default_factory=list)


class FlaggedUnitEntry(BaseModel):
    """One unit the reviewer flagged, with the optional reason given."""

    unit: str
    flagged_at: datetime
    reason: str | None = None


class FlaggedUnitsResponse(BaseModel):
    """Units a reviewer flagged within one event, newest first."""

    event: str
    flagged: list[FlaggedUnitEntry] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Response body for ``GET /health``.

    Attributes
    ----------
    status:
        Always ``"ok"`` when the service is up.
    version:
        Installed package version, or ``"unknown"``.
    assignments_db_reachable:
        Whether the assignments database answered a probe query.
    reviews_db_reachable:
        Whether the reviews database answered a probe query.
    """

    status: str
    version: str
    assignments_db_reachable: bool
    reviews_db_reachable: bool
