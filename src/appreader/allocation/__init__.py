"""Allocation engine subpackage for AppReader.

Hands out one unit of review work at a time per reviewer per event, fewest
completions first, and applies submit, skip, abandon and flag-and-skip.

Public API
----------
AllocationEngine
    The engine; owns the status ledger and claim lifecycles.
AllocationError
    Base class of every error the engine raises.
"""

from appreader.allocation.engine import (
    AllocationEngine,
    AllocationError,
    ClaimConflictError,
    ClaimNotOwnedError,
    NoActiveClaimError,
    NoEligibleUnitError,
    ReviewRecordingError,
)

__all__: list[str] = [
    "AllocationEngine",
    "AllocationError",
    "ClaimConflictError",
    "ClaimNotOwnedError",
    "NoActiveClaimError",
    "NoEligibleUnitError",
    "ReviewRecordingError",
]
