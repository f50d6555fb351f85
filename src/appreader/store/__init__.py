"""Assignment store subpackage for AppReader.

Persists the status ledger (completion counts and consumed-by sets), the
claim table, and the skip/flag exception logs to a SQLite database
(assignments.db).
"""

from appreader.store.assignments import (
    AssignmentStore,
    Claim,
    DuplicateClaimError,
    FlagRecord,
    SkipRecord,
    SkipStats,
    StatusRecord,
)

__all__: list[str] = [
    "AssignmentStore",
    "Claim",
    "DuplicateClaimError",
    "FlagRecord",
    "SkipRecord",
    "SkipStats",
    "StatusRecord",
]
