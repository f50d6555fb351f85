"""Review-content subpackage for AppReader.

Defines the narrow review-content interface the allocation engine consumes
and a SQLite-backed implementation of it (reviews, red flags, scores).
"""

from appreader.reviews.records import (
    Review,
    ReviewContent,
    ReviewContentError,
    ReviewStore,
)

__all__: list[str] = [
    "Review",
    "ReviewContent",
    "ReviewContentError",
    "ReviewStore",
]
