"""AppReader — reviewer assignment allocation for application review events.

This package provides the server-side components for AppReader: the status
ledger and claim table store, the review-content collaborator, the allocation
engine that hands out one application at a time per reviewer, and a FastAPI
transport over the engine.
"""

__version__ = "0.1.0"
__all__: list[str] = []
