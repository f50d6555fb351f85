"""HTTP API subpackage for AppReader.

Exposes the FastAPI endpoints reviewers use to request, submit, skip,
abandon and flag assignments, plus event reporting and a health check.
"""

__all__: list[str] = []
