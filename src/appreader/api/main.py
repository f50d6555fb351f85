"""FastAPI application factory for the AppReader assignments API.

Exposes a :func:`create_app` factory function that instantiates the
:class:`fastapi.FastAPI` application, wires up the dependency-injected
components (:class:`~appreader.store.assignments.AssignmentStore`,
:class:`~appreader.reviews.records.ReviewStore`,
:class:`~appreader.allocation.engine.AllocationEngine`), and registers the API
router defined in :mod:`appreader.api.routes`.

Usage::

    # Production startup (uvicorn)
    uvicorn appreader.api.main:build_default_app --factory --host 0.0.0.0 --port 8000

    # Testing: pass in-memory stores
    from appreader.api.main import create_app
    app = create_app(assignment_store=store, review_store=reviews)

Components are attached to ``app.state`` so that route handlers can retrieve
them via ``request.app.state``.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from fastapi import FastAPI

from appreader.allocation.engine import AllocationEngine
from appreader.api.routes import router
from appreader.config import AppConfig, get_config
from appreader.reviews.records import ReviewStore
from appreader.store.assignments import AssignmentStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(
    assignment_store: AssignmentStore | None = None,
    review_store: ReviewStore | None = None,
    engine: AllocationEngine | None = None,
    config: AppConfig | None = None,
) -> FastAPI:
    """Create and configure the AppReader FastAPI application.

    When a component is ``None`` the factory builds a default instance from
    *config* (itself defaulting to :func:`~appreader.config.get_config`).

    Parameters
    ----------
    assignment_store:
        Pre-built status ledger / claim table store.  If ``None``, one is
        opened at ``config.assignments_db_path``.
    review_store:
        Pre-built review-content store.  If ``None``, one is opened at
        ``config.reviews_db_path``.
    engine:
        Pre-built allocation engine.  If ``None``, one is built over the two
        stores using the configured claim expiry and retry limit.
    config:
        Application configuration.

    Returns
    -------
    FastAPI
        A fully-configured application instance with all routes registered
        and dependencies attached to ``app.state``.
    """
    if config is None:
        config = get_config()
    _configure_logging(config.log_level)

    app = FastAPI(
        title="AppReader Assignments API",
        description=(
            "Hands out applications to reviewers one at a time, fewest reads "
            "first, and records submissions, skips and flags."
        ),
        version=_get_version(),
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # ---- AssignmentStore ----
    if assignment_store is None:
        config.assignments_db_path.parent.mkdir(parents=True, exist_ok=True)
        assignment_store = AssignmentStore(db_path=config.assignments_db_path)
        logger.info("AssignmentStore initialised at %s", config.assignments_db_path)

    # ---- ReviewStore ----
    if review_store is None:
        config.reviews_db_path.parent.mkdir(parents=True, exist_ok=True)
        review_store = ReviewStore(db_path=config.reviews_db_path)
        logger.info("ReviewStore initialised at %s", config.reviews_db_path)

    # ---- AllocationEngine ----
    if engine is None:
        engine = AllocationEngine(
            store=assignment_store,
            reviews=review_store,
            claim_ttl=timedelta(hours=config.claim_expiry_hours),
            max_claim_retries=config.max_claim_retries,
        )
        logger.info(
            "AllocationEngine initialised (claim expiry %sh, %d retries)",
            config.claim_expiry_hours,
            config.max_claim_retries,
        )

    # ---- Attach to app.state ----
    app.state.assignment_store = assignment_store
    app.state.review_store = review_store
    app.state.engine = engine

    # ---- Register routes ----
    app.include_router(router)

    return app


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _get_version() -> str:
    """Return the installed package version, or ``"unknown"`` if not installed."""
    import importlib.metadata  # local import keeps module-level imports clean

    try:
        return importlib.metadata.version("appreader-assignments")
    except importlib.metadata.PackageNotFoundError:
        return "unknown"


def _configure_logging(level: str) -> None:
    """Apply *level* to the root logger; handlers are only added once."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger().setLevel(level)


def build_default_app() -> FastAPI:
    """Build the production application from environment configuration."""
    return create_app(config=get_config())
