"""
Sync tasks for Celery workers.

The beat schedule runs :func:`scheduled_jira_sync` every
SYNC_INTERVAL_MINUTES with the credential context from settings.
"""
from __future__ import annotations

import sys
from pathlib import Path

# Ensure backend directory is in Python path for Celery forked workers
_backend_dir = Path(__file__).resolve().parent.parent.parent
if str(_backend_dir) not in sys.path:
    sys.path.insert(0, str(_backend_dir))

import asyncio
import logging
from typing import Any, Optional

from workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def run_async(coro: Any) -> Any:
    """Run an async function in a sync context (for Celery tasks).

    Each call gets a fresh event loop; the engine is created and disposed
    inside the coroutine so no connection outlives its loop.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _status(outcome: Any) -> dict[str, Any]:
    """Map a sync outcome onto the task's status payload."""
    from connectors.errors import SyncCancelledError
    from services.jira_sync import SyncFailure

    if isinstance(outcome, SyncFailure):
        status: str = "cancelled" if isinstance(outcome.cause, SyncCancelledError) else "failed"
        return {
            "status": status,
            "stage": outcome.stage.value,
            "error": str(outcome.cause),
            "counts": outcome.partial.to_dict(),
        }
    return {"status": "completed", "counts": outcome.to_dict()}


async def _run_scheduled_sync(
    database_url: Optional[str] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> dict[str, Any]:
    """Run one full sync with the configured credentials against its own engine."""
    from config import settings
    from connectors.errors import ValidationError
    from connectors.models import JiraCredentials
    from models.database import close_db, init_db, make_engine, make_session_factory
    from services.jira_sync import JiraSyncService

    credentials = JiraCredentials(
        base_url=settings.JIRA_BASE_URL,
        username=settings.JIRA_USERNAME,
        api_token=settings.JIRA_API_TOKEN,
    )

    engine = make_engine(database_url or settings.DATABASE_URL)
    try:
        await init_db(engine)
        service = JiraSyncService(make_session_factory(engine))
        logger.info("Starting scheduled Jira sync")
        try:
            outcome = await service.sync(credentials, cancel_event=cancel_event)
        except ValidationError as e:
            logger.error("Scheduled Jira sync has invalid credentials: %s", e)
            return {"status": "failed", "stage": "idle", "error": str(e)}
    finally:
        await close_db(engine)

    payload: dict[str, Any] = _status(outcome)
    logger.info("Scheduled Jira sync finished: %s", payload["status"], extra=payload)
    return payload


@celery_app.task(bind=True, name="workers.tasks.sync.scheduled_jira_sync")
def scheduled_jira_sync(self: Any) -> dict[str, Any]:
    """
    Celery task to run the periodic Jira sync.

    Returns a status dict: completed, failed or cancelled.
    """
    logger.info(f"Task {self.request.id}: Running scheduled Jira sync")
    return run_async(_run_scheduled_sync())
