"""
APScheduler jobs for background sync.

A nightly incremental sync per user catches remote changes nobody pulled
on demand during the day. Runs in the same process as __main__.
"""
import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from crmsync.config import get_settings

logger = logging.getLogger(__name__)


def build_scheduler(engine) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        engine: SQLAlchemy engine handed to the sync store.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _nightly_sync,
        trigger="cron",
        hour=settings.sync_hour,
        minute=0,
        id="nightly_sync",
        replace_existing=True,
        kwargs={"engine": engine},
    )

    return scheduler


async def _nightly_sync(engine) -> None:
    """
    Nightly job: INCREMENTAL sync for every user with a credential.

    One user's failure is logged and the loop moves on to the next.
    """
    from crmsync.models.sync import SyncType
    from crmsync.remote.client import RemoteClient
    from crmsync.sync.orchestrator import SyncOrchestrator
    from crmsync.sync.store import SyncStore

    store = SyncStore(engine)
    logger.info("Nightly sync starting at %s", datetime.utcnow().isoformat())

    for user_id in store.list_users_with_credentials():
        try:
            client = RemoteClient(store.get_api_token(user_id))
            outcome = await SyncOrchestrator(client, store).run(user_id, SyncType.INCREMENTAL)
            if outcome.success:
                logger.info(
                    "Nightly sync for user %s: %d created, %d updated, %d failed",
                    user_id,
                    outcome.results.created,
                    outcome.results.updated,
                    outcome.results.failed,
                )
            else:
                logger.error("Nightly sync for user %s failed: %s", user_id, outcome.error)
        except Exception as exc:
            logger.error("Nightly sync for user %s failed: %s", user_id, exc)
