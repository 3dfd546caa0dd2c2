"""
Main entrypoint: runs the nightly sync scheduler, or a one-shot sync.

FastAPI runs separately under uvicorn.

Usage:
    python -m crmsync sync          # one incremental sync for the configured user
    python -m crmsync sync full     # one full sync
    python -m crmsync               # starts the scheduler
    uvicorn crmsync.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


async def _run_once(sync_type: str) -> int:
    from crmsync.config import get_settings
    from crmsync.db.engine import get_engine
    from crmsync.remote.client import RemoteClient
    from crmsync.sync.orchestrator import SyncOrchestrator
    from crmsync.sync.store import SyncStore

    settings = get_settings()
    store = SyncStore(get_engine())
    token = store.get_api_token(settings.user_id)
    if not token:
        logger.error("No remote CRM API key configured. Set REMOTE_API_TOKEN first.")
        return 1

    outcome = await SyncOrchestrator(RemoteClient(token), store).run(
        settings.user_id, sync_type.upper()
    )
    if not outcome.success:
        logger.error("Sync failed: %s", outcome.error)
        return 1
    logger.info("Sync %s done: %s", outcome.sync_id, outcome.results.to_dict())
    return 0


async def _run_scheduler() -> None:
    from crmsync.config import get_settings
    from crmsync.db.engine import get_engine
    from crmsync.scheduler.jobs import build_scheduler

    settings = get_settings()
    scheduler = build_scheduler(get_engine())
    scheduler.start()
    logger.info("Scheduler started (nightly sync at %02d:00 UTC)", settings.sync_hour)

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "sync":
        mode = sys.argv[2] if len(sys.argv) > 2 else "incremental"
        sys.exit(asyncio.run(_run_once(mode)))
    else:
        asyncio.run(_run_scheduler())
