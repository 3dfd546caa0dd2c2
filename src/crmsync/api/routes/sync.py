"""Sync trigger, progress stream and status routes."""
import asyncio
import json
import re
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from crmsync.api.deps import (
    get_current_user_id,
    get_progress_tracker,
    get_remote_client,
    get_store,
)
from crmsync.config import get_settings
from crmsync.models.sync import SyncType
from crmsync.remote.client import RemoteClient
from crmsync.remote.field_mapping import FieldMappingResolver
from crmsync.sync.orchestrator import SyncOrchestrator, SyncRejected
from crmsync.sync.progress import (
    FAILED,
    ProgressSnapshot,
    ProgressTracker,
    snapshot_from_run,
)
from crmsync.sync.store import SyncStore

router = APIRouter()

SYNC_ID_PATTERN = re.compile(r"^[a-zA-Z0-9-]+$")


class SyncTriggerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sync_type: SyncType = Field(alias="syncType")
    since_timestamp: Optional[datetime] = Field(default=None, alias="sinceTimestamp")
    batch_size: Optional[int] = Field(default=None, alias="batchSize", ge=1)
    force: bool = False
    background: bool = False  # return the syncId at once, run the batches later

    @field_validator("batch_size")
    @classmethod
    def _bounded(cls, value: Optional[int]) -> Optional[int]:
        limit = get_settings().sync_max_batch_size
        if value is not None and value > limit:
            raise ValueError(f"batchSize must be at most {limit}")
        return value

    @field_validator("since_timestamp")
    @classmethod
    def _as_naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value


class SyncStatusResponse(BaseModel):
    status: str
    sync_id: Optional[str] = None
    sync_type: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    contacts_processed: Optional[int] = None
    contacts_created: Optional[int] = None
    contacts_updated: Optional[int] = None
    contacts_failed: Optional[int] = None
    error_message: Optional[str] = None


@router.post("/contacts")
async def trigger_sync(
    request: SyncTriggerRequest,
    background_tasks: BackgroundTasks,
    user_id: int = Depends(get_current_user_id),
    store: SyncStore = Depends(get_store),
    client: RemoteClient = Depends(get_remote_client),
    tracker: ProgressTracker = Depends(get_progress_tracker),
):
    """
    Run a contact sync. A rejected credential fails here, before any run
    exists. With ``background=true`` the response carries the syncId as soon
    as the run is created, and progress is followed on /sync/progress/{id}.
    """
    orchestrator = SyncOrchestrator(client, store, tracker=tracker)
    try:
        plan = await orchestrator.prepare(
            user_id,
            request.sync_type,
            since=request.since_timestamp,
            batch_size=request.batch_size,
            force=request.force,
        )
    except SyncRejected as exc:
        return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})

    if request.background:
        background_tasks.add_task(orchestrator.execute, plan)
        return JSONResponse(
            status_code=202,
            content={
                "success": True,
                "data": {
                    "syncId": plan.run.id,
                    "syncType": plan.run.sync_type,
                    "requestedSyncType": plan.run.requested_sync_type,
                    "forcedFull": plan.run.forced_full,
                    "sinceTimestamp": plan.since.isoformat() if plan.since else None,
                    "status": "started",
                },
            },
        )

    outcome = await orchestrator.execute(plan)
    return JSONResponse(
        status_code=200 if outcome.success else 502, content=outcome.to_payload()
    )


@router.post("/contacts/{contact_id}")
async def sync_single_contact(
    contact_id: int,
    force: bool = False,
    user_id: int = Depends(get_current_user_id),
    store: SyncStore = Depends(get_store),
    client: RemoteClient = Depends(get_remote_client),
):
    """Push one local contact to the remote CRM."""
    orchestrator = SyncOrchestrator(client, store)
    outcome = await orchestrator.sync_contact(user_id, contact_id, force=force)
    if outcome.error == "Contact not found":
        raise HTTPException(status_code=404, detail="Contact not found")
    return outcome.to_payload()


@router.get("/progress/{sync_id}")
async def sync_progress(
    sync_id: str,
    user_id: int = Depends(get_current_user_id),
    store: SyncStore = Depends(get_store),
    tracker: ProgressTracker = Depends(get_progress_tracker),
):
    """Server-sent events for one run: progress, complete, error, cancelled."""
    if not SYNC_ID_PATTERN.match(sync_id):
        raise HTTPException(status_code=400, detail="Invalid sync ID format")
    if _current_snapshot(sync_id, user_id, store, tracker) is None:
        raise HTTPException(status_code=404, detail="Sync not found")

    return StreamingResponse(
        _event_stream(sync_id, user_id, store, tracker),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.get("/latest", response_model=SyncStatusResponse)
def latest_sync(
    user_id: int = Depends(get_current_user_id),
    store: SyncStore = Depends(get_store),
):
    """Summary of the acting user's most recent run."""
    run = store.latest_sync_run(user_id)
    if not run:
        return SyncStatusResponse(status="never_run")
    return SyncStatusResponse(
        status=run.status,
        sync_id=run.id,
        sync_type=run.sync_type,
        started_at=run.start_time,
        finished_at=run.end_time,
        contacts_processed=run.contacts_processed,
        contacts_created=run.contacts_created,
        contacts_updated=run.contacts_updated,
        contacts_failed=run.contacts_failed,
        error_message=run.error,
    )


@router.get("/test-connection")
async def test_connection(client: RemoteClient = Depends(get_remote_client)):
    """Probe the remote CRM with the acting user's credential."""
    result = await client.test_connection()
    return JSONResponse(status_code=200 if result["success"] else 400, content=result)


@router.get("/custom-fields")
async def custom_fields(
    user_id: int = Depends(get_current_user_id),
    client: RemoteClient = Depends(get_remote_client),
):
    """Resolved sector/size/country custom-field mappings."""
    resolver = FieldMappingResolver(client, cache_key=str(user_id))
    mappings = await resolver.mappings()
    return {
        "success": True,
        "data": {
            category: {
                "fieldKey": m.field_key,
                "fieldName": m.field_name,
                "options": m.options,
            }
            for category, m in mappings.items()
        },
    }


# ─── Progress stream helpers ─────────────────────────────────────────────────

def format_sse(snapshot: ProgressSnapshot, error: Optional[str] = None) -> str:
    event = {"type": snapshot.event_type, "data": snapshot.model_dump()}
    if error:
        event["error"] = error
    elif snapshot.event_type == "error" and snapshot.errors:
        event["error"] = snapshot.errors[-1]
    return f"event: {snapshot.event_type}\ndata: {json.dumps(event)}\n\n"


def _current_snapshot(
    sync_id: str, user_id: int, store: SyncStore, tracker: ProgressTracker
) -> Optional[ProgressSnapshot]:
    run = store.get_sync_run(sync_id, user_id)
    if run is None:
        return None
    return tracker.get(sync_id) or snapshot_from_run(run)


async def _event_stream(
    sync_id: str, user_id: int, store: SyncStore, tracker: ProgressTracker
):
    settings = get_settings()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def push(snapshot: ProgressSnapshot) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, snapshot)

    unsubscribe = tracker.subscribe(sync_id, push)
    deadline = loop.time() + settings.progress_stream_timeout_seconds
    try:
        last = _current_snapshot(sync_id, user_id, store, tracker)
        if last is None:
            return
        yield format_sse(last)

        while not last.is_terminal:
            remaining = deadline - loop.time()
            if remaining <= 0:
                timeout = last.model_copy(update={
                    "status": FAILED,
                    "errors": ["Sync progress polling timeout"],
                })
                yield format_sse(timeout, error="Sync progress polling timeout")
                return
            try:
                snapshot = await asyncio.wait_for(
                    queue.get(), timeout=min(settings.progress_poll_seconds, remaining)
                )
            except asyncio.TimeoutError:
                # No push: the run may live in another process; re-read it.
                snapshot = _current_snapshot(sync_id, user_id, store, tracker) or last
            if snapshot != last:
                yield format_sse(snapshot)
                last = snapshot
    finally:
        unsubscribe()
