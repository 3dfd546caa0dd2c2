"""Local activity logging, mirrored to the remote CRM in the background."""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from crmsync.api.deps import get_current_user_id, get_optional_remote_client, get_store
from crmsync.models.contact import ActivityType
from crmsync.remote.client import RemoteClient
from crmsync.sync.replication import ActivityReplicator
from crmsync.sync.store import SyncStore

logger = logging.getLogger(__name__)

router = APIRouter()


class ActivityCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    contact_id: int = Field(alias="contactId")
    type: ActivityType = ActivityType.CALL
    subject: Optional[str] = None
    note: Optional[str] = None
    due_date: Optional[datetime] = Field(default=None, alias="dueDate")


async def _do_replicate(
    client: RemoteClient, store: SyncStore, activity_id: int, contact_id: int, user_id: int
) -> None:
    """Background task: push the new activity to the remote CRM."""
    result = await ActivityReplicator(client, store).replicate(activity_id, contact_id, user_id)
    if not result.success and not result.skipped:
        logger.warning("Activity %s not replicated: %s", activity_id, result.error)


@router.post("/", status_code=201)
async def create_activity(
    request: ActivityCreateRequest,
    background_tasks: BackgroundTasks,
    user_id: int = Depends(get_current_user_id),
    store: SyncStore = Depends(get_store),
    client: Optional[RemoteClient] = Depends(get_optional_remote_client),
):
    """
    Log an activity against one of the user's contacts. Replication is
    scheduled only when the contact is linked to a remote person and a
    credential is configured; the local write never waits for it.
    """
    contact = store.get_contact(user_id, request.contact_id)
    if contact is None:
        raise HTTPException(status_code=404, detail="Contact not found")

    activity = store.create_activity(
        user_id,
        {
            "contact_id": contact.id,
            "type": request.type.value,
            "subject": request.subject,
            "note": request.note,
            "due_date": request.due_date,
        },
    )

    scheduled = bool(contact.remote_person_id) and client is not None
    if scheduled:
        background_tasks.add_task(_do_replicate, client, store, activity.id, contact.id, user_id)

    return {
        "success": True,
        "data": {
            "activityId": activity.id,
            "contactId": contact.id,
            "type": activity.type,
            "replicationScheduled": scheduled,
        },
    }


@router.get("/{activity_id}/sync-status")
def activity_sync_status(
    activity_id: int,
    user_id: int = Depends(get_current_user_id),
    store: SyncStore = Depends(get_store),
):
    """Replication bookkeeping for one activity."""
    activity = store.get_activity(user_id, activity_id)
    if activity is None:
        raise HTTPException(status_code=404, detail="Activity not found")
    return {
        "activityId": activity.id,
        "replicatedToRemote": activity.replicated_to_remote,
        "remoteActivityId": activity.remote_activity_id,
        "attempts": activity.remote_sync_attempts,
        "lastAttemptAt": (
            activity.last_remote_sync_attempt.isoformat()
            if activity.last_remote_sync_attempt
            else None
        ),
    }
