"""
ActivityReplicator — one-way mirror of local activities to the remote CRM.

Triggered after a local activity is created (the API schedules it as a
background task). Only activities whose contact carries a remote person id
are replicated; anything else is skipped without a remote call.

Each attempt bumps the activity's persisted attempt counter and timestamp
before talking to the remote API. The counter never exceeds
``max_attempts``; once it is reached the activity is left alone. Failures
never touch the local activity itself, and replicate() never raises: the
code that created the activity must not notice a replication failure.

Several local types share one remote type (LINKEDIN and REFERRAL both
become "task"), so the local type is not recoverable from the remote copy.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from crmsync.config import get_settings
from crmsync.models.contact import Activity, ActivityType, Contact
from crmsync.remote.client import CredentialError, RemoteError
from crmsync.remote.sanitize import sanitize_string

logger = logging.getLogger(__name__)

ACTIVITY_TYPE_MAP: Dict[str, str] = {
    ActivityType.CALL.value: "call",
    ActivityType.EMAIL.value: "email",
    ActivityType.MEETING.value: "meeting",
    ActivityType.MEETING_REQUEST.value: "lunch",
    ActivityType.CONFERENCE.value: "meeting",
    ActivityType.LINKEDIN.value: "task",
    ActivityType.REFERRAL.value: "task",
}
DEFAULT_REMOTE_TYPE = "task"


def map_activity_type(local_type: Optional[str]) -> str:
    return ACTIVITY_TYPE_MAP.get((local_type or "").upper(), DEFAULT_REMOTE_TYPE)


def activity_payload(activity: Activity, contact: Contact) -> Dict[str, Any]:
    """Remote activity body, sanitized and truncated."""
    settings = get_settings()
    payload: Dict[str, Any] = {
        "subject": sanitize_string(activity.subject, settings.max_subject_length) or "Activity",
        "type": map_activity_type(activity.type),
        "note": sanitize_string(activity.note, settings.max_note_length),
        "person_id": int(contact.remote_person_id),
        "done": 0 if activity.due_date else 1,
    }
    if contact.remote_org_id and contact.remote_org_id.isdigit():
        payload["org_id"] = int(contact.remote_org_id)
    if activity.due_date:
        payload["due_date"] = activity.due_date.strftime("%Y-%m-%d")
        payload["due_time"] = activity.due_date.strftime("%H:%M:%S")
    return payload


@dataclass
class ReplicationResult:
    success: bool
    activity_id: int
    remote_activity_id: Optional[int] = None
    attempts: int = 0
    skipped: bool = False
    error: Optional[str] = None


class ActivityReplicator:
    def __init__(
        self,
        client,
        store,
        *,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        sleep=asyncio.sleep,
    ):
        settings = get_settings()
        self.client = client
        self.store = store
        self.max_attempts = (
            max_attempts if max_attempts is not None else settings.replication_max_attempts
        )
        self.retry_delay = (
            retry_delay if retry_delay is not None else settings.replication_retry_delay_seconds
        )
        self._sleep = sleep

    async def replicate(self, activity_id: int, contact_id: int, user_id: int) -> ReplicationResult:
        """Create (or update) the remote copy of a local activity."""
        try:
            return await self._replicate(activity_id, contact_id, user_id)
        except Exception as exc:
            logger.exception("Replication of activity %s crashed", activity_id)
            return ReplicationResult(success=False, activity_id=activity_id, error=str(exc))

    async def _replicate(self, activity_id: int, contact_id: int, user_id: int) -> ReplicationResult:
        activity = self.store.get_activity(user_id, activity_id)
        if activity is None:
            return ReplicationResult(
                success=False, activity_id=activity_id, skipped=True, error="Activity not found"
            )
        contact = self.store.get_contact(user_id, contact_id)
        if contact is None or not contact.remote_person_id:
            return ReplicationResult(
                success=False,
                activity_id=activity_id,
                attempts=activity.remote_sync_attempts,
                skipped=True,
                error="Contact is not linked to a remote person",
            )

        attempts = activity.remote_sync_attempts
        last_error = "Maximum replication attempts reached"

        while attempts < self.max_attempts:
            activity = self.store.record_replication_attempt(activity_id, self.max_attempts)
            attempts = activity.remote_sync_attempts
            try:
                payload = activity_payload(activity, contact)
            except ValueError as exc:
                last_error = f"Invalid activity payload: {exc}"
                logger.warning("Replication of activity %s skipped: %s", activity_id, last_error)
                break
            try:
                if activity.remote_activity_id:
                    data = await self.client.update_activity(activity.remote_activity_id, payload)
                else:
                    data = await self.client.create_activity(payload)
            except CredentialError as exc:
                last_error = exc.message
                logger.warning("Replication of activity %s rejected: %s", activity_id, exc)
                break
            except RemoteError as exc:
                last_error = exc.message
                logger.warning(
                    "Replication of activity %s failed (attempt %d/%d): %s",
                    activity_id,
                    attempts,
                    self.max_attempts,
                    exc,
                )
                if attempts < self.max_attempts:
                    await self._sleep(self.retry_delay * (2 ** (attempts - 1)))
                continue

            remote_id = data.get("id") or activity.remote_activity_id
            self.store.mark_activity_replicated(activity_id, remote_id)
            logger.info("Activity %s replicated as remote activity %s", activity_id, remote_id)
            return ReplicationResult(
                success=True,
                activity_id=activity_id,
                remote_activity_id=remote_id,
                attempts=attempts,
            )

        return ReplicationResult(
            success=False, activity_id=activity_id, attempts=attempts, error=last_error
        )
