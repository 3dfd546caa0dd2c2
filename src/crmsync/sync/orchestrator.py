"""
SyncOrchestrator — drives one contact sync run from the remote CRM.

Flow for a run:
  1. prepare(): probe the credential (GET /users/me). A failed probe rejects
     the request before any SyncRun exists. Decide the effective mode, then
     create the SyncRun in PENDING.
  2. execute(): fetch every person (FULL) or those changed since the cursor
     (INCREMENTAL), split them into batches, reconcile and persist each
     record, then after every batch persist the counters and push a progress
     snapshot.
  3. Organizations linked from contacts are refreshed best-effort; a failure
     there never fails the run.
  4. Finish the run: SUCCESS, or FAILED when the remote fetch itself failed.

Mode override: an INCREMENTAL request becomes FULL when the user's previous
run did not end in SUCCESS (a crashed or failed run may have left a gap
behind the cursor) or when there is no successful run to take a cursor
from. The override is logged and reported as ``forced_full`` in the outcome.

Failure policy: a bad record increments ``failed`` and the run continues.
Nothing raised inside a run escapes run()/execute(); callers always get a
SyncOutcome. Task cancellation is the one exception: it is recorded, then
re-raised.
"""
import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from crmsync.config import get_settings
from crmsync.models.contact import RecordSyncStatus
from crmsync.models.sync import RunStatus, SyncRun, SyncType
from crmsync.remote.client import CredentialError, RemoteError
from crmsync.remote.field_mapping import CATEGORIES, FieldMappingResolver
from crmsync.remote.normalizer import normalize_organization
from crmsync.remote.sanitize import person_payload
from crmsync.sync.progress import (
    CANCELLED,
    COMPLETED,
    FAILED,
    PROCESSING,
    ProgressSnapshot,
    ProgressTracker,
    calculate_percentage,
    get_tracker,
)
from crmsync.sync.reconciler import ContactLookup, ContactReconciler, SyncAction

logger = logging.getLogger(__name__)


class SyncRejected(Exception):
    """The run could not start (bad credential, remote unreachable)."""


@dataclass
class SyncResults:
    total: int = 0
    processed: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "failed": self.failed,
            "errors": list(self.errors),
        }


@dataclass
class SyncPlan:
    run: SyncRun
    since: Optional[datetime]
    force: bool


@dataclass
class SyncOutcome:
    success: bool
    sync_id: Optional[str] = None
    sync_type: Optional[str] = None
    requested_sync_type: Optional[str] = None
    forced_full: bool = False
    since: Optional[datetime] = None
    duration_ms: Optional[int] = None
    results: SyncResults = field(default_factory=SyncResults)
    organizations: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        """Response body for the routing layer."""
        if not self.success:
            payload: Dict[str, Any] = {"success": False, "error": self.error}
            if self.sync_id:
                payload["syncId"] = self.sync_id
            return payload
        return {
            "success": True,
            "data": {
                "syncType": self.sync_type,
                "requestedSyncType": self.requested_sync_type,
                "forcedFull": self.forced_full,
                "sinceTimestamp": self.since.isoformat() if self.since else None,
                "syncId": self.sync_id,
                "duration": self.duration_ms,
                "results": self.results.to_dict(),
                "organizations": dict(self.organizations),
            },
        }


@dataclass
class ContactSyncOutcome:
    success: bool
    contact_id: int
    remote_updated: bool = False
    local_updated: bool = False
    error: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "data": {
                "contactId": self.contact_id,
                "remoteUpdated": self.remote_updated,
                "localUpdated": self.local_updated,
            },
        }
        if self.error:
            payload["error"] = self.error
        return payload


class SyncOrchestrator:
    """Runs contact syncs for one user's credential."""

    def __init__(
        self,
        client,
        store,
        *,
        tracker: Optional[ProgressTracker] = None,
        resolver: Optional[FieldMappingResolver] = None,
    ):
        """
        Args:
            client: RemoteClient (or AsyncMock in tests).
            store: SyncStore persistence collaborator.
            tracker: ProgressTracker. Defaults to the process-wide tracker.
            resolver: FieldMappingResolver for organization enrichment.
                Built per user on demand when omitted.
        """
        self.client = client
        self.store = store
        self.tracker = tracker if tracker is not None else get_tracker()
        self.resolver = resolver

    # ─── Public API ──────────────────────────────────────────────────────────

    async def run(
        self,
        user_id: int,
        sync_type=SyncType.INCREMENTAL,
        *,
        since: Optional[datetime] = None,
        batch_size: Optional[int] = None,
        force: bool = False,
    ) -> SyncOutcome:
        """prepare() then execute(). Never raises."""
        try:
            plan = await self.prepare(
                user_id, sync_type, since=since, batch_size=batch_size, force=force
            )
        except SyncRejected as exc:
            return SyncOutcome(success=False, error=str(exc))
        return await self.execute(plan)

    async def prepare(
        self,
        user_id: int,
        sync_type=SyncType.INCREMENTAL,
        *,
        since: Optional[datetime] = None,
        batch_size: Optional[int] = None,
        force: bool = False,
    ) -> SyncPlan:
        """Probe the credential, settle the mode and create the PENDING run.

        Raises:
            SyncRejected: if the probe fails or the request is invalid. No
                SyncRun is created in that case.
        """
        try:
            requested = SyncType(sync_type)
        except ValueError:
            raise SyncRejected(f"Unknown sync type: {sync_type}")

        try:
            await self.client.whoami()
        except CredentialError as exc:
            raise SyncRejected(exc.message) from exc
        except RemoteError as exc:
            raise SyncRejected(f"Unable to reach remote CRM: {exc.message}") from exc

        effective, since, reason = self._decide_mode(user_id, requested, since)
        forced_full = effective != requested
        if forced_full:
            logger.warning(
                "User %s requested %s sync; running FULL instead (%s)",
                user_id,
                requested.value,
                reason,
            )

        run = SyncRun(
            user_id=user_id,
            sync_type=effective.value,
            requested_sync_type=requested.value,
            forced_full=forced_full,
            batch_size=self._batch_size(batch_size),
        )
        run = self.store.create_or_update_sync_run(run)
        self.tracker.update(
            run.id, ProgressSnapshot(sync_id=run.id, status=PROCESSING)
        )
        logger.info(
            "Sync %s started for user %s (%s, batch size %d)",
            run.id,
            user_id,
            run.sync_type,
            run.batch_size,
        )
        return SyncPlan(
            run=run,
            since=since if effective == SyncType.INCREMENTAL else None,
            force=force,
        )

    async def execute(self, plan: SyncPlan) -> SyncOutcome:
        """Run the batch loop for a prepared plan.

        Errors end the run FAILED and come back as an outcome. Cancelling the
        task also records the run FAILED and pushes a ``cancelled`` snapshot,
        then lets the CancelledError propagate.
        """
        run = plan.run
        results = SyncResults()
        try:
            return await self._execute(plan, results)
        except asyncio.CancelledError:
            self._fail(run, results, "Sync cancelled", status=CANCELLED)
            raise
        except Exception as exc:
            logger.exception("Sync %s aborted", run.id)
            return self._fail(run, results, f"Sync aborted: {exc}")

    async def sync_contact(
        self, user_id: int, contact_id: int, force: bool = False
    ) -> ContactSyncOutcome:
        """Push one local contact to its remote person.

        Unlinked contacts are only stamped locally; no remote call is made
        for them, even with ``force``. Linked contacts are pushed when
        ``force`` is set or they are not already SYNCED.
        """
        contact = self.store.get_contact(user_id, contact_id)
        if contact is None:
            return ContactSyncOutcome(
                success=False, contact_id=contact_id, error="Contact not found"
            )

        if not contact.remote_person_id:
            self.store.mark_contact_sync_status(contact.id, RecordSyncStatus.PENDING)
            return ContactSyncOutcome(
                success=True, contact_id=contact_id, remote_updated=False, local_updated=True
            )

        if not force and contact.sync_status == RecordSyncStatus.SYNCED.value:
            return ContactSyncOutcome(success=True, contact_id=contact_id)

        try:
            await self.client.update_person(contact.remote_person_id, person_payload(contact))
        except RemoteError as exc:
            logger.warning("Pushing contact %s failed: %s", contact_id, exc)
            self.store.mark_contact_sync_status(contact.id, RecordSyncStatus.FAILED)
            return ContactSyncOutcome(
                success=False,
                contact_id=contact_id,
                local_updated=True,
                error=exc.message,
            )

        self.store.mark_contact_sync_status(contact.id, RecordSyncStatus.SYNCED)
        return ContactSyncOutcome(
            success=True, contact_id=contact_id, remote_updated=True, local_updated=True
        )

    # ─── Internal helpers ────────────────────────────────────────────────────

    def _decide_mode(self, user_id: int, requested: SyncType, since: Optional[datetime]):
        if requested == SyncType.FULL:
            return SyncType.FULL, None, None

        previous = self.store.latest_sync_run(user_id)
        if previous is not None and previous.status != RunStatus.SUCCESS.value:
            return (
                SyncType.FULL,
                None,
                f"previous run {previous.id} ended {previous.status}",
            )

        if since is None:
            last_ok = self.store.last_successful_sync_run(user_id)
            if last_ok is None:
                return SyncType.FULL, None, "no prior successful sync"
            since = last_ok.start_time
        return SyncType.INCREMENTAL, since, None

    @staticmethod
    def _batch_size(requested: Optional[int]) -> int:
        settings = get_settings()
        size = requested or settings.sync_batch_size
        return max(1, min(size, settings.sync_max_batch_size))

    async def _execute(self, plan: SyncPlan, results: SyncResults) -> SyncOutcome:
        run = plan.run

        try:
            records = await self.client.list_persons(since=plan.since)
        except RemoteError as exc:
            return self._fail(run, results, f"Failed to fetch persons: {exc.message}")

        results.total = len(records)
        run.total_contacts = results.total
        run = self.store.create_or_update_sync_run(run)

        size = run.batch_size
        batches = [records[i:i + size] for i in range(0, len(records), size)]
        self._push(run, results, batch_number=0, total_batches=len(batches))

        lookup = ContactLookup(self.store, run.user_id)
        reconciler = ContactReconciler(force=plan.force)

        for number, batch in enumerate(batches, start=1):
            label = ""
            for record in batch:
                label = _record_label(record)
                self._process_record(run.user_id, record, label, lookup, reconciler, results)

            results.processed += len(batch)
            run.contacts_processed = results.processed
            run.contacts_created = results.created
            run.contacts_updated = results.updated
            run.contacts_failed = results.failed
            run = self.store.create_or_update_sync_run(run)
            self._push(run, results, number, len(batches), current=label)

        organizations: Dict[str, int] = {}
        try:
            organizations = await self._sync_organizations(run.user_id)
        except Exception as exc:
            logger.warning("Organization sync for user %s failed: %s", run.user_id, exc)

        run.transition(RunStatus.SUCCESS)
        run = self.store.create_or_update_sync_run(run)
        self._push(run, results, len(batches), len(batches), status=COMPLETED)
        logger.info(
            "Sync %s finished: %d processed, %d created, %d updated, %d failed in %sms",
            run.id,
            results.processed,
            results.created,
            results.updated,
            results.failed,
            run.duration_ms,
        )
        return SyncOutcome(
            success=True,
            sync_id=run.id,
            sync_type=run.sync_type,
            requested_sync_type=run.requested_sync_type,
            forced_full=run.forced_full,
            since=plan.since,
            duration_ms=run.duration_ms,
            results=results,
            organizations=organizations,
        )

    def _process_record(self, user_id, record, label, lookup, reconciler, results) -> None:
        decision = None
        try:
            decision = reconciler.reconcile(record, lookup)
            if decision.action == SyncAction.CREATE:
                fields = self._link_organization(user_id, dict(decision.diff))
                self.store.create_contact(user_id, fields)
                results.created += 1
            elif decision.action == SyncAction.UPDATE:
                fields = self._link_organization(user_id, dict(decision.diff))
                self.store.update_contact(decision.contact.id, fields)
                results.updated += 1
        except Exception as exc:
            results.failed += 1
            results.errors.append(f"{label}: {exc}")
            logger.warning("Failed to sync %s: %s", label, exc)
            if decision is not None and decision.contact is not None:
                self._flag_failed(decision.contact.id)

    def _link_organization(self, user_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        remote_org_id = fields.get("remote_org_id")
        if remote_org_id:
            org = self.store.ensure_organization(
                user_id, remote_org_id, fields.get("organisation")
            )
            fields["organization_id"] = org.id
        return fields

    def _flag_failed(self, contact_id: int) -> None:
        try:
            self.store.mark_contact_sync_status(contact_id, RecordSyncStatus.FAILED)
        except Exception:
            logger.exception("Could not flag contact %s as FAILED", contact_id)

    async def _sync_organizations(self, user_id: int) -> Dict[str, int]:
        """Refresh stale linked organizations. Raises on remote failure."""
        settings = get_settings()
        older_than = datetime.utcnow() - timedelta(hours=settings.organization_refresh_hours)
        stale = self.store.find_organizations_needing_refresh(user_id, older_than)
        summary = {"refreshed": 0, "failed": 0, "missing": 0}
        if not stale:
            return summary

        remote_orgs = {
            str(o.get("id")): o for o in await self.client.list_organizations()
        }
        resolver = self.resolver or FieldMappingResolver(self.client, cache_key=str(user_id))

        for org in stale:
            raw = remote_orgs.get(org.remote_org_id)
            if raw is None:
                summary["missing"] += 1
                continue
            try:
                fields = normalize_organization(raw)
                fields.update(await _enrichment(resolver, raw))
                fields["last_refreshed_at"] = datetime.utcnow()
                fields["sync_status"] = RecordSyncStatus.SYNCED.value
                self.store.update_organization(org.id, fields)
                summary["refreshed"] += 1
            except Exception as exc:
                summary["failed"] += 1
                logger.warning("Failed to refresh organization %s: %s", org.remote_org_id, exc)
        return summary

    def _push(
        self,
        run: SyncRun,
        results: SyncResults,
        batch_number: int,
        total_batches: int,
        *,
        current: str = "",
        status: str = PROCESSING,
    ) -> None:
        self.tracker.update(
            run.id,
            ProgressSnapshot(
                sync_id=run.id,
                total_contacts=results.total,
                processed_contacts=results.processed,
                current_contact=current,
                percentage=calculate_percentage(results.processed, results.total),
                status=status,
                errors=list(results.errors),
                batch_number=batch_number,
                total_batches=total_batches,
            ),
        )

    def _fail(
        self, run: SyncRun, results: SyncResults, message: str, *, status: str = FAILED
    ) -> SyncOutcome:
        logger.error("Sync %s failed: %s", run.id, message)
        try:
            if not run.is_terminal:
                run.transition(RunStatus.FAILED, error=message)
            run = self.store.create_or_update_sync_run(run)
        except Exception:
            logger.exception("Could not record failure of sync %s", run.id)

        size = max(run.batch_size or 1, 1)
        self._push(
            run,
            results,
            math.ceil(results.processed / size),
            math.ceil(results.total / size),
            status=status,
        )
        return SyncOutcome(
            success=False,
            sync_id=run.id,
            sync_type=run.sync_type,
            requested_sync_type=run.requested_sync_type,
            forced_full=run.forced_full,
            duration_ms=run.duration_ms,
            results=results,
            error=message,
        )


async def _enrichment(resolver: FieldMappingResolver, raw: Dict[str, Any]) -> Dict[str, Any]:
    """sector/size/country for an organization, labels preferred over raw ids."""
    fields: Dict[str, Any] = {}
    for category in CATEGORIES:
        key = await resolver.resolve(category)
        if key is None:
            continue
        value = raw.get(key)
        if value in (None, ""):
            continue
        label = await resolver.translate(category, value)
        fields[category] = label or str(value)
    return fields


def _record_label(record: Any) -> str:
    if isinstance(record, dict):
        name = record.get("name") or "Unnamed"
        return f"{name} (#{record.get('id', '?')})"
    return repr(record)
