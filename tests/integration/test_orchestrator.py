"""
Integration tests for SyncOrchestrator.

Uses AsyncMock for the remote client and an in-memory SQLite DB.
No real network calls are made.
"""
import asyncio
from datetime import datetime
from unittest.mock import AsyncMock

import pytest
from sqlmodel import Session, select

from conftest import USER_ID, make_person, seed_contact, seed_run
from crmsync.models.contact import Contact, Organization, RecordSyncStatus
from crmsync.models.sync import RunStatus, SyncRun, SyncType
from crmsync.remote.client import (
    CredentialError,
    RemoteAPIError,
    RemoteField,
    RemoteFieldOption,
    RemoteNetworkError,
    RemoteUser,
)
from crmsync.remote.field_mapping import FieldMappingCache, FieldMappingResolver
from crmsync.sync.orchestrator import SyncOrchestrator, SyncRejected
from crmsync.sync.progress import CANCELLED, COMPLETED, FAILED, PROCESSING, ProgressTracker


# ─── Mock remote client ───────────────────────────────────────────────────────

def make_mock_client(persons=None, organizations=None, fields=None):
    client = AsyncMock()
    client.whoami = AsyncMock(return_value=RemoteUser(id=9, name="Owner"))
    client.list_persons = AsyncMock(return_value=persons or [])
    client.list_organizations = AsyncMock(return_value=organizations or [])
    client.list_organization_fields = AsyncMock(return_value=fields or [])
    client.update_person = AsyncMock(return_value={"id": 42})
    return client


@pytest.fixture(name="tracker")
def tracker_fixture():
    return ProgressTracker()


def make_orchestrator(client, store, tracker):
    resolver = FieldMappingResolver(client, cache=FieldMappingCache(), configured_keys={})
    return SyncOrchestrator(client, store, tracker=tracker, resolver=resolver)


def contacts(engine):
    with Session(engine) as s:
        return s.exec(select(Contact).order_by(Contact.remote_person_id)).all()


# ─── Full / incremental runs ──────────────────────────────────────────────────

class TestRun:
    @pytest.mark.asyncio
    async def test_full_sync_creates_contacts_in_batches(self, engine, store, tracker):
        persons = [make_person(i) for i in range(1, 151)]
        client = make_mock_client(persons)
        orchestrator = make_orchestrator(client, store, tracker)

        observed = []
        persisted = []

        def on_progress(snapshot):
            if snapshot.status == PROCESSING and snapshot.batch_number > 0:
                observed.append(snapshot.processed_contacts)
                persisted.append(store.get_sync_run(snapshot.sync_id).contacts_processed)

        plan = await orchestrator.prepare(USER_ID, SyncType.FULL, batch_size=50)
        tracker.subscribe(plan.run.id, on_progress)
        outcome = await orchestrator.execute(plan)

        assert outcome.success
        assert observed == [50, 100, 150]
        assert persisted == [50, 100, 150]
        assert outcome.results.created == 150
        assert outcome.results.processed == 150
        assert outcome.results.failed == 0
        assert len(contacts(engine)) == 150

        run = store.get_sync_run(outcome.sync_id)
        assert run.status == RunStatus.SUCCESS.value
        assert run.contacts_processed == 150
        assert run.total_contacts == 150
        assert run.end_time is not None
        assert tracker.get(outcome.sync_id).status == COMPLETED
        client.list_persons.assert_awaited_once_with(since=None)

    @pytest.mark.asyncio
    async def test_repeated_incremental_sync_is_idempotent(self, engine, store, tracker):
        persons = [make_person(i) for i in range(1, 6)]
        client = make_mock_client(persons)
        orchestrator = make_orchestrator(client, store, tracker)

        first = await orchestrator.run(USER_ID, SyncType.INCREMENTAL)
        second = await orchestrator.run(USER_ID, SyncType.INCREMENTAL)

        assert first.results.created == 5
        assert second.success
        assert second.sync_type == SyncType.INCREMENTAL.value
        assert second.results.created == 0
        assert second.results.updated == 0
        assert second.results.processed == 5
        assert len(contacts(engine)) == 5

        since = client.list_persons.await_args_list[1].kwargs["since"]
        assert since == store.get_sync_run(first.sync_id).start_time

    @pytest.mark.asyncio
    async def test_newer_remote_record_updates(self, engine, store, tracker, test_session):
        seed_contact(
            test_session,
            name="Old Name",
            email="person1@example.com",
            remote_person_id="1",
            last_remote_update=datetime(2025, 1, 1),
        )
        client = make_mock_client([make_person(1, name="New Name")])
        outcome = await make_orchestrator(client, store, tracker).run(USER_ID, SyncType.FULL)

        assert outcome.results.updated == 1
        assert outcome.results.created == 0
        assert contacts(engine)[0].name == "New Name"

    @pytest.mark.asyncio
    async def test_email_match_links_existing_contact(self, engine, store, tracker, test_session):
        seed_contact(test_session, name="Ada", email="ADA@example.com")
        client = make_mock_client([make_person(42, name="Ada", email="ada@example.com")])
        outcome = await make_orchestrator(client, store, tracker).run(USER_ID, SyncType.FULL)

        assert outcome.results.updated == 1
        rows = contacts(engine)
        assert len(rows) == 1
        assert rows[0].remote_person_id == "42"

    @pytest.mark.asyncio
    async def test_malformed_record_counted_and_run_continues(self, store, tracker):
        persons = [make_person(1), {"name": "No id"}, make_person(3)]
        client = make_mock_client(persons)
        outcome = await make_orchestrator(client, store, tracker).run(USER_ID, SyncType.FULL)

        assert outcome.success
        assert outcome.results.failed >= 1
        assert outcome.results.processed == 3
        assert outcome.results.created == 2
        assert outcome.results.errors
        assert store.get_sync_run(outcome.sync_id).status == RunStatus.SUCCESS.value

    @pytest.mark.asyncio
    async def test_empty_result_succeeds(self, store, tracker):
        client = make_mock_client([])
        outcome = await make_orchestrator(client, store, tracker).run(USER_ID, SyncType.FULL)

        assert outcome.success
        assert outcome.results.processed == 0
        assert store.get_sync_run(outcome.sync_id).status == RunStatus.SUCCESS.value

    @pytest.mark.asyncio
    async def test_finished_runs_leave_the_tracker(self, store):
        tracker = ProgressTracker(retention_seconds=0)
        client = make_mock_client([make_person(1)])
        orchestrator = make_orchestrator(client, store, tracker)

        for _ in range(5):
            outcome = await orchestrator.run(USER_ID, SyncType.FULL)
            assert outcome.success

        assert tracker.snapshot_count() == 0


# ─── Failures ─────────────────────────────────────────────────────────────────

class TestFailures:
    @pytest.mark.asyncio
    async def test_fetch_failure_marks_run_failed(self, store, tracker):
        client = make_mock_client()
        client.list_persons.side_effect = RemoteNetworkError("connection refused")
        outcome = await make_orchestrator(client, store, tracker).run(USER_ID, SyncType.FULL)

        assert not outcome.success
        assert outcome.sync_id
        run = store.get_sync_run(outcome.sync_id)
        assert run.status == RunStatus.FAILED.value
        assert "connection refused" in run.error
        assert tracker.get(outcome.sync_id).status == FAILED

    @pytest.mark.asyncio
    async def test_rejected_credential_creates_no_run(self, engine, store, tracker):
        client = make_mock_client()
        client.whoami.side_effect = CredentialError("Remote API key expired or invalid")
        orchestrator = make_orchestrator(client, store, tracker)

        with pytest.raises(SyncRejected):
            await orchestrator.prepare(USER_ID, SyncType.FULL)

        outcome = await orchestrator.run(USER_ID, SyncType.FULL)
        assert not outcome.success
        assert outcome.sync_id is None
        with Session(engine) as s:
            assert s.exec(select(SyncRun)).all() == []
        client.list_persons.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_sync_type_rejected(self, store, tracker):
        orchestrator = make_orchestrator(make_mock_client(), store, tracker)
        with pytest.raises(SyncRejected):
            await orchestrator.prepare(USER_ID, "SOMETIMES")

    @pytest.mark.asyncio
    async def test_cancelled_run_recorded_and_reraised(self, store, tracker):
        client = make_mock_client()
        client.list_persons.side_effect = asyncio.CancelledError()
        orchestrator = make_orchestrator(client, store, tracker)
        plan = await orchestrator.prepare(USER_ID, SyncType.FULL)

        events = []
        tracker.subscribe(plan.run.id, lambda snapshot: events.append(snapshot.event_type))

        with pytest.raises(asyncio.CancelledError):
            await orchestrator.execute(plan)

        run = store.get_sync_run(plan.run.id)
        assert run.status == RunStatus.FAILED.value
        assert run.error == "Sync cancelled"
        assert events == ["cancelled"]
        assert tracker.get(plan.run.id).status == CANCELLED


# ─── Mode override ────────────────────────────────────────────────────────────

class TestModeOverride:
    @pytest.mark.asyncio
    async def test_failed_previous_run_forces_full(self, store, tracker, test_session):
        seed_run(test_session, status=RunStatus.SUCCESS.value, start_time=datetime(2025, 1, 10))
        seed_run(test_session, status=RunStatus.FAILED.value, start_time=datetime(2025, 1, 15))
        client = make_mock_client([make_person(1)])

        outcome = await make_orchestrator(client, store, tracker).run(
            USER_ID, SyncType.INCREMENTAL
        )

        assert outcome.sync_type == SyncType.FULL.value
        assert outcome.requested_sync_type == SyncType.INCREMENTAL.value
        assert outcome.forced_full is True
        assert outcome.to_payload()["data"]["forcedFull"] is True
        client.list_persons.assert_awaited_once_with(since=None)

    @pytest.mark.asyncio
    async def test_no_prior_success_forces_full(self, store, tracker):
        client = make_mock_client()
        outcome = await make_orchestrator(client, store, tracker).run(
            USER_ID, SyncType.INCREMENTAL
        )
        assert outcome.forced_full is True

    @pytest.mark.asyncio
    async def test_explicit_since_used_after_success(self, store, tracker, test_session):
        seed_run(test_session, status=RunStatus.SUCCESS.value)
        since = datetime(2025, 1, 14, 12, 0)
        client = make_mock_client()

        outcome = await make_orchestrator(client, store, tracker).run(
            USER_ID, SyncType.INCREMENTAL, since=since
        )

        assert outcome.forced_full is False
        assert outcome.since == since
        client.list_persons.assert_awaited_once_with(since=since)

    @pytest.mark.asyncio
    async def test_default_cursor_reported(self, store, tracker, test_session):
        previous = seed_run(test_session, status=RunStatus.SUCCESS.value)
        client = make_mock_client()

        outcome = await make_orchestrator(client, store, tracker).run(
            USER_ID, SyncType.INCREMENTAL
        )

        assert outcome.since == previous.start_time
        assert outcome.to_payload()["data"]["sinceTimestamp"] == "2025-01-15T07:00:00"
        client.list_persons.assert_awaited_once_with(since=previous.start_time)

    @pytest.mark.asyncio
    async def test_full_sync_reports_no_cursor(self, store, tracker):
        outcome = await make_orchestrator(make_mock_client(), store, tracker).run(
            USER_ID, SyncType.FULL
        )
        assert outcome.to_payload()["data"]["sinceTimestamp"] is None

    @pytest.mark.asyncio
    async def test_batch_size_clamped(self, store, tracker):
        orchestrator = make_orchestrator(make_mock_client(), store, tracker)
        plan = await orchestrator.prepare(USER_ID, SyncType.FULL, batch_size=10_000)
        assert plan.run.batch_size == 500


# ─── Organizations ────────────────────────────────────────────────────────────

class TestOrganizations:
    @pytest.mark.asyncio
    async def test_linked_organization_enriched(self, engine, store, tracker):
        persons = [make_person(1, org_id={"value": 7, "name": "Acme"})]
        organizations = [{"id": 7, "name": "Acme Corp", "hash_sector": 10, "hash_country": "PT"}]
        fields = [
            RemoteField(
                key="hash_sector",
                name="Sector",
                options=[RemoteFieldOption(id=10, label="Finance")],
            ),
            RemoteField(key="hash_country", name="Country"),
        ]
        client = make_mock_client(persons, organizations, fields)

        outcome = await make_orchestrator(client, store, tracker).run(USER_ID, SyncType.FULL)

        assert outcome.organizations["refreshed"] == 1
        with Session(engine) as s:
            org = s.exec(select(Organization)).one()
            contact = s.exec(select(Contact)).one()
        assert org.name == "Acme Corp"
        assert org.sector == "Finance"
        assert org.country == "PT"
        assert org.last_refreshed_at is not None
        assert contact.organization_id == org.id

    @pytest.mark.asyncio
    async def test_organization_failure_does_not_fail_run(self, store, tracker):
        persons = [make_person(1, org_id=7)]
        client = make_mock_client(persons)
        client.list_organizations.side_effect = RemoteAPIError("boom", 500)

        outcome = await make_orchestrator(client, store, tracker).run(USER_ID, SyncType.FULL)

        assert outcome.success
        assert outcome.results.created == 1


# ─── Single-contact push ──────────────────────────────────────────────────────

class TestSyncContact:
    @pytest.mark.asyncio
    async def test_unlinked_contact_with_force_makes_no_remote_call(self, store, tracker, test_session):
        contact = seed_contact(test_session, name="Local Only")
        client = make_mock_client()

        outcome = await make_orchestrator(client, store, tracker).sync_contact(
            USER_ID, contact.id, force=True
        )

        assert outcome.success
        assert outcome.remote_updated is False
        assert outcome.local_updated is True
        client.update_person.assert_not_awaited()
        assert store.get_contact(USER_ID, contact.id).sync_status == RecordSyncStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_linked_contact_pushed(self, store, tracker, test_session):
        contact = seed_contact(
            test_session,
            name="Ada <b>Lovelace</b>",
            email="ada@example.com",
            remote_person_id="42",
            sync_status=RecordSyncStatus.PENDING.value,
        )
        client = make_mock_client()

        outcome = await make_orchestrator(client, store, tracker).sync_contact(USER_ID, contact.id)

        assert outcome.remote_updated is True
        person_id, payload = client.update_person.await_args.args
        assert person_id == "42"
        assert payload["name"] == "Ada Lovelace"
        assert payload["email"] == ["ada@example.com"]
        assert store.get_contact(USER_ID, contact.id).sync_status == RecordSyncStatus.SYNCED.value

    @pytest.mark.asyncio
    async def test_synced_contact_without_force_is_noop(self, store, tracker, test_session):
        contact = seed_contact(test_session, name="Ada", remote_person_id="42")
        client = make_mock_client()

        outcome = await make_orchestrator(client, store, tracker).sync_contact(USER_ID, contact.id)

        assert outcome.success
        assert outcome.remote_updated is False
        client.update_person.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_push_failure_flags_contact(self, store, tracker, test_session):
        contact = seed_contact(test_session, name="Ada", remote_person_id="42")
        client = make_mock_client()
        client.update_person.side_effect = RemoteAPIError("Person not found", 404)

        outcome = await make_orchestrator(client, store, tracker).sync_contact(
            USER_ID, contact.id, force=True
        )

        assert not outcome.success
        assert outcome.error == "Person not found"
        assert store.get_contact(USER_ID, contact.id).sync_status == RecordSyncStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_unknown_contact(self, store, tracker):
        outcome = await make_orchestrator(make_mock_client(), store, tracker).sync_contact(
            USER_ID, 999
        )
        assert not outcome.success
        assert outcome.error == "Contact not found"
