"""Integration tests for /activities routes."""
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from conftest import USER_ID, seed_contact
from crmsync.api.deps import get_current_user_id, get_optional_remote_client, get_store
from crmsync.api.main import create_app
from crmsync.config import get_settings
from crmsync.remote.client import RemoteNetworkError
from crmsync.sync.store import SyncStore


@pytest.fixture(name="remote")
def remote_fixture():
    remote = AsyncMock()
    remote.create_activity = AsyncMock(return_value={"id": 555})
    return remote


@pytest.fixture(name="client")
def client_fixture(engine, seeded_user, remote):
    app = create_app()
    app.dependency_overrides[get_store] = lambda: SyncStore(engine)
    app.dependency_overrides[get_optional_remote_client] = lambda: remote
    app.dependency_overrides[get_current_user_id] = lambda: USER_ID
    with TestClient(app) as c:
        yield c


class TestCreateActivity:
    def test_linked_contact_replicated_in_background(self, client, remote, test_session):
        contact = seed_contact(test_session, name="Ada", remote_person_id="42")
        resp = client.post("/activities/", json={
            "contactId": contact.id,
            "type": "MEETING",
            "subject": "Quarterly review",
        })

        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["replicationScheduled"] is True

        remote.create_activity.assert_awaited_once()
        payload = remote.create_activity.await_args.args[0]
        assert payload["type"] == "meeting"
        assert payload["person_id"] == 42

        status = client.get(f"/activities/{data['activityId']}/sync-status").json()
        assert status["replicatedToRemote"] is True
        assert status["remoteActivityId"] == 555
        assert status["attempts"] == 1

    def test_unlinked_contact_not_scheduled(self, client, remote, test_session):
        contact = seed_contact(test_session, name="Local Only")
        resp = client.post("/activities/", json={"contactId": contact.id, "type": "CALL"})

        assert resp.status_code == 201
        assert resp.json()["data"]["replicationScheduled"] is False
        remote.create_activity.assert_not_awaited()

    def test_replication_failure_does_not_affect_response(
        self, client, remote, test_session, monkeypatch
    ):
        monkeypatch.setattr(get_settings(), "replication_retry_delay_seconds", 0.0)
        remote.create_activity.side_effect = RemoteNetworkError("down")
        contact = seed_contact(test_session, name="Ada", remote_person_id="42")

        resp = client.post("/activities/", json={"contactId": contact.id})

        assert resp.status_code == 201
        activity_id = resp.json()["data"]["activityId"]
        status = client.get(f"/activities/{activity_id}/sync-status").json()
        assert status["replicatedToRemote"] is False
        assert status["attempts"] == 3

    def test_unknown_contact_is_404(self, client):
        resp = client.post("/activities/", json={"contactId": 999})
        assert resp.status_code == 404

    def test_invalid_type_is_422(self, client, test_session):
        contact = seed_contact(test_session, name="Ada")
        resp = client.post("/activities/", json={"contactId": contact.id, "type": "SMOKE_SIGNAL"})
        assert resp.status_code == 422


class TestActivitySyncStatus:
    def test_unknown_activity_is_404(self, client):
        resp = client.get("/activities/999/sync-status")
        assert resp.status_code == 404
