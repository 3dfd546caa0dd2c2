"""Shared test fixtures."""
from datetime import datetime
from typing import Any, Dict, Generator

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from crmsync.models.contact import Activity, Contact, Organization, User  # noqa: F401
from crmsync.models.sync import SyncRun  # noqa: F401
from crmsync.remote.field_mapping import default_cache
from crmsync.sync.store import SyncStore

USER_ID = 1


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="seeded_user")
def seeded_user_fixture(test_session: Session) -> User:
    """The acting user, with a remote API token."""
    user = User(id=USER_ID, email="owner@example.com", name="Owner", remote_api_token="tok-123")
    test_session.add(user)
    test_session.commit()
    test_session.refresh(user)
    return user


@pytest.fixture(name="store")
def store_fixture(engine, seeded_user) -> SyncStore:
    return SyncStore(engine)


@pytest.fixture(autouse=True)
def clear_field_mapping_cache():
    default_cache.invalidate()
    yield
    default_cache.invalidate()


def make_person(
    person_id: int,
    name: str = None,
    email: str = None,
    update_time: str = "2025-01-15 07:30:00",
    **extra: Any,
) -> Dict[str, Any]:
    """A remote person record shaped like the list endpoint returns it."""
    record: Dict[str, Any] = {
        "id": person_id,
        "name": name or f"Person {person_id}",
        "email": [{"value": email or f"person{person_id}@example.com", "primary": True}],
        "phone": [{"value": f"+1555000{person_id:04d}", "primary": True}],
        "org_id": None,
        "update_time": update_time,
        "add_time": "2025-01-01 09:00:00",
        "activities_count": 2,
        "open_deals_count": 1,
    }
    record.update(extra)
    return record


def seed_contact(session: Session, **fields: Any) -> Contact:
    contact = Contact(user_id=USER_ID, **fields)
    session.add(contact)
    session.commit()
    session.refresh(contact)
    return contact


def seed_run(session: Session, **fields: Any) -> SyncRun:
    defaults = {"user_id": USER_ID, "start_time": datetime(2025, 1, 15, 7, 0)}
    defaults.update(fields)
    run = SyncRun(**defaults)
    session.add(run)
    session.commit()
    session.refresh(run)
    return run
