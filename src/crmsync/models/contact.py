"""Local relationship data: users, organizations, contacts and activities."""
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel


class RecordSyncStatus(str, Enum):
    SYNCED = "SYNCED"
    PENDING = "PENDING"
    FAILED = "FAILED"


class ActivityType(str, Enum):
    CALL = "CALL"
    EMAIL = "EMAIL"
    MEETING = "MEETING"
    MEETING_REQUEST = "MEETING_REQUEST"
    LINKEDIN = "LINKEDIN"
    REFERRAL = "REFERRAL"
    CONFERENCE = "CONFERENCE"


class User(SQLModel, table=True):
    """Account owner. Holds the per-user remote CRM credential."""

    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(unique=True, index=True)
    name: Optional[str] = None
    remote_api_token: Optional[str] = None
    remote_user_id: Optional[int] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Organization(SQLModel, table=True):
    """Company record mirrored from the remote CRM, enriched via custom fields."""

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(default=1, index=True)
    remote_org_id: Optional[str] = Field(default=None, index=True)
    name: str
    sector: Optional[str] = None
    size: Optional[str] = None
    country: Optional[str] = None
    address: Optional[str] = None
    website: Optional[str] = None
    last_remote_update: Optional[datetime] = None
    last_refreshed_at: Optional[datetime] = None
    sync_status: str = RecordSyncStatus.PENDING.value
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Contact(SQLModel, table=True):
    """One row per person the user manages; the reconciliation target."""

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(default=1, index=True)
    remote_person_id: Optional[str] = Field(default=None, index=True)
    remote_org_id: Optional[str] = None
    organization_id: Optional[int] = Field(default=None, foreign_key="organization.id")

    name: str
    email: Optional[str] = Field(default=None, index=True)
    phone: Optional[str] = None
    organisation: Optional[str] = None
    job_title: Optional[str] = None

    # Relationship scoring and counters
    warmness_score: int = 0
    activities_count: int = 0
    open_deals_count: int = 0
    won_deals_count: int = 0
    lost_deals_count: int = 0
    closed_deals_count: int = 0
    email_messages_count: int = 0
    last_activity_date: Optional[datetime] = None

    is_active: bool = True
    last_remote_update: Optional[datetime] = None
    sync_status: str = RecordSyncStatus.SYNCED.value
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Activity(SQLModel, table=True):
    """A locally logged touchpoint, replicated one-way to the remote CRM."""

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(default=1, index=True)
    contact_id: Optional[int] = Field(default=None, foreign_key="contact.id", index=True)
    type: str = ActivityType.CALL.value
    subject: Optional[str] = None
    note: Optional[str] = None
    due_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    # Replication bookkeeping
    remote_activity_id: Optional[int] = None
    replicated_to_remote: bool = False
    remote_sync_attempts: int = 0
    last_remote_sync_attempt: Optional[datetime] = None
