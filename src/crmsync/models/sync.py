"""Sync run audit model."""
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlmodel import Field, SQLModel


class SyncType(str, Enum):
    FULL = "FULL"
    INCREMENTAL = "INCREMENTAL"


class RunStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


TERMINAL_STATUSES = {RunStatus.SUCCESS.value, RunStatus.FAILED.value}


class InvalidTransitionError(ValueError):
    """Raised when a run's status would move backwards."""


class SyncRun(SQLModel, table=True):
    """Records each sync run. Never deleted; doubles as the audit trail."""

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: int = Field(default=1, index=True)
    sync_type: str = SyncType.FULL.value
    requested_sync_type: Optional[str] = None
    forced_full: bool = False
    batch_size: int = 50

    total_contacts: int = 0
    contacts_processed: int = 0
    contacts_created: int = 0
    contacts_updated: int = 0
    contacts_failed: int = 0

    start_time: datetime = Field(default_factory=datetime.utcnow)
    end_time: Optional[datetime] = None
    duration_ms: Optional[int] = None
    status: str = RunStatus.PENDING.value  # "PENDING", "SUCCESS", "FAILED"
    error: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: RunStatus, *, error: Optional[str] = None) -> None:
        """Move a PENDING run to a terminal status and stamp its timings."""
        if self.status != RunStatus.PENDING.value:
            raise InvalidTransitionError(
                f"Sync run {self.id} is already {self.status}; cannot move to {status.value}"
            )
        now = datetime.utcnow()
        self.status = status.value
        self.error = error
        self.end_time = now
        self.duration_ms = int((now - self.start_time).total_seconds() * 1000)
        self.updated_at = now
