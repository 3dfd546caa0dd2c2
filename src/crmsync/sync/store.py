"""
SyncStore — the persistence contract the sync engine consumes.

Every method opens its own Session, so each contact create/update is its own
atomic unit and one bad record never rolls back its neighbours. Rows are
returned detached (refreshed before the session closes) so callers can read
attributes freely.

All lookups are scoped to the acting user's id.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from crmsync.config import get_settings
from crmsync.models.contact import Activity, Contact, Organization, RecordSyncStatus, User
from crmsync.models.sync import RunStatus, SyncRun


class SyncStore:
    def __init__(self, engine):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
        """
        self.engine = engine

    # ─── Users ───────────────────────────────────────────────────────────────

    def get_api_token(self, user_id: int) -> Optional[str]:
        """The user's remote credential, falling back to Settings."""
        with Session(self.engine) as s:
            user = s.get(User, user_id)
            token = user.remote_api_token if user else None
        return token or get_settings().remote_api_token or None

    def list_users_with_credentials(self) -> List[int]:
        with Session(self.engine) as s:
            users = s.exec(
                select(User).where(User.remote_api_token.is_not(None))
            ).all()
        return [u.id for u in users if (u.remote_api_token or "").strip()]

    # ─── Contacts ────────────────────────────────────────────────────────────

    def find_contact_by_remote_id(self, user_id: int, remote_person_id: str) -> Optional[Contact]:
        with Session(self.engine) as s:
            return s.exec(
                select(Contact).where(
                    Contact.user_id == user_id,
                    Contact.remote_person_id == str(remote_person_id),
                )
            ).first()

    def find_contact_by_email(self, user_id: int, email: str) -> Optional[Contact]:
        with Session(self.engine) as s:
            return s.exec(
                select(Contact).where(
                    Contact.user_id == user_id,
                    func.lower(Contact.email) == email.strip().lower(),
                )
            ).first()

    def get_contact(self, user_id: int, contact_id: int) -> Optional[Contact]:
        with Session(self.engine) as s:
            contact = s.get(Contact, contact_id)
        if contact is None or contact.user_id != user_id:
            return None
        return contact

    def create_contact(self, user_id: int, fields: Dict[str, Any]) -> Contact:
        contact = Contact(user_id=user_id, **fields)
        with Session(self.engine) as s:
            s.add(contact)
            s.commit()
            s.refresh(contact)
        return contact

    def update_contact(self, contact_id: int, fields: Dict[str, Any]) -> Contact:
        with Session(self.engine) as s:
            contact = s.get(Contact, contact_id)
            if contact is None:
                raise LookupError(f"Contact {contact_id} not found")
            for k, v in fields.items():
                setattr(contact, k, v)
            contact.updated_at = datetime.utcnow()
            s.add(contact)
            s.commit()
            s.refresh(contact)
        return contact

    # ─── Sync runs ───────────────────────────────────────────────────────────

    def create_or_update_sync_run(self, run: SyncRun) -> SyncRun:
        """Insert or overwrite a run row. A stored terminal status is never reverted."""
        with Session(self.engine) as s:
            stored = s.get(SyncRun, run.id)
            if stored is not None and stored.is_terminal and stored.status != run.status:
                # Keep the terminal row; last writer wins only among PENDING writes.
                return stored
            run.updated_at = datetime.utcnow()
            merged = s.merge(run)
            s.commit()
            s.refresh(merged)
        return merged

    def get_sync_run(self, run_id: str, user_id: Optional[int] = None) -> Optional[SyncRun]:
        with Session(self.engine) as s:
            run = s.get(SyncRun, run_id)
        if run is None or (user_id is not None and run.user_id != user_id):
            return None
        return run

    def latest_sync_run(self, user_id: int) -> Optional[SyncRun]:
        with Session(self.engine) as s:
            return s.exec(
                select(SyncRun)
                .where(SyncRun.user_id == user_id)
                .order_by(SyncRun.start_time.desc())
            ).first()

    def last_successful_sync_run(self, user_id: int) -> Optional[SyncRun]:
        with Session(self.engine) as s:
            return s.exec(
                select(SyncRun)
                .where(
                    SyncRun.user_id == user_id,
                    SyncRun.status == RunStatus.SUCCESS.value,
                )
                .order_by(SyncRun.start_time.desc())
            ).first()

    # ─── Organizations ───────────────────────────────────────────────────────

    def ensure_organization(self, user_id: int, remote_org_id: str, name: Optional[str]) -> Organization:
        """Return the local organization for a remote id, creating a placeholder."""
        with Session(self.engine) as s:
            org = s.exec(
                select(Organization).where(
                    Organization.user_id == user_id,
                    Organization.remote_org_id == str(remote_org_id),
                )
            ).first()
            if org is None:
                org = Organization(
                    user_id=user_id,
                    remote_org_id=str(remote_org_id),
                    name=name or "Unknown Organization",
                )
                s.add(org)
                s.commit()
                s.refresh(org)
        return org

    def find_organizations_needing_refresh(
        self, user_id: int, older_than: datetime
    ) -> List[Organization]:
        """Linked organizations never refreshed, or refreshed before ``older_than``."""
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(Organization).where(
                        Organization.user_id == user_id,
                        Organization.remote_org_id.is_not(None),
                        (Organization.last_refreshed_at.is_(None))
                        | (Organization.last_refreshed_at < older_than),
                    )
                ).all()
            )

    def update_organization(self, org_id: int, fields: Dict[str, Any]) -> Organization:
        with Session(self.engine) as s:
            org = s.get(Organization, org_id)
            if org is None:
                raise LookupError(f"Organization {org_id} not found")
            for k, v in fields.items():
                setattr(org, k, v)
            org.updated_at = datetime.utcnow()
            s.add(org)
            s.commit()
            s.refresh(org)
        return org

    # ─── Activities ──────────────────────────────────────────────────────────

    def create_activity(self, user_id: int, fields: Dict[str, Any]) -> Activity:
        activity = Activity(user_id=user_id, **fields)
        with Session(self.engine) as s:
            s.add(activity)
            s.commit()
            s.refresh(activity)
        return activity

    def get_activity(self, user_id: int, activity_id: int) -> Optional[Activity]:
        with Session(self.engine) as s:
            activity = s.get(Activity, activity_id)
        if activity is None or activity.user_id != user_id:
            return None
        return activity

    def record_replication_attempt(self, activity_id: int, max_attempts: int) -> Activity:
        """Bump the attempt counter (never past ``max_attempts``) and stamp the time."""
        with Session(self.engine) as s:
            activity = s.get(Activity, activity_id)
            if activity is None:
                raise LookupError(f"Activity {activity_id} not found")
            activity.remote_sync_attempts = min(activity.remote_sync_attempts + 1, max_attempts)
            activity.last_remote_sync_attempt = datetime.utcnow()
            s.add(activity)
            s.commit()
            s.refresh(activity)
        return activity

    def mark_activity_replicated(self, activity_id: int, remote_activity_id: Optional[int]) -> Activity:
        with Session(self.engine) as s:
            activity = s.get(Activity, activity_id)
            if activity is None:
                raise LookupError(f"Activity {activity_id} not found")
            if remote_activity_id is not None:
                activity.remote_activity_id = remote_activity_id
            activity.replicated_to_remote = True
            s.add(activity)
            s.commit()
            s.refresh(activity)
        return activity

    def mark_contact_sync_status(self, contact_id: int, status: RecordSyncStatus) -> Contact:
        return self.update_contact(contact_id, {"sync_status": status.value})
