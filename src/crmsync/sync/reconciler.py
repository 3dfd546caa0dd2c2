"""
ContactReconciler — decides what to do with one incoming remote person.

Matching order:
  1. exact remote person id
  2. normalized (trimmed, lower-cased) email, but only against a local
     contact that is unlinked or already linked to the same person

No match → CREATE. A match whose remote ``update_time`` is not newer than
the local ``last_remote_update`` → SKIP, unless ``force`` is set. That rule is
what keeps a repeated incremental sync from rewriting unchanged contacts.

The reconciler does no I/O of its own; lookups go through the injected
ContactLookup, and the orchestrator applies the decision.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from crmsync.models.contact import Contact, RecordSyncStatus
from crmsync.remote.normalizer import normalize_person


class SyncAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    SKIP = "SKIP"


@dataclass
class Reconciliation:
    action: SyncAction
    fields: Dict[str, Any]
    diff: Dict[str, Any] = field(default_factory=dict)
    contact: Optional[Contact] = None
    matched_by: Optional[str] = None


class ContactLookup:
    """Reads local contacts for one user through a SyncStore."""

    def __init__(self, store, user_id: int):
        self.store = store
        self.user_id = user_id

    def find_by_remote_id(self, remote_person_id: str) -> Optional[Contact]:
        return self.store.find_contact_by_remote_id(self.user_id, remote_person_id)

    def find_by_email(self, email: str) -> Optional[Contact]:
        return self.store.find_contact_by_email(self.user_id, email)


# Bookkeeping columns, excluded when deciding whether anything changed
_BOOKKEEPING = {"last_remote_update", "sync_status"}


class ContactReconciler:
    def __init__(self, force: bool = False):
        self.force = force

    def reconcile(self, remote_record: Dict[str, Any], lookup) -> Reconciliation:
        """
        Args:
            remote_record: Raw remote person dict.
            lookup: Anything with find_by_remote_id() / find_by_email().

        Raises:
            ValueError: for a malformed record (see normalize_person).
        """
        fields = normalize_person(remote_record)
        contact, matched_by = self._match(fields, lookup)

        if contact is None:
            create_fields = dict(fields)
            create_fields["sync_status"] = RecordSyncStatus.SYNCED.value
            return Reconciliation(action=SyncAction.CREATE, fields=fields, diff=create_fields)

        diff = self.diff(contact, fields)
        content_changed = bool(set(diff) - _BOOKKEEPING)

        if not self.force and self._is_stale(contact, fields, content_changed):
            return Reconciliation(
                action=SyncAction.SKIP, fields=fields, contact=contact, matched_by=matched_by
            )

        return Reconciliation(
            action=SyncAction.UPDATE,
            fields=fields,
            diff=diff,
            contact=contact,
            matched_by=matched_by,
        )

    @staticmethod
    def diff(contact: Contact, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Remote values that differ from the local row.

        A remote None never blanks out a local value: an empty email/phone
        list means "no information", not "delete".
        """
        changed: Dict[str, Any] = {}
        for key, value in fields.items():
            if value is None:
                continue
            if getattr(contact, key, None) != value:
                changed[key] = value
        if contact.sync_status != RecordSyncStatus.SYNCED.value:
            changed["sync_status"] = RecordSyncStatus.SYNCED.value
        return changed

    @staticmethod
    def _match(fields: Dict[str, Any], lookup):
        contact = lookup.find_by_remote_id(fields["remote_person_id"])
        if contact is not None:
            return contact, "remote_id"

        email = fields.get("email")
        if email:
            contact = lookup.find_by_email(email)
            if contact is not None and contact.remote_person_id in (
                None,
                fields["remote_person_id"],
            ):
                return contact, "email"
        return None, None

    @staticmethod
    def _is_stale(contact: Contact, fields: Dict[str, Any], content_changed: bool) -> bool:
        remote_ts = fields.get("last_remote_update")
        local_ts = contact.last_remote_update
        if remote_ts is not None and local_ts is not None:
            return remote_ts <= local_ts
        # Without both timestamps, only an actual content change counts.
        return not content_changed
