"""
Remote CRM record normalizer.

Converts raw person/organization dicts from the remote API into clean field
dicts that map directly onto the local SQLModel columns. No DB access here;
the orchestrator handles persistence.

The remote API is inconsistent about a few shapes, all handled here:

  email / phone:
    - list of dicts: [{"value": "a@x.com", "primary": true, "label": "work"}]
    - list of plain strings: ["a@x.com"]
    - a single string, or an empty list / None
    The entry flagged primary wins, otherwise the first non-blank one.

  org_id:
    - plain int, or a dict {"value": 7, "name": "Acme"}

  timestamps:
    - "YYYY-MM-DD HH:MM:SS" (UTC, list endpoints)
    - ISO 8601, with or without "T"/"Z"/offset
    Returned as naive UTC datetimes, matching the rest of the schema.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

_COUNTER_FIELDS = (
    "activities_count",
    "open_deals_count",
    "won_deals_count",
    "lost_deals_count",
    "closed_deals_count",
    "email_messages_count",
)


def parse_remote_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse a remote timestamp into a naive UTC datetime. Blank → None."""
    if not value:
        return None
    s = str(value).strip()
    if not s:
        return None
    if len(s) == 10:
        # Date-only values, e.g. last_activity_date
        return datetime.strptime(s, "%Y-%m-%d")
    parsed = datetime.fromisoformat(s.replace("Z", "+00:00").replace(" ", "T", 1))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def select_primary_value(entries: Union[None, str, List[Any]]) -> Optional[str]:
    """Pick the primary entry of a multi-valued email/phone field.

    Returns None for None, "" and [] instead of raising.
    """
    if entries is None:
        return None
    if isinstance(entries, str):
        return entries.strip() or None

    values = []
    for entry in entries:
        if isinstance(entry, dict):
            value = (entry.get("value") or "").strip()
            if value and entry.get("primary"):
                return value
        else:
            value = str(entry or "").strip()
        if value:
            values.append(value)
    return values[0] if values else None


def normalize_email(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return value.strip().lower() or None


def _org_id(raw_org: Any) -> Optional[str]:
    if raw_org is None:
        return None
    if isinstance(raw_org, dict):
        raw_org = raw_org.get("value")
    return str(raw_org) if raw_org not in (None, "") else None


def _org_name(raw: Dict[str, Any]) -> Optional[str]:
    if raw.get("org_name"):
        return raw["org_name"]
    org = raw.get("org_id")
    if isinstance(org, dict):
        return org.get("name")
    return None


def _count(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def remote_updated_at(raw: Dict[str, Any]) -> Optional[datetime]:
    """Last-modified time of a remote record (``update_time`` or ``updated``)."""
    return parse_remote_datetime(raw.get("update_time") or raw.get("updated"))


def normalize_person(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize a remote person dict into Contact model fields.

    Raises:
        ValueError: if the record has no id, or carries an unparseable
            timestamp. The orchestrator counts this as a per-record failure.
    """
    if not isinstance(raw, dict) or raw.get("id") in (None, ""):
        raise ValueError("Remote person record has no id")

    email = normalize_email(select_primary_value(raw.get("email")))
    name = (raw.get("name") or "").strip() or email or "Unknown Contact"

    fields: Dict[str, Any] = {
        "remote_person_id": str(raw["id"]),
        "name": name,
        "email": email,
        "phone": select_primary_value(raw.get("phone")),
        "organisation": _org_name(raw),
        "remote_org_id": _org_id(raw.get("org_id")),
        "job_title": raw.get("job_title") or None,
        "last_activity_date": parse_remote_datetime(raw.get("last_activity_date")),
        "last_remote_update": remote_updated_at(raw),
    }
    for key in _COUNTER_FIELDS:
        fields[key] = _count(raw.get(key))
    return fields


def normalize_organization(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize a remote organization dict into Organization model fields.

    Custom-field enrichment (sector/size/country) is applied by the caller,
    which owns the field mapping.
    """
    if not isinstance(raw, dict) or raw.get("id") in (None, ""):
        raise ValueError("Remote organization record has no id")
    return {
        "remote_org_id": str(raw["id"]),
        "name": (raw.get("name") or "").strip() or "Unknown Organization",
        "address": raw.get("address") or None,
        "website": raw.get("website") or None,
        "last_remote_update": remote_updated_at(raw),
    }
