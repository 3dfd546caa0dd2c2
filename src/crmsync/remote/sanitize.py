"""Outbound payload builders for data written to the remote CRM."""
import re
from typing import Any, Dict, Optional

from crmsync.config import get_settings
from crmsync.models.contact import Contact

_SCRIPT_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]*>")


def sanitize_string(value: Optional[str], max_length: int) -> Optional[str]:
    """Strip script blocks and HTML tags, trim, and truncate. Blank → None."""
    if not value:
        return None
    cleaned = _TAG_RE.sub("", _SCRIPT_RE.sub("", value)).strip()
    if not cleaned:
        return None
    return cleaned[:max_length]


def person_payload(contact: Contact) -> Dict[str, Any]:
    """Remote person body for a local contact."""
    settings = get_settings()
    email = sanitize_string(contact.email, settings.max_email_length)
    phone = sanitize_string(contact.phone, settings.max_phone_length)
    payload: Dict[str, Any] = {
        "name": sanitize_string(contact.name, settings.max_name_length) or "Unknown Contact",
        "email": [email] if email else [],
        "phone": [phone] if phone else [],
    }
    if contact.remote_org_id and contact.remote_org_id.isdigit():
        payload["org_id"] = int(contact.remote_org_id)
    return payload
