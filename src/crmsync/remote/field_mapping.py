"""
Custom-field discovery for organization enrichment.

The remote CRM stores sector, size and country as organization custom
fields whose keys are opaque hashes (e.g. "a1b2c3..."), different for every
account. FieldMappingResolver works out which key holds which concept and
the id → label table of its options, so enum values can be translated.

Resolution order per category:
  1. a key configured in Settings (field_key_sector / _size / _country)
  2. discovery: the field whose name equals the category, compared
     case-insensitively after trimming. Only exact names count; "Industry"
     never satisfies "sector" and "Employee Count" never satisfies "size".

The mapping set lives in process memory with a TTL and is safe to rebuild
at any time. A failed metadata fetch degrades to "no mappings" and is not
cached, so the next call tries again.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import ValidationError

from crmsync.config import get_settings
from crmsync.remote.client import RemoteError

logger = logging.getLogger(__name__)

CATEGORIES = ("sector", "size", "country")


@dataclass
class FieldMapping:
    category: str
    field_key: str
    field_name: str
    options: Dict[str, str] = field(default_factory=dict)


class FieldMappingCache:
    """Thread-safe TTL cache of resolved mapping sets, keyed per account."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[float, Dict[str, FieldMapping]]] = {}

    def get(self, key: str) -> Optional[Dict[str, FieldMapping]]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, mappings = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return mappings

    def put(self, key: str, mappings: Dict[str, FieldMapping], ttl_seconds: float) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + ttl_seconds, mappings)

    def invalidate(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)


default_cache = FieldMappingCache()


class FieldMappingResolver:
    """
    Resolve semantic categories to remote custom-field keys and labels.

    Args:
        client: RemoteClient (or AsyncMock in tests).
        cache_key: Identifies the account whose fields are cached, usually
            the local user id.
        cache: Shared FieldMappingCache. Defaults to the process-wide one.
        ttl_seconds: Freshness window. Defaults to Settings.
        configured_keys: {category: field_key}. Defaults to Settings.
    """

    def __init__(
        self,
        client,
        *,
        cache_key: str = "default",
        cache: Optional[FieldMappingCache] = None,
        ttl_seconds: Optional[float] = None,
        configured_keys: Optional[Dict[str, str]] = None,
    ):
        settings = get_settings()
        self.client = client
        self.cache_key = str(cache_key)
        self.cache = cache if cache is not None else default_cache
        self.ttl_seconds = (
            ttl_seconds if ttl_seconds is not None else settings.field_mapping_ttl_seconds
        )
        if configured_keys is None:
            configured_keys = {
                "sector": settings.field_key_sector,
                "size": settings.field_key_size,
                "country": settings.field_key_country,
            }
        self.configured_keys = {k: v for k, v in configured_keys.items() if v}

    async def mappings(self) -> Dict[str, FieldMapping]:
        """Return the full mapping set, fetching metadata on a cache miss."""
        cached = self.cache.get(self.cache_key)
        if cached is not None:
            return cached

        try:
            fields = await self.client.list_organization_fields()
        except (RemoteError, ValidationError) as exc:
            logger.warning("Custom-field metadata unavailable: %s", exc)
            return {}

        mappings = self._build(fields)
        self.cache.put(self.cache_key, mappings, self.ttl_seconds)
        return mappings

    async def resolve(self, category: str) -> Optional[str]:
        """Remote field key for a category, or None."""
        mapping = (await self.mappings()).get(category)
        return mapping.field_key if mapping else None

    async def translate(self, category: str, option_id: Any) -> Optional[str]:
        """Label of ``option_id`` within the category's field, or None."""
        if option_id is None or option_id == "":
            return None
        mapping = (await self.mappings()).get(category)
        if mapping is None:
            return None
        return mapping.options.get(str(option_id))

    def _build(self, fields) -> Dict[str, FieldMapping]:
        by_key = {f.key: f for f in fields}
        result: Dict[str, FieldMapping] = {}

        for category in CATEGORIES:
            chosen = None
            configured = self.configured_keys.get(category)
            if configured:
                chosen = by_key.get(configured)
                if chosen is None:
                    logger.warning(
                        "Configured %s field key %s not found; falling back to discovery",
                        category,
                        configured,
                    )
            if chosen is None:
                chosen = next(
                    (f for f in fields if f.name.strip().lower() == category), None
                )
            if chosen is None:
                logger.warning("No custom field found for category %r", category)
                continue

            result[category] = FieldMapping(
                category=category,
                field_key=chosen.key,
                field_name=chosen.name,
                options={str(o.id): o.label for o in (chosen.options or [])},
            )
        return result
