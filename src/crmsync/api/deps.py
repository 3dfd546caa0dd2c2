"""FastAPI dependencies shared by the route modules."""
from typing import Optional

from fastapi import Depends, HTTPException

from crmsync.config import get_settings
from crmsync.db.engine import get_engine
from crmsync.remote.client import RemoteClient
from crmsync.sync.progress import ProgressTracker, get_tracker
from crmsync.sync.store import SyncStore


def get_current_user_id() -> int:
    """Acting user. Single-user MVP: taken from settings until sessions exist."""
    return get_settings().user_id


def get_store() -> SyncStore:
    return SyncStore(get_engine())


def get_progress_tracker() -> ProgressTracker:
    return get_tracker()


def get_remote_client(
    user_id: int = Depends(get_current_user_id),
    store: SyncStore = Depends(get_store),
) -> RemoteClient:
    """RemoteClient bound to the acting user's credential."""
    token = store.get_api_token(user_id)
    if not token:
        raise HTTPException(status_code=400, detail="No remote CRM API key configured")
    return RemoteClient(token)


def get_optional_remote_client(
    user_id: int = Depends(get_current_user_id),
    store: SyncStore = Depends(get_store),
) -> Optional[RemoteClient]:
    """Like get_remote_client, but None instead of 400 when no key is set."""
    token = store.get_api_token(user_id)
    return RemoteClient(token) if token else None
