"""SQLModel engine singleton."""
from sqlmodel import SQLModel, create_engine

from crmsync.config import get_settings

_engine = None


def get_engine():
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        settings = get_settings()
        connect_args = {}
        if settings.database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False  # SQLite only; safe for FastAPI
        _engine = create_engine(settings.database_url, connect_args=connect_args)
        # Import all models so metadata is populated before create_all
        from crmsync.models.contact import Activity, Contact, Organization, User  # noqa
        from crmsync.models.sync import SyncRun  # noqa
        SQLModel.metadata.create_all(_engine)
    return _engine
