from pathlib import Path

from backend.app.db import models  # noqa: F401
from backend.app.db.base import Base
from backend.app.db.session import database_url, engine, sqlite_path


def init_db() -> None:
    """Create the artifacts table when running without migrations (local SQLite, first deploy)."""
    path = sqlite_path(database_url)
    if path:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(bind=engine)
