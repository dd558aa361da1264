from backend.app.db.base import Base
from backend.app.db.session import SessionLocal, engine
from backend.app.db import models

__all__ = ["Base", "SessionLocal", "engine", "models"]
