"""Database package: ORM models and engine construction."""
from .connection import close_db, create_engine, create_session_factory, init_db
from .models import Base

__all__ = ["Base", "close_db", "create_engine", "create_session_factory", "init_db"]
