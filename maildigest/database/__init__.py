"""Database package for the mail-piece queue."""

from .engine import create_engine, create_schema, create_session_factory, get_database_url
from .models import Base, MailPiece

__all__ = [
    "create_engine",
    "create_schema",
    "create_session_factory",
    "get_database_url",
    "Base",
    "MailPiece"
]
