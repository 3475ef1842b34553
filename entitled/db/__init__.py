"""
Database Module
===============

Provides database session management and base model.
"""

from entitled.db.base import Base, utcnow
from entitled.db.session import get_db, init_db, close_db, get_session_factory

__all__ = ["Base", "utcnow", "get_db", "init_db", "close_db", "get_session_factory"]
