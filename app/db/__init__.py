"""
Database Module
===============

Provides database session management and base model.
"""

from app.db.base import Base
from app.db.session import get_db, get_lazy_db, init_db, close_db, LazyDB

__all__ = ["Base", "get_db", "get_lazy_db", "init_db", "close_db", "LazyDB"]
