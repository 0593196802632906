"""
Database package for payrecon.

Exports engine construction, session factory and ORM models.
"""
from .init_db import create_engine, create_session_factory, initialize_database
from .models import Base, TransactionModel, utcnow

__all__ = [
    "create_engine",
    "create_session_factory",
    "initialize_database",
    "Base",
    "TransactionModel",
    "utcnow",
]
