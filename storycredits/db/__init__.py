"""Database module for PostgreSQL with SQLAlchemy async support."""

from storycredits.db.ledger import (
    get_active_balance,
    get_cached_balance,
    lock_user_ledger,
    mirror_balance,
)
from storycredits.db.session import DatabaseManager, get_db_manager, init_db_manager

__all__ = [
    # Session management
    "DatabaseManager",
    "get_db_manager",
    "init_db_manager",
    # Ledger queries
    "lock_user_ledger",
    "get_active_balance",
    "get_cached_balance",
    "mirror_balance",
]
