"""
Storage layer: shared SQLite database and the authoritative record store.
"""

from .database import Database, Transaction

__all__ = ["Database", "Transaction"]
