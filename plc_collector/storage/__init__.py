"""
Storage

Local SQLite database for raw samples, history aggregates, the alarm log
and persisted collector state.
"""

from .local_db import LocalDatabase

__all__ = ["LocalDatabase"]
