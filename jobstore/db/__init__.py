"""
Database module.
Contains the store connection, record layout, codec and the job store.
"""

from jobstore.db.codec import decode, encode
from jobstore.db.connection import StoreConnection
from jobstore.db.models import build_jobs_table
from jobstore.db.repository import JobStore

__all__ = [
    "JobStore",
    "StoreConnection",
    "build_jobs_table",
    "encode",
    "decode",
]
