"""
Store module for SimpleDB - the settings table, its write path and read path.

This module handles:
- Storage key derivation and value encoding (keyspace)
- Cross-process and in-process write serialization with busy retry (serializer)
- Settings table, change log table and triggers (changelog)
- The SimpleDatabase facade (database)

Invariants:
    - Writers are serialized per file; readers never take the write locks
    - SQLite uses WAL mode for concurrent reads during writes
    - Every committed mutation is logged by a trigger in the same transaction
"""

from .changelog import ChangeEntry, ChangeOp
from .database import Setting, SimpleDatabase
from .keyspace import JsonValueCodec, Keyspace, ValueCodec
from .serializer import WriteSerializer, retry_on_busy, write_lock_name

__all__ = [
    "ChangeEntry",
    "ChangeOp",
    "Setting",
    "SimpleDatabase",
    "JsonValueCodec",
    "Keyspace",
    "ValueCodec",
    "WriteSerializer",
    "retry_on_busy",
    "write_lock_name",
]
