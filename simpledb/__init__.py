"""
SimpleDB - durable key-value settings over a single SQLite file.

This package implements an embedded settings store built on:
- One SQLite file in WAL mode shared by threads and processes
- Upsert-only typed values under namespaced keys
- Trigger-maintained change log as the record of every mutation
- Polling change feed for subscribers that need to react to changes

Architecture:
    ┌──────────────┐    ┌────────────────┐    ┌──────────────────────┐
    │ set/delete   │───▶│ WriteSerializer│───▶│ SimpleSetting        │
    │ (any thread/ │    │ lock file +    │    │   └─ triggers ─▶     │
    │  process)    │    │ thread lock    │    │ SimpleChange (log)   │
    └──────────────┘    └────────────────┘    └──────────┬───────────┘
                                                         │
    ┌──────────────┐    read-only connection per read    │ poll id > cursor
    │ get/select   │◀────────────────────────────────────┤
    └──────────────┘                                     ▼
                                                  ┌──────────────┐
                                                  │  ChangeFeed  │──▶ callback
                                                  └──────────────┘

Invariants:
    - Writes to one file are totally ordered
    - Readers never take the write locks
    - Every committed write appends exactly one change log entry

How to change safely:
    - Keep the on-disk table and trigger names stable
    - Test cross-instance behaviour with two stores on one file
"""

from ._version import __version__
from .config import FeedSettings, LoggingSettings, StoreSettings
from .errors import (
    ChangeFeedError,
    DecodeError,
    SimpleDbError,
    StoreNotOpenError,
    StoreOpenError,
    WriteContentionError,
)
from .feed import ChangeFeed, ChangeFeedService, FeedState, SettingChanged, Subscription
from .store import ChangeEntry, ChangeOp, JsonValueCodec, Keyspace, Setting, SimpleDatabase, ValueCodec

__all__ = [
    "__version__",
    "FeedSettings",
    "LoggingSettings",
    "StoreSettings",
    "ChangeFeedError",
    "DecodeError",
    "SimpleDbError",
    "StoreNotOpenError",
    "StoreOpenError",
    "WriteContentionError",
    "ChangeFeed",
    "ChangeFeedService",
    "FeedState",
    "SettingChanged",
    "Subscription",
    "ChangeEntry",
    "ChangeOp",
    "JsonValueCodec",
    "Keyspace",
    "Setting",
    "SimpleDatabase",
    "ValueCodec",
]
