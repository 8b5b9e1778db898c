"""
Change feed module for SimpleDB.

This module handles:
- Polling the change log from a per-instance cursor (poller)
- Fan-out of changes to listeners, optionally onto an event loop (service)

Invariants:
    - Delivery is in log order and never duplicated within one poller
    - The feed only reads the log; it never blocks writers
"""

from .poller import ChangeCallback, ChangeFeed, FeedState, Subscription
from .service import ChangeFeedService, SettingChanged

__all__ = [
    "ChangeCallback",
    "ChangeFeed",
    "FeedState",
    "Subscription",
    "ChangeFeedService",
    "SettingChanged",
]
