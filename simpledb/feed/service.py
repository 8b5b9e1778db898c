"""
Change feed service for SimpleDB.

Runs one ChangeFeed and publishes SettingChanged events to any number of
listeners. Events are delivered on the poller thread, or marshalled onto an
asyncio event loop when one is supplied.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from ..config import FeedSettings
from ..store.changelog import ChangeOp
from .poller import ChangeFeed, Subscription

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettingChanged:
    """A change delivered to listeners.

    Attributes:
        key: Storage key that changed
        operation: Insert, update or delete
    """

    key: str
    operation: ChangeOp


Listener = Callable[[SettingChanged], None]


class ChangeFeedService:
    """Hosted wrapper around a ChangeFeed with multi-listener fan-out.

    Example:
        >>> service = ChangeFeedService(path, loop=asyncio.get_running_loop())
        >>> service.add_listener(lambda event: print(event.key))
        >>> await service.start()
        >>> ...
        >>> await service.stop()
    """

    def __init__(
        self,
        db_path: str | Path,
        poll_interval_ms: int = 300,
        replay_existing: bool = False,
        loop: asyncio.AbstractEventLoop | None = None,
        settings: FeedSettings | None = None,
    ) -> None:
        if db_path is None or not str(db_path).strip():
            raise ValueError("db_path cannot be empty")

        self.db_path = db_path
        self.poll_interval_ms = poll_interval_ms
        self.replay_existing = replay_existing
        self.loop = loop
        self.settings = settings or FeedSettings()

        self._listeners: list[Listener] = []
        self._feed: ChangeFeed | None = None
        self._subscription: Subscription | None = None
        self._published_count = 0

    @property
    def running(self) -> bool:
        return self._subscription is not None

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def start(self) -> None:
        """Start polling. No-op while already running."""
        if self._subscription is not None:
            logger.warning("Change feed service already running")
            return

        if self._feed is None:
            self._feed = ChangeFeed(
                self.db_path,
                poll_interval_ms=self.poll_interval_ms,
                replay_existing=self.replay_existing,
                settings=self.settings,
            )
        self._subscription = self._feed.start(self._on_change)

    async def stop(self) -> None:
        """Stop polling without blocking the event loop."""
        subscription, self._subscription = self._subscription, None
        self._feed = None
        if subscription is not None:
            await asyncio.get_running_loop().run_in_executor(None, subscription.dispose)

    def close(self) -> None:
        subscription, self._subscription = self._subscription, None
        feed, self._feed = self._feed, None
        if subscription is not None:
            subscription.dispose()
        elif feed is not None:
            feed.stop()

    def _on_change(self, key: str, op: ChangeOp) -> None:
        event = SettingChanged(key, op)
        loop = self.loop
        if loop is not None:
            loop.call_soon_threadsafe(self._publish, event)
        else:
            self._publish(event)

    def _publish(self, event: SettingChanged) -> None:
        self._published_count += 1
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(
                    f"Change listener failed: {e}",
                    exc_info=True,
                    extra={"key": event.key, "operation": event.operation.value},
                )

    @property
    def stats(self) -> dict[str, object]:
        """Get service statistics."""
        return {
            "running": self.running,
            "listeners": len(self._listeners),
            "published_count": self._published_count,
            "last_id": self._feed.last_id if self._feed else None,
        }
