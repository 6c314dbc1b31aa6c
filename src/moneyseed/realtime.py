"""Row change notifications for MoneySeed.

The database publishes a :class:`ChangeEvent` after every committed write.
Subscribers register per table with an equality filter on row fields.  Delivery
is best effort: there is no ordering guarantee across rows and no replay for a
listener that was not subscribed when the change happened.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Mapping, Optional
from uuid import uuid4

from .ops import StructuredLogger

Row = Mapping[str, Any]
Listener = Callable[[Row], None]

MISSION_TABLE = "mission_instances"


class ChangeType(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    table: str
    type: ChangeType
    new: Optional[Row] = None
    old: Optional[Row] = None

    @property
    def row(self) -> Row:
        return self.new if self.new is not None else (self.old or {})


@dataclass(slots=True)
class Subscription:
    """Handle returned by :meth:`ChangeFeed.subscribe`."""

    subscription_id: str
    table: str
    filter: Dict[str, Any]
    on_insert: Optional[Listener] = None
    on_update: Optional[Listener] = None
    on_delete: Optional[Listener] = None
    _feed: Optional["ChangeFeed"] = field(default=None, repr=False)

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        row = event.row
        return all(row.get(key) == value for key, value in self.filter.items())

    def listener_for(self, change_type: ChangeType) -> Optional[Listener]:
        if change_type is ChangeType.INSERT:
            return self.on_insert
        if change_type is ChangeType.UPDATE:
            return self.on_update
        return self.on_delete

    def unsubscribe(self) -> None:
        if self._feed is not None:
            self._feed.unsubscribe(self)
            self._feed = None

    @property
    def active(self) -> bool:
        return self._feed is not None


class ChangeFeed(ABC):
    """Generic row change notification interface."""

    @abstractmethod
    def subscribe(
        self,
        table: str,
        filter: Optional[Mapping[str, Any]] = None,
        *,
        on_insert: Optional[Listener] = None,
        on_update: Optional[Listener] = None,
        on_delete: Optional[Listener] = None,
    ) -> Subscription:
        ...

    @abstractmethod
    def unsubscribe(self, subscription: Subscription) -> None:
        ...

    @abstractmethod
    def publish(self, event: ChangeEvent) -> int:
        """Deliver ``event`` to matching subscribers; return how many were notified."""


class InMemoryChangeFeed(ChangeFeed):
    """Synchronous in-process change feed."""

    def __init__(self, *, logger: StructuredLogger | None = None) -> None:
        self._subscriptions: Dict[str, Subscription] = {}
        self._logger = logger or StructuredLogger()

    def subscribe(
        self,
        table: str,
        filter: Optional[Mapping[str, Any]] = None,
        *,
        on_insert: Optional[Listener] = None,
        on_update: Optional[Listener] = None,
        on_delete: Optional[Listener] = None,
    ) -> Subscription:
        subscription = Subscription(
            subscription_id=str(uuid4()),
            table=table,
            filter=dict(filter or {}),
            on_insert=on_insert,
            on_update=on_update,
            on_delete=on_delete,
            _feed=self,
        )
        self._subscriptions[subscription.subscription_id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.subscription_id, None)

    def publish(self, event: ChangeEvent) -> int:
        delivered = 0
        for subscription in list(self._subscriptions.values()):
            if not subscription.matches(event):
                continue
            listener = subscription.listener_for(event.type)
            if listener is None:
                continue
            payload = event.old if event.type is ChangeType.DELETE else event.new
            try:
                listener(dict(payload or {}))
            except Exception as exc:  # listeners must not break the write path
                self._logger.log(
                    "change_listener_failed",
                    table=event.table,
                    change=event.type.value,
                    subscription=subscription.subscription_id,
                    error=repr(exc),
                )
                continue
            delivered += 1
        return delivered

    def __len__(self) -> int:
        return len(self._subscriptions)


@dataclass(slots=True)
class MissionListener:
    on_update: Optional[Listener] = None
    on_insert: Optional[Listener] = None
    on_delete: Optional[Listener] = None


class ConnectionManager:
    """Named realtime channels owned by the application root.

    A channel belongs to one subscriber watching one user's missions, so a
    parent's family channels never collide with the child's own channel.
    """

    def __init__(self, feed: ChangeFeed, *, logger: StructuredLogger | None = None) -> None:
        self._feed = feed
        self._channels: Dict[str, Subscription] = {}
        self._logger = logger or StructuredLogger()

    @staticmethod
    def mission_channel(user_id: str, subscriber: str | None = None) -> str:
        if subscriber is None or subscriber == user_id:
            return f"{MISSION_TABLE}_{user_id}"
        return f"{MISSION_TABLE}_{user_id}:{subscriber}"

    def subscribe_to_missions(
        self, user_id: str, listener: MissionListener, *, subscriber: str | None = None
    ) -> Callable[[], None]:
        """Watch one user's mission rows, replacing the subscriber's existing channel for them."""

        channel = self.mission_channel(user_id, subscriber)
        self.unsubscribe(channel)
        subscription = self._feed.subscribe(
            MISSION_TABLE,
            {"user_id": user_id},
            on_insert=listener.on_insert,
            on_update=listener.on_update,
            on_delete=listener.on_delete,
        )
        self._channels[channel] = subscription
        self._logger.log("channel_subscribed", channel=channel)
        return lambda: self._release(channel, subscription)

    def subscribe_to_family_missions(
        self, child_ids: Iterable[str], listener: MissionListener, *, subscriber: str | None = None
    ) -> Callable[[], None]:
        handles = [
            self.subscribe_to_missions(child_id, listener, subscriber=subscriber) for child_id in child_ids
        ]

        def unsubscribe_all() -> None:
            for handle in handles:
                handle()

        return unsubscribe_all

    def unsubscribe(self, channel: str) -> bool:
        subscription = self._channels.pop(channel, None)
        if subscription is None:
            return False
        subscription.unsubscribe()
        self._logger.log("channel_unsubscribed", channel=channel)
        return True

    def _release(self, channel: str, subscription: Subscription) -> None:
        # A stale handle must not close the channel that replaced it.
        if self._channels.get(channel) is subscription:
            self.unsubscribe(channel)
        else:
            subscription.unsubscribe()

    def unsubscribe_all(self) -> None:
        for channel in list(self._channels):
            self.unsubscribe(channel)

    def channels(self) -> tuple[str, ...]:
        return tuple(sorted(self._channels))


__all__ = [
    "ChangeEvent",
    "ChangeFeed",
    "ChangeType",
    "ConnectionManager",
    "InMemoryChangeFeed",
    "MISSION_TABLE",
    "MissionListener",
    "Subscription",
]
