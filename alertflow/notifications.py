"""
Notification hub - fan-out of incident and playbook lifecycle notifications.

The incident store publishes status changes, the playbook executor publishes
run completions. Subscribers (the orchestrator, WebSocket clients, external
notification channels) each get their own queue so a slow consumer never
blocks the pipeline.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from alertflow.models import IncidentStatus, RunStatus, utcnow

logger = structlog.get_logger()


class NotificationKind(str, Enum):
    INCIDENT_STATUS_CHANGED = "incident_status_changed"
    PLAYBOOK_RUN_COMPLETED = "playbook_run_completed"


class Notification(BaseModel):
    """Message emitted to subscribers."""

    kind: NotificationKind
    incident_id: UUID
    timestamp: datetime = Field(default_factory=utcnow)

    # Status changes
    from_status: IncidentStatus | None = None
    to_status: IncidentStatus | None = None
    version: int | None = None

    # Run completions
    run_id: UUID | None = None
    playbook: str | None = None
    run_status: RunStatus | None = None

    detail: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def status_changed(
        cls,
        incident_id: UUID,
        from_status: IncidentStatus | None,
        to_status: IncidentStatus,
        version: int,
        **detail: Any,
    ) -> "Notification":
        return cls(
            kind=NotificationKind.INCIDENT_STATUS_CHANGED,
            incident_id=incident_id,
            from_status=from_status,
            to_status=to_status,
            version=version,
            detail=detail,
        )

    @classmethod
    def run_completed(
        cls,
        incident_id: UUID,
        run_id: UUID,
        playbook: str,
        run_status: RunStatus,
        **detail: Any,
    ) -> "Notification":
        return cls(
            kind=NotificationKind.PLAYBOOK_RUN_COMPLETED,
            incident_id=incident_id,
            run_id=run_id,
            playbook=playbook,
            run_status=run_status,
            detail=detail,
        )


class Subscription:
    """A subscriber's private queue. Iterate it, or call get()/task_done()."""

    def __init__(self, hub: "NotificationHub", kinds: set[NotificationKind] | None, maxsize: int):
        self._hub = hub
        self.kinds = kinds
        self._queue: asyncio.Queue[Notification | None] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def wants(self, notification: Notification) -> bool:
        return self.kinds is None or notification.kind in self.kinds

    @property
    def maxsize(self) -> int:
        return self._queue.maxsize

    def offer(self, notification: Notification) -> None:
        if self._queue.full():
            # Oldest notification is dropped for a lagging subscriber
            lost = self._queue.get_nowait()
            self._queue.task_done()
            self.dropped += 1
            logger.warning(
                "Notification dropped for lagging subscriber",
                kind=lost.kind.value,
                incident_id=str(lost.incident_id),
                to_status=lost.to_status,
                run_status=lost.run_status,
                dropped=self.dropped,
            )
        self._queue.put_nowait(notification)

    async def get(self) -> Notification | None:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()

    def empty(self) -> bool:
        return self._queue.empty()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._hub.unsubscribe(self)
        if self._queue.full():
            self._queue.get_nowait()
            self._queue.task_done()
        self._queue.put_nowait(None)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Notification:
        item = await self._queue.get()
        if item is None:
            self._queue.task_done()
            raise StopAsyncIteration
        return item


class NotificationHub:
    """In-process publish/subscribe for lifecycle notifications."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self.published = 0

    def subscribe(
        self,
        kinds: set[NotificationKind] | None = None,
        maxsize: int = 1000,
    ) -> Subscription:
        """Subscribe to *kinds* (all when None). A maxsize of 0 never drops."""
        subscription = Subscription(self, kinds, maxsize)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, notification: Notification) -> None:
        self.published += 1
        for subscription in list(self._subscriptions):
            if subscription.wants(notification):
                subscription.offer(notification)

        logger.debug(
            "Notification published",
            kind=notification.kind.value,
            incident_id=str(notification.incident_id),
            subscribers=len(self._subscriptions),
        )
