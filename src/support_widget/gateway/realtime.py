"""In-process change feed: fans out row events to per-subscription queues."""

from __future__ import annotations

import asyncio
import inspect
import itertools
from typing import Any, Callable, Iterable

from support_widget.core.types import ChangeType
from support_widget.gateway.base import ChangeEvent, ChangeHandler, Principal, Subscription
from support_widget.log import get_logger

logger = get_logger(__name__)

ReadPolicy = Callable[[Principal, str, dict[str, Any]], bool]

_ids = itertools.count(1)


class FeedSubscription(Subscription):
    """One listener: a queue plus the task that drains it into the handler."""

    def __init__(
        self,
        feed: ChangeFeed,
        principal: Principal,
        table: str,
        handler: ChangeHandler,
        events: frozenset[ChangeType],
        eq: tuple[str, Any] | None,
    ):
        self.id = next(_ids)
        self.principal = principal
        self.table = table
        self.events = events
        self.eq = eq
        self._feed = feed
        self._handler = handler
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self._closed = False
        self._task = asyncio.get_running_loop().create_task(
            self._consume(), name=f"feed-{table}-{self.id}"
        )

    def matches(self, event: ChangeEvent) -> bool:
        if self._closed or event.table != self.table or event.type not in self.events:
            return False
        if self.eq is not None:
            column, value = self.eq
            if event.row.get(column) != value:
                return False
        return True

    def push(self, event: ChangeEvent) -> None:
        self._queue.put_nowait(event)

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                result = self._handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "change_handler_failed",
                    table=self.table,
                    event_type=str(event.type),
                    error=str(e),
                    exc_info=True,
                )
            finally:
                self._queue.task_done()

    async def wait_idle(self) -> None:
        if self._closed:
            return
        await self._queue.join()

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._feed.remove(self)
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        logger.debug("subscription_closed", table=self.table, subscription_id=self.id)


class ChangeFeed:
    """Routes published row changes to every subscriber allowed to read them."""

    def __init__(self, can_read: ReadPolicy):
        self._can_read = can_read
        self._subscriptions: list[FeedSubscription] = []

    def subscribe(
        self,
        principal: Principal,
        table: str,
        handler: ChangeHandler,
        events: Iterable[ChangeType] | None = None,
        eq: tuple[str, Any] | None = None,
    ) -> FeedSubscription:
        wanted = frozenset(events) if events else frozenset(ChangeType)
        sub = FeedSubscription(self, principal, table, handler, wanted, eq)
        self._subscriptions.append(sub)
        logger.debug(
            "subscription_opened",
            table=table,
            subscription_id=sub.id,
            events=sorted(str(e) for e in wanted),
            eq=eq,
        )
        return sub

    def remove(self, sub: FeedSubscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    def _visible(self, principal: Principal, event: ChangeEvent) -> ChangeEvent | None:
        """The event as *principal* may see it.

        A row that leaves the principal's readable set (say a provider being
        deactivated, seen by an anonymous viewer) arrives as a delete of the
        old image, so the viewer can drop it without ever seeing the new one.
        """
        if event.new and self._can_read(principal, event.table, event.new):
            return event
        if event.old and self._can_read(principal, event.table, event.old):
            if event.type is ChangeType.DELETE:
                return event
            return ChangeEvent(table=event.table, type=ChangeType.DELETE, old=event.old)
        return None

    def publish(self, event: ChangeEvent) -> int:
        """Queue *event* for matching subscribers; returns how many got it."""
        delivered = 0
        for sub in list(self._subscriptions):
            visible = self._visible(sub.principal, event)
            if visible is not None and sub.matches(visible):
                sub.push(visible)
                delivered += 1
        return delivered

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def close_all(self) -> None:
        for sub in list(self._subscriptions):
            await sub.close()
