"""Real-time fan-out of election events.

The notifier owns the registry of live subscriptions (one per open event
stream), keyed by election id. ``subscribe``/``unsubscribe`` are the only
mutation points; the rest of the core only ever calls ``publish``.

Events are a cue to refresh, not the source of truth. A subscriber that
falls too far behind is dropped and must reconnect and refetch state.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field

import httpx
import structlog

log = structlog.get_logger(__name__)

DEFAULT_QUEUE_SIZE = 256


@dataclass
class Event:
    id: int
    name: str
    data: dict


@dataclass(eq=False)
class Subscription:
    """One connected participant's event queue."""

    election_id: str
    participant_id: str
    queue: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(DEFAULT_QUEUE_SIZE))
    overflowed: bool = False

    def deliver(self, event: Event) -> None:
        if self.overflowed:
            return
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.overflowed = True


class Notifier:
    """Per-election pub/sub plus an optional webhook mirror."""

    def __init__(
        self,
        webhook_url: str = "",
        events: list[str] | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.webhook_url = webhook_url
        self.events = events or []
        self.client = client or httpx.AsyncClient()
        self._subscribers: dict[str, set[Subscription]] = {}
        self._sequence = itertools.count(1)
        self._outbox: asyncio.Queue | None = None
        self._worker: asyncio.Task | None = None

    # ---------------------------------------------------------------
    # Registry
    # ---------------------------------------------------------------

    def subscribe(self, election_id: str, participant_id: str) -> Subscription:
        sub = Subscription(election_id=election_id, participant_id=participant_id)
        self._subscribers.setdefault(election_id, set()).add(sub)
        log.debug("subscriber_added", election_id=election_id, participant_id=participant_id)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.election_id)
        if not subs:
            return
        subs.discard(sub)
        if not subs:
            del self._subscribers[sub.election_id]
        log.debug("subscriber_removed", election_id=sub.election_id, participant_id=sub.participant_id)

    def subscriber_count(self, election_id: str) -> int:
        return len(self._subscribers.get(election_id, ()))

    # ---------------------------------------------------------------
    # Delivery
    # ---------------------------------------------------------------

    def publish(self, election_id: str, name: str, data: dict) -> Event:
        """Deliver an event to every subscriber of an election.

        Synchronous, so events leave in the order their transitions committed.
        """
        event = Event(id=next(self._sequence), name=name, data=data)
        for sub in tuple(self._subscribers.get(election_id, ())):
            sub.deliver(event)
        if self.webhook_url and name in self.events:
            self._enqueue_webhook(election_id, event)
        return event

    # ---------------------------------------------------------------
    # Webhook mirror
    # ---------------------------------------------------------------

    def _enqueue_webhook(self, election_id: str, event: Event) -> None:
        if self._outbox is None:
            self._outbox = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._drain())
        self._outbox.put_nowait((election_id, event))

    async def _drain(self) -> None:
        while True:
            election_id, event = await self._outbox.get()
            try:
                await self.notify(election_id, event)
            finally:
                self._outbox.task_done()

    async def notify(self, election_id: str, event: Event) -> None:
        payload = {
            "event": event.name,
            "id": event.id,
            "election_id": election_id,
            "data": event.data,
        }
        try:
            await self.client.post(self.webhook_url, json=payload, timeout=10)
        except httpx.HTTPError as exc:
            # Webhook failure never affects the election.
            log.warning("webhook_failed", event_name=event.name, error=str(exc))

    async def flush(self) -> None:
        """Wait until every queued webhook has been attempted."""
        if self._outbox is not None:
            await self._outbox.join()

    async def close(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        await self.client.aclose()
