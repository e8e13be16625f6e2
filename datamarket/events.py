"""
DataMarket - Event Log & Delivery
Append-only protocol events with push delivery.

Events are written in the same transaction as the state change that
produced them, so a failed call leaves no trace in the log. Once the
transition commits, the bus hands them to in-process listeners and
POSTs them to registered webhooks. Clients filter on the indexed
fields (script_hash, buyer, seller) instead of polling state.
"""

import os
import json
import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union
from dataclasses import dataclass, field, asdict
from enum import Enum

import httpx
import aiosqlite

logger = logging.getLogger("datamarket.events")


class EventName(Enum):
    """Observable protocol events."""
    USER_REGISTERED = "UserRegistered"
    SELLER_REGISTERED = "SellerRegistered"
    SELLER_REMOVED = "SellerRemoved"
    DATA_ADDED = "DataAdded"
    DATA_WITHDRAWN = "DataWithdrawn"
    FUNDED = "Funded"
    FULFILLED = "Fulfilled"
    EXECUTED = "Executed"
    REFUNDED = "Refunded"
    DISPUTED = "Disputed"
    DISPUTE_RESOLVED = "DisputeResolved"
    SUBSCRIBED = "Subscribed"
    SUBSCRIPTION_ACCESS = "SubscriptionAccess"


INDEXED_FIELDS = ("script_hash", "buyer", "seller")

PAYLOAD_FIELDS = (
    "address", "external_id", "shop", "info", "index", "pointer", "value",
    "to", "delivery_ref", "raised_by", "resolution", "duration_units", "expires_at"
)

FILTER_FIELDS = frozenset(INDEXED_FIELDS + PAYLOAD_FIELDS)


def validate_filters(filters: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Check subscription filters against the fields events carry.

    Raises:
        ValueError: filters is not a mapping or names an unknown field
    """
    if filters is None:
        return {}
    if not isinstance(filters, dict):
        raise ValueError("Event filters must be a mapping of field to value")

    unknown = sorted(str(key) for key in filters if key not in FILTER_FIELDS)
    if unknown:
        raise ValueError(f"Unknown event filter fields: {', '.join(unknown)}")

    return dict(filters)


@dataclass
class Event:
    """
    One observation emitted by a committed transition.

    Attributes:
        name: Event name (see EventName)
        payload: Full event body
        script_hash: Escrow record the event concerns, if any
        buyer: Buyer address, if any
        seller: Seller address, if any
        timestamp: Ledger time of the transition
        id: Sequence number assigned by the log
    """
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    script_hash: Optional[str] = None
    buyer: Optional[str] = None
    seller: Optional[str] = None
    timestamp: int = 0
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def matches(self, name: Optional[str] = None, filters: Optional[Dict[str, Any]] = None) -> bool:
        """Check the event against a name and indexed/payload field filters."""
        if name and self.name != name:
            return False

        for key, expected in (filters or {}).items():
            if key in INDEXED_FIELDS:
                actual = getattr(self, key)
            else:
                actual = self.payload.get(key)
            if actual != expected:
                return False

        return True


class EventLog:
    """Persistence of events in the state store."""

    async def append(self, db: aiosqlite.Connection, event: Event) -> Event:
        cursor = await db.execute("""
            INSERT INTO events (name, script_hash, buyer, seller, payload, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            event.name, event.script_hash, event.buyer, event.seller,
            json.dumps(event.payload, sort_keys=True), event.timestamp
        ))
        event.id = cursor.lastrowid
        return event

    async def query(
        self,
        db: aiosqlite.Connection,
        name: Optional[str] = None,
        script_hash: Optional[str] = None,
        buyer: Optional[str] = None,
        seller: Optional[str] = None,
        limit: int = 100
    ) -> List[Event]:
        """
        Read events in emission order, filtered by indexed fields.
        """
        clauses = []
        params: List[Any] = []
        for column, value in (
            ("name", name),
            ("script_hash", script_hash),
            ("buyer", buyer),
            ("seller", seller)
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        cursor = await db.execute(
            f"SELECT * FROM events {where} ORDER BY id ASC LIMIT ?",
            params
        )
        rows = await cursor.fetchall()

        return [
            Event(
                id=row["id"],
                name=row["name"],
                script_hash=row["script_hash"],
                buyer=row["buyer"],
                seller=row["seller"],
                payload=json.loads(row["payload"]),
                timestamp=row["timestamp"]
            )
            for row in rows
        ]


Handler = Callable[[Event], Union[None, Awaitable[None]]]


@dataclass
class Listener:
    id: str
    name: Optional[str]
    filters: Dict[str, Any]
    handler: Handler


@dataclass
class Webhook:
    """
    A webhook receiving matching events as JSON POSTs.

    Attributes:
        id: Unique webhook identifier
        url: Endpoint to POST events to
        name: Event name filter (None = all events)
        filters: Indexed/payload field filters
        owner: Authenticated address that registered the webhook
    """
    id: str
    url: str
    name: Optional[str] = None
    filters: Dict[str, Any] = field(default_factory=dict)
    owner: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class EventBus:
    """
    Dispatches committed events to listeners and webhooks.

    Delivery happens after commit and is best effort: a failing
    listener or unreachable webhook is logged and never affects the
    transition that emitted the event.

    Example:
        bus = EventBus()
        await bus.start()

        bus.subscribe("Fulfilled", on_fulfilled, {"script_hash": h, "buyer": me})
        bus.add_webhook("https://buyer.example/hooks", "Executed")
    """

    def __init__(
        self,
        webhook_timeout: float = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.webhook_timeout = webhook_timeout or float(
            os.getenv("WEBHOOK_TIMEOUT_SECONDS", "30")
        )

        self._listeners: Dict[str, Listener] = {}
        self._webhooks: Dict[str, Webhook] = {}

        self._http_client = http_client
        self._owns_client = http_client is None

        self._pending: Set[asyncio.Task] = set()

    def subscribe(
        self,
        name: Optional[str],
        handler: Handler,
        filters: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Register an in-process listener.

        Args:
            name: Event name to receive (None = all events)
            handler: Callable or coroutine function taking an Event
            filters: Field values the event must carry, keyed by FILTER_FIELDS

        Returns:
            Listener id for unsubscribe()

        Raises:
            ValueError: if a filter names an unknown field
        """
        listener = Listener(
            id=str(uuid.uuid4()), name=name, filters=validate_filters(filters), handler=handler
        )
        self._listeners[listener.id] = listener
        return listener.id

    def unsubscribe(self, listener_id: str) -> bool:
        return self._listeners.pop(listener_id, None) is not None

    def add_webhook(
        self,
        url: str,
        name: Optional[str] = None,
        filters: Optional[Dict[str, Any]] = None,
        owner: Optional[str] = None
    ) -> Webhook:
        """
        Register a webhook endpoint.

        Raises:
            ValueError: if url is not http(s) or a filter names an unknown field
        """
        if not url.startswith(("http://", "https://")):
            raise ValueError(f"Invalid webhook URL: {url}")

        hook = Webhook(
            id=str(uuid.uuid4()), url=url, name=name, filters=validate_filters(filters), owner=owner
        )
        self._webhooks[hook.id] = hook
        logger.info(f"Registered webhook {hook.id[:8]}... for {name or 'all events'}: {url}")
        return hook

    def get_webhook(self, webhook_id: str) -> Optional[Webhook]:
        return self._webhooks.get(webhook_id)

    def remove_webhook(self, webhook_id: str) -> bool:
        return self._webhooks.pop(webhook_id, None) is not None

    def list_webhooks(self) -> List[Dict[str, Any]]:
        return [hook.to_dict() for hook in self._webhooks.values()]

    async def start(self):
        """Open the HTTP client used for webhook delivery."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.webhook_timeout)
            self._owns_client = True

    async def drain(self):
        """Wait for webhook deliveries still in flight."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def stop(self):
        """Finish pending deliveries, then close the HTTP client if this bus created it."""
        await self.drain()
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def publish(self, events: List[Event]):
        """
        Deliver committed events in order.

        Listeners run before publish returns. Webhook POSTs are scheduled
        as background tasks; use drain() to wait for them.
        """
        for event in events:
            for listener in list(self._listeners.values()):
                if event.matches(listener.name, listener.filters):
                    await self._notify_listener(listener, event)

            for hook in list(self._webhooks.values()):
                if event.matches(hook.name, hook.filters):
                    task = asyncio.create_task(self._deliver_webhook(hook, event))
                    self._pending.add(task)
                    task.add_done_callback(self._pending.discard)

    async def _notify_listener(self, listener: Listener, event: Event):
        try:
            result = listener.handler(event)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(f"Event listener {listener.id[:8]}... failed on {event.name}: {e}", exc_info=True)

    async def _deliver_webhook(self, hook: Webhook, event: Event):
        if self._http_client is None:
            logger.warning(f"Event bus not started, dropping webhook delivery to {hook.url}")
            return

        try:
            response = await self._http_client.post(
                hook.url,
                json=event.to_dict(),
                headers={
                    "Content-Type": "application/json",
                    "X-DataMarket-Event": event.name,
                    "X-DataMarket-Event-Id": str(event.id)
                }
            )

            if response.status_code < 300:
                logger.info(f"Webhook delivered: {event.name} -> {hook.url}")
            else:
                logger.warning(f"Webhook returned {response.status_code}: {hook.url}")

        except Exception as e:
            logger.error(f"Webhook delivery failed: {e}")
