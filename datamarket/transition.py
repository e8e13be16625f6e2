"""
DataMarket - Transition Context
The state handed to every protocol component during one atomic call.
"""

from typing import Any, List, Optional
from dataclasses import dataclass, field

import aiosqlite

from .events import Event, EventName


@dataclass
class Transition:
    """
    One in-flight state transition.

    Attributes:
        db: Connection holding the open write transaction
        now: Ledger time, read once when the transition started
        marketplace: Address of this marketplace deployment
        owner: Supervising identity of the deployment
        events: Observations to log and publish if the call commits
    """
    db: aiosqlite.Connection
    now: int
    marketplace: str
    owner: str
    events: List[Event] = field(default_factory=list)

    def emit(
        self,
        name: EventName,
        script_hash: Optional[str] = None,
        buyer: Optional[str] = None,
        seller: Optional[str] = None,
        **payload: Any
    ) -> Event:
        """Queue an event; it is discarded if the transition rolls back."""
        body = dict(payload)
        for key, value in (("script_hash", script_hash), ("buyer", buyer), ("seller", seller)):
            if value is not None:
                body[key] = value

        event = Event(
            name=name.value,
            payload=body,
            script_hash=script_hash,
            buyer=buyer,
            seller=seller,
            timestamp=self.now
        )
        self.events.append(event)
        return event
