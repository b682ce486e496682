from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Optional

from connectkit.logging import fingerprint, get_logger
from connectkit.storage.models import utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class OutboundTicket:
    """A verification or reset link waiting to be delivered by email."""

    kind: str
    recipient: str
    token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


class TicketOutbox:
    """Holds issued tickets for the mail sender to pick up.

    Delivery happens elsewhere; this only records what should be sent and
    logs a redacted trace of it.
    """

    def __init__(self, max_items: int = 1000) -> None:
        self._items: Deque[OutboundTicket] = deque(maxlen=max_items)
        self._lock = threading.Lock()

    def record(self, kind: str, recipient: str, token: str, expires_at: datetime) -> OutboundTicket:
        ticket = OutboundTicket(kind=kind, recipient=recipient, token=token, expires_at=expires_at)
        with self._lock:
            self._items.append(ticket)
        logger.info(
            "ticket_queued",
            kind=kind,
            recipient_hash=fingerprint(recipient),
            expires_at=expires_at.isoformat(),
        )
        return ticket

    def latest(self, kind: str, recipient: str) -> Optional[OutboundTicket]:
        with self._lock:
            for ticket in reversed(self._items):
                if ticket.kind == kind and ticket.recipient == recipient:
                    return ticket
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
