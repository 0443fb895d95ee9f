"""Event bus: in-process publish/subscribe for state transitions.

Services publish after their transaction commits, so subscribers never see an
event for a rolled-back change. Delivery is synchronous and best-effort: a
failing subscriber is logged and skipped.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from sqlalchemy import func
from sqlalchemy.orm import Session

from graindesk import models
from graindesk.core.timeutils import as_utc, utc_now
from graindesk.models.domain import BidStatus, ListingState

log = logging.getLogger("graindesk.events")


class EventType(str, Enum):
    LISTING_CREATED = "listing.created"
    LISTING_APPROVED = "listing.approved"
    LISTING_REJECTED = "listing.rejected"
    LISTING_WITHDRAWN = "listing.withdrawn"
    LISTING_SETTLED = "listing.settled"
    LISTING_VALIDATION_EXPIRED = "listing.validation_expired"
    BID_PLACED = "bid.placed"
    BID_REJECTED = "bid.rejected"
    BID_ACCEPTED = "bid.accepted"
    TRANSACTION_CREATED = "transaction.created"
    COVERAGE_ORPHANED = "coverage.orphaned"
    POSITION_ROLLED = "position.rolled"
    PRICES_REFRESHED = "prices.refreshed"


@dataclass(frozen=True)
class Event:
    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utc_now)


Subscriber = Callable[[Event], None]


class EventBus:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[EventType | None, list[Subscriber]] = {}

    def subscribe(
        self, handler: Subscriber, event_type: EventType | None = None
    ) -> Callable[[], None]:
        """Register ``handler`` for one event type, or for all when ``event_type`` is None.

        Returns a callable that removes the subscription.
        """

        with self._lock:
            self._subscribers.setdefault(event_type, []).append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                handlers = self._subscribers.get(event_type, [])
                if handler in handlers:
                    handlers.remove(handler)

        return _unsubscribe

    def publish(self, event_type: EventType, payload: dict[str, Any] | None = None) -> Event:
        event = Event(type=event_type, payload=dict(payload or {}))
        with self._lock:
            handlers = list(self._subscribers.get(event_type, [])) + list(
                self._subscribers.get(None, [])
            )
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                log.exception("event_subscriber_failed", extra={"event_type": event_type.value})
        log.info(
            "event_published", extra={"event_type": event_type.value, "payload": event.payload}
        )
        return event

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()


# Process-wide bus used by the services and the API layer.
bus = EventBus()


def badge_counts(
    *, db: Session, client_id: int | None = None, now: datetime | None = None
) -> dict[str, int]:
    """Counters behind the admin/client badges.

    Admin view (``client_id`` None): pending validations and how many of those are
    past their validation window. Client view: the same counters restricted to
    the client's own listings, plus active bids received on them.
    """

    if now is None:
        now = utc_now()

    pending_q = db.query(models.ResaleListing.validation_expiry).filter(
        models.ResaleListing.state == ListingState.pending_validation
    )
    bids_q = (
        db.query(func.count(models.Bid.id))
        .join(models.ResaleListing, models.ResaleListing.id == models.Bid.listing_id)
        .filter(models.Bid.status == BidStatus.active)
        .filter(models.ResaleListing.state == ListingState.listed)
    )
    if client_id is not None:
        pending_q = pending_q.filter(models.ResaleListing.seller_id == int(client_id))
        bids_q = bids_q.filter(models.ResaleListing.seller_id == int(client_id))

    # Expiry is compared in Python: SQLite drops tzinfo on the way back.
    expiries = [row[0] for row in pending_q.all()]
    return {
        "pending_validation": len(expiries),
        "expired_validation": sum(1 for e in expiries if as_utc(e) < now),
        "active_bids": int(bids_q.scalar() or 0),
    }
