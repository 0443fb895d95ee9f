from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy.orm import Session

from graindesk import models
from graindesk.core.errors import InvalidTransition, NotFound, StaleState
from graindesk.models.domain import BidStatus, ListingState


@dataclass(frozen=True)
class TransitionResult:
    updated: bool
    rowcount: int


def atomic_transition_listing_state(
    *,
    db: Session,
    listing_id: int,
    to_state: ListingState,
    allowed_from: Iterable[ListingState],
    updates: dict[str, Any] | None = None,
    where: Iterable[Any] = (),
) -> TransitionResult:
    """Apply a listing state transition with an atomic DB guard.

    A single conditional UPDATE keeps concurrent admins/owners from both
    succeeding:

        UPDATE resale_listings
        SET state = :to_state, ...
        WHERE id = :listing_id AND state IN (:allowed_from)

    ``where`` appends extra predicates to the guard. Callers control commit/rollback.
    """

    update_values: dict[str, Any] = {"state": to_state}
    if updates:
        update_values.update(updates)

    rowcount = (
        db.query(models.ResaleListing)
        .filter(models.ResaleListing.id == int(listing_id))
        .filter(models.ResaleListing.state.in_(set(allowed_from)))
        .filter(*where)
        .update(update_values, synchronize_session=False)
    )
    return TransitionResult(updated=rowcount > 0, rowcount=int(rowcount or 0))


def atomic_transition_bid_status(
    *,
    db: Session,
    bid_id: int,
    to_status: BidStatus,
    allowed_from: Iterable[BidStatus],
    updates: dict[str, Any] | None = None,
) -> TransitionResult:
    update_values: dict[str, Any] = {"status": to_status}
    if updates:
        update_values.update(updates)

    rowcount = (
        db.query(models.Bid)
        .filter(models.Bid.id == int(bid_id))
        .filter(models.Bid.status.in_(set(allowed_from)))
        .update(update_values, synchronize_session=False)
    )
    return TransitionResult(updated=rowcount > 0, rowcount=int(rowcount or 0))


def raise_for_missed_guard(
    *,
    entity: str,
    entity_id: int,
    observed_before: Any,
    observed_now: Any,
    allowed_from: Iterable[Any],
) -> None:
    """Turn a guard miss into the right state error.

    If the row was in an allowed state when we read it, someone else moved it
    in between (``StaleState``); otherwise the caller asked for an invalid move.
    """

    allowed = set(allowed_from)
    details = {
        f"{entity}_id": entity_id,
        "state": getattr(observed_now, "value", observed_now),
        "allowed_from": sorted(getattr(a, "value", a) for a in allowed),
    }
    if observed_now is None:
        raise NotFound(f"{entity.capitalize()} {entity_id} not found")
    if observed_before in allowed:
        raise StaleState(f"{entity.capitalize()} {entity_id} changed concurrently", details=details)
    raise InvalidTransition(
        f"{entity.capitalize()} {entity_id} is {details['state']}", details=details
    )


def atomic_decrement(
    *,
    db: Session,
    model: type,
    row_id: int,
    column: str,
    amount: Decimal,
    floor: Decimal = Decimal("0"),
    where: Iterable[Any] = (),
) -> TransitionResult:
    """``SET column = column - amount`` only while the result stays >= ``floor``.

    Guards read-modify-write of volume balances against lost updates: when a
    concurrent writer already consumed the balance the UPDATE matches no row.
    """

    col = getattr(model, column)
    rowcount = (
        db.query(model)
        .filter(model.id == int(row_id))
        .filter(col >= amount + floor)
        .filter(*where)
        .update({column: col - amount}, synchronize_session=False)
    )
    return TransitionResult(updated=rowcount > 0, rowcount=int(rowcount or 0))
