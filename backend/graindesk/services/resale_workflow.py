"""Resale listing lifecycle.

    pending_validation --approve--> listed --(fully bid)--> settled
    pending_validation --reject---> rejected
    pending_validation --withdraw (owner)--> withdrawn
    listed --withdraw (owner/admin, no accepted bid)--> withdrawn

Every move is a conditional UPDATE on the current state (see
``services.transitions``). The validation window is advisory: an expired
pending listing is only flagged, never moved.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import exists, func
from sqlalchemy.orm import Session

from graindesk import models
from graindesk.config import settings
from graindesk.core.errors import (
    ConsistencyWarning,
    Forbidden,
    InvalidAmount,
    InvalidTransition,
    NotFound,
    VolumeExceedsBalance,
)
from graindesk.core.timeutils import as_utc, utc_now
from graindesk.models.domain import OPEN_LISTING_STATES, BidStatus, ListingState, PositionType
from graindesk.services.events import EventType, bus
from graindesk.services.hedge_allocator import sale_covered_tonnage
from graindesk.services.pru_calculator import compute_pru, pru_input_for_sale
from graindesk.services.transitions import atomic_transition_listing_state, raise_for_missed_guard

log = logging.getLogger("graindesk.resale")

ZERO = Decimal("0")
Q4 = Decimal("0.0001")


def _dec(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


@dataclass(frozen=True)
class AvailableBalances:
    sale_id: int
    volume: Decimal
    covered: Decimal
    uncovered: Decimal
    listed_covered: Decimal
    listed_uncovered: Decimal

    @property
    def covered_available(self) -> Decimal:
        return max(self.covered - self.listed_covered, ZERO)

    @property
    def uncovered_available(self) -> Decimal:
        return max(self.uncovered - self.listed_uncovered, ZERO)

    def available_for(self, position_type: PositionType) -> Decimal:
        if position_type == PositionType.covered:
            return self.covered_available
        return self.uncovered_available


def available_balances(*, db: Session, sale: models.Sale) -> AvailableBalances:
    """Covered/uncovered sub-balances of a sale net of its open listings."""

    volume = _dec(sale.volume)
    covered = min(sale_covered_tonnage(db=db, sale_id=sale.id), volume)
    rows = (
        db.query(models.ResaleListing.position_type, func.sum(models.ResaleListing.volume))
        .filter(models.ResaleListing.sale_id == int(sale.id))
        .filter(models.ResaleListing.state.in_(OPEN_LISTING_STATES))
        .group_by(models.ResaleListing.position_type)
        .all()
    )
    listed = {pt: _dec(total or 0).quantize(Q4) for pt, total in rows}
    return AvailableBalances(
        sale_id=sale.id,
        volume=volume,
        covered=covered,
        uncovered=volume - covered,
        listed_covered=listed.get(PositionType.covered, ZERO),
        listed_uncovered=listed.get(PositionType.uncovered, ZERO),
    )


def create_listing(
    *,
    db: Session,
    seller_id: int,
    sale_id: int,
    position_type: PositionType,
    volume: Decimal,
    requested_price: Decimal,
    comment: str | None = None,
    now: datetime | None = None,
) -> models.ResaleListing:
    """Offer a slice of a sale on the secondary market, pending admin validation.

    The cost basis (PRU, or the flat price for flat sales) is frozen here and
    is what the seller gain is computed against at settlement.
    """

    v = _dec(volume)
    price = _dec(requested_price)
    if v <= 0:
        raise InvalidAmount("Listing volume must be positive", details={"volume": str(v)})
    if price <= 0:
        raise InvalidAmount("Requested price must be positive", details={"price": str(price)})
    now = now or utc_now()

    try:
        sale = (
            db.query(models.Sale)
            .filter(models.Sale.id == int(sale_id))
            .with_for_update()
            .first()
        )
        if sale is None:
            raise NotFound(f"Sale {sale_id} not found")
        if sale.client_id != int(seller_id):
            raise Forbidden("Only the owner of a sale can list it", details={"sale_id": sale.id})

        balances = available_balances(db=db, sale=sale)
        available = balances.available_for(position_type)
        if v > available:
            raise VolumeExceedsBalance(
                f"Only {available} t of {position_type.value} volume is available",
                details={
                    "sale_id": sale.id,
                    "position_type": position_type.value,
                    "requested": str(v),
                    "available": str(available),
                },
            )

        cost_basis = compute_pru(pru_input_for_sale(db=db, sale=sale)).pru.quantize(Q4)
        listing = models.ResaleListing(
            sale_id=sale.id,
            seller_id=sale.client_id,
            position_type=position_type,
            original_volume=v,
            volume=v,
            requested_price=price,
            cost_basis=cost_basis,
            state=ListingState.pending_validation,
            validation_expiry=now + timedelta(minutes=settings.validation_window_minutes),
            comment=comment,
        )
        db.add(listing)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(listing)
    bus.publish(
        EventType.LISTING_CREATED,
        {"listing_id": listing.id, "seller_id": listing.seller_id, "volume": str(v)},
    )
    log.info(
        "listing_created",
        extra={"listing_id": listing.id, "sale_id": sale_id, "position_type": position_type.value},
    )
    return listing


def get_listing(*, db: Session, listing_id: int) -> models.ResaleListing:
    listing = db.get(models.ResaleListing, int(listing_id))
    if listing is None:
        raise NotFound(f"Listing {listing_id} not found")
    return listing


def _transition(
    *,
    db: Session,
    listing: models.ResaleListing,
    to_state: ListingState,
    allowed_from: tuple[ListingState, ...],
    updates: dict | None = None,
    where: tuple = (),
) -> models.ResaleListing:
    observed_before = listing.state
    listing_id = listing.id
    result = atomic_transition_listing_state(
        db=db,
        listing_id=listing_id,
        to_state=to_state,
        allowed_from=allowed_from,
        updates=updates,
        where=where,
    )
    if not result.updated:
        db.rollback()
        observed_now = (
            db.query(models.ResaleListing.state)
            .filter(models.ResaleListing.id == listing_id)
            .scalar()
        )
        raise_for_missed_guard(
            entity="listing",
            entity_id=listing_id,
            observed_before=observed_before,
            observed_now=observed_now,
            allowed_from=allowed_from,
        )
    db.commit()
    db.refresh(listing)
    return listing


def approve_listing(
    *, db: Session, listing_id: int, admin_id: int, now: datetime | None = None
) -> models.ResaleListing:
    listing = get_listing(db=db, listing_id=listing_id)
    listing = _transition(
        db=db,
        listing=listing,
        to_state=ListingState.listed,
        allowed_from=(ListingState.pending_validation,),
        updates={"validated_at": now or utc_now(), "validated_by": int(admin_id)},
    )
    bus.publish(
        EventType.LISTING_APPROVED, {"listing_id": listing.id, "seller_id": listing.seller_id}
    )
    log.info("listing_approved", extra={"listing_id": listing.id, "admin_id": admin_id})
    return listing


def reject_listing(
    *,
    db: Session,
    listing_id: int,
    admin_id: int,
    reason: str | None = None,
    now: datetime | None = None,
) -> models.ResaleListing:
    """Terminal. The volume goes back to the sale's available balance."""

    listing = get_listing(db=db, listing_id=listing_id)
    updates: dict = {"validated_at": now or utc_now(), "validated_by": int(admin_id)}
    if reason:
        updates["comment"] = reason
    listing = _transition(
        db=db,
        listing=listing,
        to_state=ListingState.rejected,
        allowed_from=(ListingState.pending_validation,),
        updates=updates,
    )
    bus.publish(
        EventType.LISTING_REJECTED, {"listing_id": listing.id, "seller_id": listing.seller_id}
    )
    log.info("listing_rejected", extra={"listing_id": listing.id, "admin_id": admin_id})
    return listing


def withdraw_listing(
    *, db: Session, listing_id: int, actor_id: int, actor_is_admin: bool = False
) -> models.ResaleListing:
    listing = get_listing(db=db, listing_id=listing_id)
    is_owner = listing.seller_id == int(actor_id)
    if not (is_owner or actor_is_admin):
        raise Forbidden("Only the owner or an admin can withdraw a listing")

    allowed = (ListingState.listed,)
    if is_owner:
        allowed = (ListingState.pending_validation, ListingState.listed)

    # A partially settled listing can no longer be withdrawn.
    no_accepted_bid = ~exists().where(
        models.Bid.listing_id == int(listing.id),
        models.Bid.status == BidStatus.accepted,
    )
    if not db.query(no_accepted_bid).scalar():
        raise InvalidTransition(
            f"Listing {listing.id} already has an accepted bid",
            details={"listing_id": listing.id},
        )

    listing = _transition(
        db=db,
        listing=listing,
        to_state=ListingState.withdrawn,
        allowed_from=allowed,
        where=(no_accepted_bid,),
    )
    bus.publish(
        EventType.LISTING_WITHDRAWN, {"listing_id": listing.id, "seller_id": listing.seller_id}
    )
    log.info("listing_withdrawn", extra={"listing_id": listing.id, "actor_id": actor_id})
    return listing


def is_validation_expired(listing: models.ResaleListing, now: datetime | None = None) -> bool:
    if listing.state != ListingState.pending_validation:
        return False
    return as_utc(listing.validation_expiry) < (now or utc_now())


@dataclass
class AdminQueueItem:
    listing: models.ResaleListing
    expired: bool
    warnings: list[ConsistencyWarning] = field(default_factory=list)


def admin_queue(*, db: Session, now: datetime | None = None) -> list[AdminQueueItem]:
    """Pending listings, oldest first, flagged when past their validation window."""

    now = now or utc_now()
    pending = (
        db.query(models.ResaleListing)
        .filter(models.ResaleListing.state == ListingState.pending_validation)
        .order_by(models.ResaleListing.validation_expiry.asc(), models.ResaleListing.id.asc())
        .all()
    )
    items: list[AdminQueueItem] = []
    for listing in pending:
        expired = is_validation_expired(listing, now)
        warnings = []
        if expired:
            warnings.append(
                ConsistencyWarning(
                    code="VALIDATION_EXPIRED",
                    message=f"Listing {listing.id} passed its validation window unvalidated",
                    details={
                        "listing_id": listing.id,
                        "validation_expiry": as_utc(listing.validation_expiry).isoformat(),
                    },
                )
            )
        items.append(AdminQueueItem(listing=listing, expired=expired, warnings=warnings))
    return items


def market_listings(*, db: Session, viewer_id: int | None) -> list[models.ResaleListing]:
    """Listings other clients can bid on; the viewer's own are left out."""

    q = (
        db.query(models.ResaleListing)
        .join(models.Client, models.Client.id == models.ResaleListing.seller_id)
        .filter(models.ResaleListing.state == ListingState.listed)
        .filter(models.Client.visible_on_market.is_(True))
    )
    if viewer_id is not None:
        q = q.filter(models.ResaleListing.seller_id != int(viewer_id))
    return q.order_by(models.ResaleListing.id.desc()).all()


def list_listings(
    *, db: Session, seller_id: int | None = None, state: ListingState | None = None
) -> list[models.ResaleListing]:
    q = db.query(models.ResaleListing)
    if seller_id is not None:
        q = q.filter(models.ResaleListing.seller_id == int(seller_id))
    if state is not None:
        q = q.filter(models.ResaleListing.state == state)
    return q.order_by(models.ResaleListing.id.desc()).all()
