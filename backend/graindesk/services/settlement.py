"""Bid matching and settlement on the secondary market.

``accept_bid`` is the one operation that must serialize. Inside a single DB
transaction it:

1. flips the bid ``active -> accepted`` and decrements the listing volume, both
   with conditional UPDATEs (listing must still be ``listed``);
2. settles ``min(bid.volume, listing.volume)`` tonnes;
3. computes ``seller_gain = (bid.price - cost_basis) * volume``;
4. writes the Transaction and the buyer's new flat-priced sale;
5. shrinks the seller's sale and moves coverage the sale no longer carries to
   orphaned rows (``sale_id`` NULL), newest hedge first;
6. leaves the other active bids untouched;
7. closes the listing when its remaining volume reaches zero.

Any guard miss rolls everything back. A bid or listing that was still open
when this session read it and has moved since raises ``StaleState``; one
already closed at that read raises ``InvalidTransition``. Events are
published only after the commit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_CEILING, Decimal

from sqlalchemy import or_
from sqlalchemy.orm import Session

from graindesk import models
from graindesk.config import settings
from graindesk.core.errors import (
    ConsistencyWarning,
    Forbidden,
    InvalidAmount,
    InvalidTransition,
    NotFound,
    StaleState,
)
from graindesk.core.timeutils import utc_now
from graindesk.models.domain import BidStatus, ListingState, PricingMode
from graindesk.services.conversion import get_contract_size
from graindesk.services.events import EventType, bus
from graindesk.services.transitions import (
    atomic_decrement,
    atomic_transition_bid_status,
    atomic_transition_listing_state,
    raise_for_missed_guard,
)

log = logging.getLogger("graindesk.settlement")

ZERO = Decimal("0")
Q4 = Decimal("0.0001")


def _dec(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _fresh_volume(db: Session, model: type, row_id: int) -> Decimal:
    # Re-read inside the transaction: the guarded UPDATEs bypass the identity map.
    value = db.query(model.volume).filter(model.id == int(row_id)).scalar()
    return _dec(value or 0).quantize(Q4)


def _current(db: Session, column, row_id: int):
    return db.query(column).filter(column.class_.id == int(row_id)).scalar()


def place_bid(
    *,
    db: Session,
    listing_id: int,
    bidder_id: int,
    price: Decimal,
    volume: Decimal,
) -> models.Bid:
    listing = db.get(models.ResaleListing, int(listing_id))
    if listing is None:
        raise NotFound(f"Listing {listing_id} not found")
    if listing.state != ListingState.listed:
        raise InvalidTransition(
            f"Listing {listing.id} is not open for bids",
            details={"listing_id": listing.id, "state": listing.state.value},
        )
    if listing.seller_id == int(bidder_id):
        raise Forbidden(
            "Sellers cannot bid on their own listing", details={"listing_id": listing.id}
        )
    p = _dec(price)
    v = _dec(volume)
    if p <= 0 or v <= 0:
        raise InvalidAmount(
            "Bid price and volume must be positive", details={"price": str(p), "volume": str(v)}
        )

    bid = models.Bid(
        listing_id=listing.id, bidder_id=int(bidder_id), price=p, volume=v, status=BidStatus.active
    )
    db.add(bid)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(bid)

    bus.publish(
        EventType.BID_PLACED,
        {"bid_id": bid.id, "listing_id": listing.id, "seller_id": listing.seller_id},
    )
    log.info("bid_placed", extra={"bid_id": bid.id, "listing_id": listing.id})
    return bid


def list_bids(
    *, db: Session, listing_id: int, status: BidStatus | None = None
) -> list[models.Bid]:
    q = db.query(models.Bid).filter(models.Bid.listing_id == int(listing_id))
    if status is not None:
        q = q.filter(models.Bid.status == status)
    return q.order_by(models.Bid.price.desc(), models.Bid.id.asc()).all()


def reject_bid(
    *, db: Session, bid_id: int, actor_id: int, actor_is_admin: bool = False
) -> models.Bid:
    bid = db.get(models.Bid, int(bid_id))
    if bid is None:
        raise NotFound(f"Bid {bid_id} not found")
    if not actor_is_admin and bid.listing.seller_id != int(actor_id):
        raise Forbidden("Only the seller or an admin can reject a bid", details={"bid_id": bid.id})

    before = bid.status
    result = atomic_transition_bid_status(
        db=db, bid_id=bid.id, to_status=BidStatus.rejected, allowed_from=(BidStatus.active,)
    )
    if not result.updated:
        db.rollback()
        now_status = db.query(models.Bid.status).filter(models.Bid.id == bid.id).scalar()
        raise_for_missed_guard(
            entity="bid",
            entity_id=bid.id,
            observed_before=before,
            observed_now=now_status,
            allowed_from=(BidStatus.active,),
        )
    db.commit()
    db.refresh(bid)

    bus.publish(
        EventType.BID_REJECTED,
        {"bid_id": bid.id, "listing_id": bid.listing_id, "bidder_id": bid.bidder_id},
    )
    log.info("bid_rejected", extra={"bid_id": bid.id, "actor_id": actor_id})
    return bid


@dataclass
class CoverageDetachment:
    orphans: list[models.SaleCoverage] = field(default_factory=list)
    warnings: list[ConsistencyWarning] = field(default_factory=list)


def detach_excess_coverage(
    *, db: Session, sale: models.Sale, new_volume: Decimal, now: datetime
) -> CoverageDetachment:
    """Orphan the coverage a shrunken sale no longer carries.

    Newest coverage goes first. Contract products move whole contracts, so the
    sale may end under-hedged by less than one contract, which is reported as an
    ``UNDER_HEDGED`` warning; tonnage-only products move the exact
    excess. Tonnage is conserved: a partially detached row is split in two.
    Caller commits.
    """

    coverages = (
        db.query(models.SaleCoverage)
        .filter(models.SaleCoverage.sale_id == int(sale.id))
        .order_by(models.SaleCoverage.coverage_date.desc(), models.SaleCoverage.id.desc())
        .with_for_update()
        .all()
    )
    covered = sum((_dec(c.tonnage) for c in coverages), ZERO)
    excess = covered - _dec(new_volume)
    if excess <= 0:
        return CoverageDetachment()

    size = get_contract_size(sale.vessel.product)
    orphans: list[models.SaleCoverage] = []
    for cov in coverages:
        if excess <= 0:
            break
        tonnage = _dec(cov.tonnage)
        if size is not None and cov.contracts > 0:
            needed = int((excess / size).to_integral_value(rounding=ROUND_CEILING))
            n = min(needed, cov.contracts)
            move_contracts = n
            move_tonnage = tonnage if n == cov.contracts else size * n
        else:
            move_contracts = 0
            move_tonnage = min(excess, tonnage)

        if move_tonnage >= tonnage:
            cov.sale_id = None
            cov.origin_sale_id = cov.origin_sale_id or sale.id
            cov.orphaned_at = now
            orphan = cov
            move_tonnage = tonnage
        else:
            cov.tonnage = tonnage - move_tonnage
            cov.contracts = cov.contracts - move_contracts
            orphan = models.SaleCoverage(
                sale_id=None,
                origin_sale_id=cov.origin_sale_id or sale.id,
                contracts=move_contracts,
                tonnage=move_tonnage,
                futures_price=cov.futures_price,
                coverage_date=cov.coverage_date,
                orphaned_at=now,
            )
            db.add(orphan)
        orphans.append(orphan)
        excess -= move_tonnage

    db.flush()
    warnings = []
    if excess < 0:
        warnings.append(
            ConsistencyWarning(
                code="UNDER_HEDGED",
                message=f"Whole-contract detachment leaves {-excess} t of sale {sale.id} unhedged",
                details={
                    "sale_id": sale.id,
                    "unhedged_tonnage": str(-excess),
                    "volume": str(_dec(new_volume)),
                },
            )
        )
    return CoverageDetachment(orphans=orphans, warnings=warnings)


def accept_bid(
    *,
    db: Session,
    bid_id: int,
    commission: Decimal | None = None,
    seller_id: int | None = None,
    now: datetime | None = None,
) -> models.Transaction:
    """Settle one bid against its listing. Returns the new Transaction.

    ``seller_id`` restricts the call to the listing owner; admins pass None.
    ``commission`` defaults to ``settings.default_commission``.
    """

    now = now or utc_now()
    fee = _dec(commission) if commission is not None else _dec(settings.default_commission)
    if fee < 0:
        raise InvalidAmount("Commission cannot be negative", details={"commission": str(fee)})

    try:
        # Status as this session last saw it; a guard miss from there is a lost race.
        bid = db.get(models.Bid, int(bid_id))
        if bid is None:
            raise NotFound(f"Bid {bid_id} not found")
        bid_seen = bid.status
        listing = (
            db.query(models.ResaleListing)
            .filter(models.ResaleListing.id == bid.listing_id)
            .with_for_update()
            .first()
        )
        listing_seen = listing.state
        if seller_id is not None and listing.seller_id != int(seller_id):
            raise Forbidden("Only the seller can accept a bid", details={"bid_id": bid.id})

        volume = min(_dec(bid.volume), _dec(listing.volume))
        bid_price = _dec(bid.price)
        cost_basis = _dec(listing.cost_basis)

        bid_guard = atomic_transition_bid_status(
            db=db,
            bid_id=bid.id,
            to_status=BidStatus.accepted,
            allowed_from=(BidStatus.active,),
            updates={"accepted_at": now},
        )
        if not bid_guard.updated:
            raise_for_missed_guard(
                entity="bid",
                entity_id=bid.id,
                observed_before=bid_seen,
                observed_now=_current(db, models.Bid.status, bid.id),
                allowed_from=(BidStatus.active,),
            )

        listing_guard = atomic_decrement(
            db=db,
            model=models.ResaleListing,
            row_id=listing.id,
            column="volume",
            amount=volume,
            where=(models.ResaleListing.state == ListingState.listed,),
        )
        if not listing_guard.updated:
            state_now = _current(db, models.ResaleListing.state, listing.id)
            if state_now == ListingState.listed:
                raise StaleState(
                    f"Listing {listing.id} no longer holds {volume} t",
                    details={"listing_id": listing.id},
                )
            raise_for_missed_guard(
                entity="listing",
                entity_id=listing.id,
                observed_before=listing_seen,
                observed_now=state_now,
                allowed_from=(ListingState.listed,),
            )

        sale = (
            db.query(models.Sale)
            .filter(models.Sale.id == listing.sale_id)
            .with_for_update()
            .first()
        )
        sale_guard = atomic_decrement(
            db=db, model=models.Sale, row_id=sale.id, column="volume", amount=volume
        )
        if not sale_guard.updated:
            raise StaleState(
                f"Sale {sale.id} no longer holds {volume} t", details={"sale_id": sale.id}
            )

        buyer_sale = models.Sale(
            client_id=bid.bidder_id,
            vessel_id=sale.vessel_id,
            pricing_mode=PricingMode.flat,
            volume=volume,
            flat_price=bid_price,
            deal_date=now.date(),
            parent_sale_id=sale.id,
        )
        db.add(buyer_sale)
        db.flush()

        txn = models.Transaction(
            listing_id=listing.id,
            bid_id=bid.id,
            seller_id=listing.seller_id,
            buyer_id=bid.bidder_id,
            buyer_sale_id=buyer_sale.id,
            original_cost_basis=cost_basis,
            final_price=bid_price,
            volume=volume,
            seller_gain=((bid_price - cost_basis) * volume).quantize(Q4),
            commission=fee,
        )
        db.add(txn)

        detachment = detach_excess_coverage(
            db=db, sale=sale, new_volume=_fresh_volume(db, models.Sale, sale.id), now=now
        )

        remaining = _fresh_volume(db, models.ResaleListing, listing.id)
        settled = remaining <= 0
        if settled:
            closed = atomic_transition_listing_state(
                db=db,
                listing_id=listing.id,
                to_state=ListingState.settled,
                allowed_from=(ListingState.listed,),
            )
            if not closed.updated:
                raise StaleState(
                    f"Listing {listing.id} changed concurrently",
                    details={"listing_id": listing.id},
                )
        seller_sale_id = sale.id
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(txn)
    txn.warnings = detachment.warnings
    orphan_ids = [o.id for o in detachment.orphans]
    bus.publish(
        EventType.BID_ACCEPTED,
        {"bid_id": txn.bid_id, "listing_id": txn.listing_id, "bidder_id": txn.buyer_id},
    )
    bus.publish(
        EventType.TRANSACTION_CREATED,
        {
            "transaction_id": txn.id,
            "seller_id": txn.seller_id,
            "buyer_id": txn.buyer_id,
            "volume": str(txn.volume),
            "seller_gain": str(txn.seller_gain),
        },
    )
    for oid in orphan_ids:
        bus.publish(
            EventType.COVERAGE_ORPHANED, {"coverage_id": oid, "origin_sale_id": seller_sale_id}
        )
    if settled:
        bus.publish(EventType.LISTING_SETTLED, {"listing_id": txn.listing_id})
    log.info(
        "bid_accepted",
        extra={
            "transaction_id": txn.id,
            "bid_id": txn.bid_id,
            "listing_id": txn.listing_id,
            "volume": str(txn.volume),
            "orphaned_coverages": orphan_ids,
            "listing_settled": settled,
            "warnings": [w.code for w in detachment.warnings],
        },
    )
    return txn


def get_transaction(*, db: Session, transaction_id: int) -> models.Transaction:
    txn = db.get(models.Transaction, int(transaction_id))
    if txn is None:
        raise NotFound(f"Transaction {transaction_id} not found")
    return txn


def list_transactions(*, db: Session, client_id: int | None = None) -> list[models.Transaction]:
    q = db.query(models.Transaction)
    if client_id is not None:
        q = q.filter(
            or_(
                models.Transaction.seller_id == int(client_id),
                models.Transaction.buyer_id == int(client_id),
            )
        )
    return q.order_by(models.Transaction.id.desc()).all()


def mark_pnl_paid(
    *, db: Session, transaction_id: int, now: datetime | None = None
) -> models.Transaction:
    """One-way: a paid transaction cannot be marked unpaid again."""

    txn = get_transaction(db=db, transaction_id=transaction_id)
    if txn.pnl_paid:
        raise InvalidTransition(
            f"Transaction {txn.id} P&L is already paid", details={"transaction_id": txn.id}
        )
    txn.pnl_paid = True
    txn.pnl_paid_at = now or utc_now()
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(txn)
    log.info("transaction_pnl_paid", extra={"transaction_id": txn.id})
    return txn
