from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from graindesk import models
from graindesk.core.errors import (
    Forbidden,
    InvalidAmount,
    InvalidTransition,
    MissingReferencePrice,
    VolumeExceedsBalance,
)
from graindesk.models.domain import ListingState, PositionType
from graindesk.services import resale_workflow as rw
from graindesk.services.events import EventType, badge_counts
from graindesk.services.hedge_allocator import book_sale_coverage
from graindesk.services.settlement import accept_bid, place_bid

T0 = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


def _list(db, desk, volume="500", position_type=PositionType.uncovered, now=T0):
    return rw.create_listing(
        db=db,
        seller_id=desk["seller"].id,
        sale_id=desk["sale"].id,
        position_type=position_type,
        volume=Decimal(volume),
        requested_price=Decimal("200"),
        now=now,
    )


def test_create_listing_freezes_cost_basis_and_expiry(db_session, desk, published):
    listing = _list(db_session, desk)
    assert listing.state == ListingState.pending_validation
    assert listing.volume == Decimal("500")
    assert listing.original_volume == Decimal("500")
    # (450 + 20) * 0.3937
    assert listing.cost_basis == Decimal("185.0390")
    expiry = listing.validation_expiry.replace(tzinfo=timezone.utc)
    assert expiry == T0 + timedelta(minutes=30)
    assert [e.type for e in published] == [EventType.LISTING_CREATED]


def test_listing_volume_is_bounded_per_position_type(db_session, desk):
    book_sale_coverage(
        db=db_session, sale_id=desk["sale"].id, futures_price=Decimal("430"), contracts=3
    )
    # 381.018 t covered, 618.982 t uncovered
    with pytest.raises(VolumeExceedsBalance):
        _list(db_session, desk, volume="400", position_type=PositionType.covered)
    _list(db_session, desk, volume="381.018", position_type=PositionType.covered)
    _list(db_session, desk, volume="600", position_type=PositionType.uncovered)

    sale = db_session.get(models.Sale, desk["sale"].id)
    balances = rw.available_balances(db=db_session, sale=sale)
    assert balances.covered_available == 0
    assert balances.uncovered_available == Decimal("18.982")
    with pytest.raises(VolumeExceedsBalance):
        _list(db_session, desk, volume="20")


def test_rejected_listing_releases_its_volume(db_session, desk):
    listing = _list(db_session, desk, volume="1000")
    with pytest.raises(VolumeExceedsBalance):
        _list(db_session, desk, volume="1")
    rw.reject_listing(
        db=db_session, listing_id=listing.id, admin_id=desk["admin"].id, reason="price"
    )
    again = _list(db_session, desk, volume="1000")
    assert again.state == ListingState.pending_validation


def test_create_listing_checks_owner_and_amounts(db_session, desk):
    with pytest.raises(Forbidden):
        rw.create_listing(
            db=db_session,
            seller_id=desk["buyer"].id,
            sale_id=desk["sale"].id,
            position_type=PositionType.uncovered,
            volume=Decimal("10"),
            requested_price=Decimal("200"),
        )
    with pytest.raises(InvalidAmount):
        _list(db_session, desk, volume="0")


def test_create_listing_needs_a_reference_price_for_cost_basis(db_session, desk):
    db_session.query(models.ReferencePrice).delete()
    db_session.commit()
    with pytest.raises(MissingReferencePrice):
        _list(db_session, desk)
    assert db_session.query(models.ResaleListing).count() == 0


def test_approve_then_second_approve_is_invalid(db_session, desk, published):
    listing = _list(db_session, desk)
    approved = rw.approve_listing(
        db=db_session, listing_id=listing.id, admin_id=desk["admin"].id, now=T0
    )
    assert approved.state == ListingState.listed
    assert approved.validated_by == desk["admin"].id

    with pytest.raises(InvalidTransition):
        rw.approve_listing(db=db_session, listing_id=listing.id, admin_id=desk["admin"].id)
    with pytest.raises(InvalidTransition):
        rw.reject_listing(db=db_session, listing_id=listing.id, admin_id=desk["admin"].id)
    assert EventType.LISTING_APPROVED in [e.type for e in published]


def test_withdraw_rules(db_session, desk):
    pending = _list(db_session, desk, volume="100")
    # An admin can only pull a listing that is already on the market.
    with pytest.raises(InvalidTransition):
        rw.withdraw_listing(
            db=db_session, listing_id=pending.id, actor_id=desk["admin"].id, actor_is_admin=True
        )
    with pytest.raises(Forbidden):
        rw.withdraw_listing(db=db_session, listing_id=pending.id, actor_id=desk["buyer"].id)

    withdrawn = rw.withdraw_listing(
        db=db_session, listing_id=pending.id, actor_id=desk["seller"].id
    )
    assert withdrawn.state == ListingState.withdrawn


def test_partially_settled_listing_cannot_be_withdrawn(db_session, desk):
    listing = _list(db_session, desk, volume="500")
    rw.approve_listing(db=db_session, listing_id=listing.id, admin_id=desk["admin"].id)
    bid = place_bid(
        db=db_session,
        listing_id=listing.id,
        bidder_id=desk["buyer"].id,
        price=Decimal("205"),
        volume=Decimal("200"),
    )
    accept_bid(db=db_session, bid_id=bid.id)

    with pytest.raises(InvalidTransition):
        rw.withdraw_listing(db=db_session, listing_id=listing.id, actor_id=desk["seller"].id)
    assert db_session.get(models.ResaleListing, listing.id).state == ListingState.listed


def test_expiry_is_advisory_only(db_session, desk):
    listing = _list(db_session, desk)
    later = T0 + timedelta(minutes=31)
    assert rw.is_validation_expired(listing, T0 + timedelta(minutes=5)) is False
    assert rw.is_validation_expired(listing, later) is True

    queue = rw.admin_queue(db=db_session, now=later)
    assert len(queue) == 1
    assert queue[0].expired is True
    assert [w.code for w in queue[0].warnings] == ["VALIDATION_EXPIRED"]

    counts = badge_counts(db=db_session, now=later)
    assert counts == {"pending_validation": 1, "expired_validation": 1, "active_bids": 0}

    # Still approvable after the window.
    approved = rw.approve_listing(
        db=db_session, listing_id=listing.id, admin_id=desk["admin"].id, now=later
    )
    assert approved.state == ListingState.listed


def test_market_hides_own_and_invisible_sellers(db_session, desk):
    listing = _list(db_session, desk)
    rw.approve_listing(db=db_session, listing_id=listing.id, admin_id=desk["admin"].id)

    assert [x.id for x in rw.market_listings(db=db_session, viewer_id=desk["buyer"].id)] == [
        listing.id
    ]
    assert rw.market_listings(db=db_session, viewer_id=desk["seller"].id) == []

    seller = db_session.get(models.Client, desk["seller"].id)
    seller.visible_on_market = False
    db_session.commit()
    assert rw.market_listings(db=db_session, viewer_id=desk["buyer"].id) == []
