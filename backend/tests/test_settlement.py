from decimal import Decimal

import pytest

from graindesk import models
from graindesk.core.errors import Forbidden, InvalidAmount, InvalidTransition, StaleState
from graindesk.models.domain import BidStatus, ListingState, PositionType, PricingMode
from graindesk.services import resale_workflow as rw
from graindesk.services.events import EventType
from graindesk.services.hedge_allocator import book_sale_coverage, sale_covered_tonnage
from graindesk.services.positions import orphaned_coverages
from graindesk.services.settlement import (
    accept_bid,
    list_bids,
    list_transactions,
    mark_pnl_paid,
    place_bid,
    reject_bid,
)


def _listed(db, desk, volume="500", position_type=PositionType.uncovered):
    listing = rw.create_listing(
        db=db,
        seller_id=desk["seller"].id,
        sale_id=desk["sale"].id,
        position_type=position_type,
        volume=Decimal(volume),
        requested_price=Decimal("200"),
    )
    return rw.approve_listing(db=db, listing_id=listing.id, admin_id=desk["admin"].id)


def _bid(db, listing, bidder, price, volume):
    return place_bid(
        db=db,
        listing_id=listing.id,
        bidder_id=bidder.id,
        price=Decimal(price),
        volume=Decimal(volume),
    )


@pytest.fixture
def second_buyer(db_session):
    client = models.Client(name="Poultry Coop", email="coop@desk.test")
    db_session.add(client)
    db_session.commit()
    db_session.refresh(client)
    return client


def test_full_fill_settles_listing_and_keeps_other_bids(db_session, desk, second_buyer, published):
    listing = _listed(db_session, desk)
    low = _bid(db_session, listing, desk["buyer"], "410", "300")
    high = _bid(db_session, listing, second_buyer, "415", "500")
    del published[:]

    txn = accept_bid(db=db_session, bid_id=high.id, seller_id=desk["seller"].id)

    assert txn.volume == Decimal("500")
    assert txn.final_price == Decimal("415")
    assert txn.original_cost_basis == Decimal("185.0390")
    assert txn.seller_gain == (Decimal("415") - Decimal("185.0390")) * Decimal("500")

    listing = db_session.get(models.ResaleListing, listing.id)
    assert listing.state == ListingState.settled
    assert listing.volume == 0
    assert db_session.get(models.Bid, high.id).status == BidStatus.accepted
    assert db_session.get(models.Bid, low.id).status == BidStatus.active
    assert db_session.get(models.Sale, desk["sale"].id).volume == Decimal("500")

    assert [e.type for e in published] == [
        EventType.BID_ACCEPTED,
        EventType.TRANSACTION_CREATED,
        EventType.LISTING_SETTLED,
    ]

    # The remaining bid can no longer be filled.
    with pytest.raises(InvalidTransition):
        accept_bid(db=db_session, bid_id=low.id)


def test_buyer_gets_a_flat_sale_at_the_bid_price(db_session, desk):
    listing = _listed(db_session, desk)
    bid = _bid(db_session, listing, desk["buyer"], "415", "500")
    txn = accept_bid(db=db_session, bid_id=bid.id)

    buyer_sale = db_session.get(models.Sale, txn.buyer_sale_id)
    assert buyer_sale.client_id == desk["buyer"].id
    assert buyer_sale.vessel_id == desk["vessel"].id
    assert buyer_sale.pricing_mode == PricingMode.flat
    assert buyer_sale.flat_price == Decimal("415")
    assert buyer_sale.volume == Decimal("500")
    assert buyer_sale.parent_sale_id == desk["sale"].id


def test_partial_fill_orphans_coverage_beyond_the_new_sale_volume(db_session, desk, published):
    sale_id = desk["sale"].id
    # 8 contracts = 1016.048 t on a 1000 t sale
    book_sale_coverage(db=db_session, sale_id=sale_id, futures_price=Decimal("430"), contracts=8)
    listing = _listed(db_session, desk, position_type=PositionType.covered)
    bid = _bid(db_session, listing, desk["buyer"], "200", "200")
    del published[:]

    txn = accept_bid(db=db_session, bid_id=bid.id)

    listing = db_session.get(models.ResaleListing, listing.id)
    assert listing.state == ListingState.listed
    assert listing.volume == Decimal("300")
    assert db_session.get(models.Sale, sale_id).volume == Decimal("800")

    # 216.048 t excess -> two whole contracts leave the sale
    orphans = orphaned_coverages(db=db_session)
    assert len(orphans) == 1
    assert orphans[0].contracts == 2
    assert orphans[0].tonnage == Decimal("254.012")
    assert orphans[0].origin_sale_id == sale_id
    assert orphans[0].orphaned_at is not None
    assert sale_covered_tonnage(db=db_session, sale_id=sale_id) == Decimal("762.036")
    # 800 - 762.036 t left unhedged by moving whole contracts
    assert [w.code for w in txn.warnings] == ["UNDER_HEDGED"]
    assert Decimal(txn.warnings[0].details["unhedged_tonnage"]) == Decimal("37.964")

    # fully hedged at 430: (430 + 20) * 0.3937
    assert txn.original_cost_basis == Decimal("177.1650")
    assert txn.seller_gain == Decimal("4567.0000")
    assert [e.type for e in published] == [
        EventType.BID_ACCEPTED,
        EventType.TRANSACTION_CREATED,
        EventType.COVERAGE_ORPHANED,
    ]


def test_accepted_bid_cannot_be_accepted_twice(db_session, desk):
    listing = _listed(db_session, desk)
    bid = _bid(db_session, listing, desk["buyer"], "300", "100")
    accept_bid(db=db_session, bid_id=bid.id)
    with pytest.raises(InvalidTransition):
        accept_bid(db=db_session, bid_id=bid.id)
    assert len(list_transactions(db=db_session)) == 1


def test_losing_concurrent_accept_is_stale_and_writes_nothing(db_session, desk, session_factory):
    sale_id = desk["sale"].id
    book_sale_coverage(db=db_session, sale_id=sale_id, futures_price=Decimal("430"), contracts=8)
    listing = _listed(db_session, desk, position_type=PositionType.covered)
    bid = _bid(db_session, listing, desk["buyer"], "200", "200")

    other = session_factory()
    try:
        # The second desk has the bid open while the first one settles it.
        seen = other.get(models.Bid, bid.id)
        assert seen.status == BidStatus.active
        accept_bid(db=db_session, bid_id=bid.id, seller_id=desk["seller"].id)
        settled = (
            db_session.get(models.Sale, sale_id).volume,
            db_session.get(models.ResaleListing, listing.id).volume,
            sale_covered_tonnage(db=db_session, sale_id=sale_id),
            len(orphaned_coverages(db=db_session)),
        )

        with pytest.raises(StaleState):
            accept_bid(db=other, bid_id=bid.id, seller_id=desk["seller"].id)
    finally:
        other.close()

    db_session.expire_all()
    assert len(list_transactions(db=db_session)) == 1
    assert settled == (
        db_session.get(models.Sale, sale_id).volume,
        db_session.get(models.ResaleListing, listing.id).volume,
        sale_covered_tonnage(db=db_session, sale_id=sale_id),
        len(orphaned_coverages(db=db_session)),
    )
    assert settled[:2] == (Decimal("800"), Decimal("300"))


def test_only_the_seller_accepts(db_session, desk):
    listing = _listed(db_session, desk)
    bid = _bid(db_session, listing, desk["buyer"], "300", "100")
    with pytest.raises(Forbidden):
        accept_bid(db=db_session, bid_id=bid.id, seller_id=desk["buyer"].id)
    assert db_session.get(models.Bid, bid.id).status == BidStatus.active


def test_commission_is_recorded_apart_from_gain(db_session, desk):
    listing = _listed(db_session, desk)
    bid = _bid(db_session, listing, desk["buyer"], "200", "100")
    with pytest.raises(InvalidAmount):
        accept_bid(db=db_session, bid_id=bid.id, commission=Decimal("-1"))

    txn = accept_bid(db=db_session, bid_id=bid.id, commission=Decimal("150"))
    assert txn.commission == Decimal("150")
    assert txn.seller_gain == (Decimal("200") - Decimal("185.0390")) * Decimal("100")


def test_mark_pnl_paid_is_one_way(db_session, desk):
    listing = _listed(db_session, desk)
    bid = _bid(db_session, listing, desk["buyer"], "200", "100")
    txn = accept_bid(db=db_session, bid_id=bid.id)
    assert txn.pnl_paid is False

    paid = mark_pnl_paid(db=db_session, transaction_id=txn.id)
    assert paid.pnl_paid is True
    assert paid.pnl_paid_at is not None
    with pytest.raises(InvalidTransition):
        mark_pnl_paid(db=db_session, transaction_id=txn.id)


def test_place_bid_rules(db_session, desk):
    pending = rw.create_listing(
        db=db_session,
        seller_id=desk["seller"].id,
        sale_id=desk["sale"].id,
        position_type=PositionType.uncovered,
        volume=Decimal("100"),
        requested_price=Decimal("200"),
    )
    with pytest.raises(InvalidTransition):
        _bid(db_session, pending, desk["buyer"], "200", "50")

    listing = rw.approve_listing(db=db_session, listing_id=pending.id, admin_id=desk["admin"].id)
    with pytest.raises(Forbidden):
        _bid(db_session, listing, desk["seller"], "200", "50")
    with pytest.raises(InvalidAmount):
        _bid(db_session, listing, desk["buyer"], "0", "50")

    # Bids larger than the listing are allowed; settlement caps the volume.
    big = _bid(db_session, listing, desk["buyer"], "200", "5000")
    assert big.status == BidStatus.active


def test_reject_bid(db_session, desk, second_buyer):
    listing = _listed(db_session, desk)
    first = _bid(db_session, listing, desk["buyer"], "190", "100")
    second = _bid(db_session, listing, second_buyer, "195", "100")

    with pytest.raises(Forbidden):
        reject_bid(db=db_session, bid_id=first.id, actor_id=second_buyer.id)

    rejected = reject_bid(db=db_session, bid_id=first.id, actor_id=desk["seller"].id)
    assert rejected.status == BidStatus.rejected
    with pytest.raises(InvalidTransition):
        reject_bid(db=db_session, bid_id=first.id, actor_id=desk["seller"].id)

    active = list_bids(db=db_session, listing_id=listing.id, status=BidStatus.active)
    assert [b.id for b in active] == [second.id]
