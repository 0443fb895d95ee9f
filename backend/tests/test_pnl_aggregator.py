from decimal import Decimal

import pytest

from graindesk import models
from graindesk.core.errors import NotFound
from graindesk.models.domain import CommercialTerm, PositionType, PricingMode, ProductType
from graindesk.services import resale_workflow as rw
from graindesk.services.hedge_allocator import book_purchase_coverage, book_sale_coverage
from graindesk.services.pnl_aggregator import (
    pnl_by_client,
    portfolio_pnl,
    purchase_flat_with_freight,
    purchase_premium_with_freight,
    vessel_pnl,
)
from graindesk.services.settlement import accept_bid, place_bid


def test_prime_pnl_uses_premium_spread_times_factor(db_session, desk):
    pnl = vessel_pnl(db=db_session, vessel_id=desk["vessel"].id)
    # (20 - 10) cts/bu * 0.3937 * 1000 t
    assert pnl.pnl_prime == Decimal("3937")
    assert pnl.pnl_flat == 0
    assert pnl.pnl_futures == 0
    assert pnl.pnl_total == Decimal("3937")
    assert pnl.volume_bought == Decimal("5000")
    assert pnl.volume_sold == Decimal("1000")
    assert pnl.purchase_price_display == Decimal("10") * Decimal("0.3937")
    assert pnl.avg_sale_pru == Decimal("185.039")
    assert pnl.warnings == []


def test_futures_pnl_uses_the_smaller_hedged_side(db_session, desk):
    book_purchase_coverage(
        db=db_session, vessel_id=desk["vessel"].id, futures_price=Decimal("420"), contracts=8
    )
    book_sale_coverage(
        db=db_session, sale_id=desk["sale"].id, futures_price=Decimal("430"), contracts=4
    )
    pnl = vessel_pnl(db=db_session, vessel_id=desk["vessel"].id)
    assert pnl.volume_hedged_purchase == Decimal("1016.048")
    assert pnl.volume_hedged_sale == Decimal("508.024")
    assert pnl.avg_purchase_futures == Decimal("420")
    assert pnl.avg_sale_futures == Decimal("430")
    # (430 - 420) * 0.3937 * 508.024
    assert pnl.pnl_futures == Decimal("2000.090488")
    assert pnl.pnl_total == Decimal("3937") + Decimal("2000.090488")


def test_flat_pnl(db_session, desk):
    vessel = models.Vessel(
        name="MV Black Sea",
        product=ProductType.wheat,
        total_quantity=Decimal("3000"),
        purchase_pricing_mode=PricingMode.flat,
        purchase_flat_price=Decimal("200"),
        commercial_term=CommercialTerm.CFR,
    )
    db_session.add(vessel)
    db_session.flush()
    db_session.add(
        models.Sale(
            client_id=desk["buyer"].id,
            vessel_id=vessel.id,
            pricing_mode=PricingMode.flat,
            volume=Decimal("500"),
            flat_price=Decimal("230"),
        )
    )
    db_session.commit()

    pnl = vessel_pnl(db=db_session, vessel_id=vessel.id)
    assert pnl.pnl_flat == Decimal("15000")
    assert pnl.pnl_prime == 0
    assert pnl.purchase_price_display == Decimal("200")
    assert pnl.avg_sale_pru == Decimal("230")


def test_fob_freight_is_added_to_the_purchase_side():
    prime = models.Vessel(
        product=ProductType.corn,
        purchase_premium=Decimal("10"),
        freight_rate=Decimal("7.874"),
        commercial_term=CommercialTerm.FOB,
    )
    # 7.874 USD/t / 0.3937 = 20 cts/bu
    assert purchase_premium_with_freight(prime) == Decimal("30")

    flat = models.Vessel(
        product=ProductType.wheat,
        purchase_flat_price=Decimal("380"),
        freight_rate=Decimal("15"),
        commercial_term=CommercialTerm.FOB,
    )
    assert purchase_flat_with_freight(flat) == Decimal("395")

    flat.commercial_term = CommercialTerm.CFR
    assert purchase_flat_with_freight(flat) == Decimal("380")


def test_missing_quote_becomes_a_warning_not_an_error(db_session, desk):
    db_session.query(models.ReferencePrice).delete()
    db_session.commit()
    pnl = vessel_pnl(db=db_session, vessel_id=desk["vessel"].id)
    assert pnl.avg_sale_pru is None
    assert [w.code for w in pnl.warnings] == ["MISSING_REFERENCE_PRICE"]
    assert pnl.warnings[0].details["sale_id"] == desk["sale"].id
    assert pnl.pnl_prime == Decimal("3937")


def test_realized_gain_flows_into_the_portfolio(db_session, desk):
    listing = rw.create_listing(
        db=db_session,
        seller_id=desk["seller"].id,
        sale_id=desk["sale"].id,
        position_type=PositionType.uncovered,
        volume=Decimal("100"),
        requested_price=Decimal("200"),
    )
    rw.approve_listing(db=db_session, listing_id=listing.id, admin_id=desk["admin"].id)
    bid = place_bid(
        db=db_session,
        listing_id=listing.id,
        bidder_id=desk["buyer"].id,
        price=Decimal("195"),
        volume=Decimal("100"),
    )
    accept_bid(db=db_session, bid_id=bid.id, commission=Decimal("25"))

    book = portfolio_pnl(db=db_session)
    # (195 - 185.039) * 100
    assert book.realized_gain_total == Decimal("996.1000")
    assert book.vessel_count == 1
    assert book.vessels[0].commission_total == Decimal("25")

    seller_view = portfolio_pnl(db=db_session, client_id=desk["seller"].id)
    assert seller_view.realized_gain_total == Decimal("996.1000")
    buyer_view = portfolio_pnl(db=db_session, client_id=desk["buyer"].id)
    assert buyer_view.realized_gain_total == 0

    rows = {c.client_id: c for c in pnl_by_client(db=db_session)[0].clients}
    assert rows[desk["seller"].id].realized_gain == Decimal("996.1000")
    assert rows[desk["seller"].id].volume == Decimal("900")
    assert rows[desk["buyer"].id].volume == Decimal("100")


def test_client_scope_skips_vessels_without_their_sales(db_session, desk):
    assert portfolio_pnl(db=db_session, client_id=desk["buyer"].id).vessels == []
    assert pnl_by_client(db=db_session, client_id=desk["buyer"].id) == []

    rows = pnl_by_client(db=db_session, client_id=desk["seller"].id)
    assert len(rows) == 1
    assert rows[0].total_pnl == Decimal("3937")


def test_unknown_vessel(db_session):
    with pytest.raises(NotFound):
        vessel_pnl(db=db_session, vessel_id=999)
