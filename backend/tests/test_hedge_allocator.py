from decimal import Decimal

import pytest

from graindesk import models
from graindesk.core.errors import (
    ContractSizeUnsupported,
    InvalidRollVolume,
    MissingReference,
    RollNotSupported,
    SameReference,
    VolumeExceedsBalance,
)
from graindesk.models.domain import ListingState, PositionType
from graindesk.services import resale_workflow as rw
from graindesk.services.events import EventType
from graindesk.services.hedge_allocator import (
    book_purchase_coverage,
    book_sale_coverage,
    coverage_summary,
    roll_sale,
    roll_vessel,
)
from graindesk.services.settlement import accept_bid, place_bid


def test_book_sale_coverage_by_tonnage_rounds_up_to_contracts(db_session, desk):
    cov, summary = book_sale_coverage(
        db=db_session,
        sale_id=desk["sale"].id,
        futures_price=Decimal("430"),
        tonnage=Decimal("600"),
    )
    assert cov.contracts == 5
    assert cov.tonnage == Decimal("635.03")
    assert summary.covered_tonnage == Decimal("635.03")
    assert summary.uncovered_volume == Decimal("364.97")
    assert summary.coverage_pct == Decimal("63.50")
    assert [w.code for w in summary.warnings] == ["CONTRACT_ROUNDING"]


def test_overcoverage_is_accepted_with_a_warning(db_session, desk):
    sale_id = desk["sale"].id
    book_sale_coverage(db=db_session, sale_id=sale_id, futures_price=Decimal("430"), contracts=8)
    summary = coverage_summary(db=db_session, sale=db_session.get(models.Sale, sale_id))
    assert summary.overcoverage == Decimal("16.048")
    assert summary.uncovered_volume == 0
    assert [w.code for w in summary.warnings] == ["OVERCOVERAGE"]


def test_tonnage_only_product_refuses_contracts(db_session, desk):
    vessel = models.Vessel(
        name="MV Scrap",
        product=models.ProductType.scrap,
        total_quantity=Decimal("2000"),
        purchase_pricing_mode=models.PricingMode.flat,
        purchase_flat_price=Decimal("380"),
    )
    db_session.add(vessel)
    db_session.commit()

    with pytest.raises(ContractSizeUnsupported):
        book_purchase_coverage(
            db=db_session, vessel_id=vessel.id, futures_price=Decimal("390"), contracts=3
        )
    cov, summary = book_purchase_coverage(
        db=db_session, vessel_id=vessel.id, futures_price=Decimal("390"), tonnage=Decimal("500")
    )
    assert cov.contracts == 0
    assert summary.covered_tonnage == Decimal("500")
    assert summary.warnings == []


def test_roll_sale_conserves_volume(db_session, desk, published):
    sale_id = desk["sale"].id
    book_sale_coverage(db=db_session, sale_id=sale_id, futures_price=Decimal("430"), contracts=3)

    res = roll_sale(
        db=db_session, sale_id=sale_id, volume_to_move=Decimal("400"), new_reference="zcu5"
    )
    assert res.new_reference == "ZCU5"
    assert res.source_remaining == Decimal("600")
    assert res.source_remaining + res.moved_volume == res.original_total

    child = db_session.get(models.Sale, res.child_id)
    assert child.parent_sale_id == sale_id
    assert child.volume == Decimal("400")
    assert child.premium == Decimal("20")
    assert child.reference == "ZCU5"
    assert [e.type for e in published] == [EventType.POSITION_ROLLED]


@pytest.mark.parametrize("volume_to_move", ["0.0001", "100", "250.5", "618.982"])
def test_roll_sale_conservation_across_volumes(db_session, desk, volume_to_move):
    sale_id = desk["sale"].id
    book_sale_coverage(db=db_session, sale_id=sale_id, futures_price=Decimal("430"), contracts=3)
    x = Decimal(volume_to_move)

    res = roll_sale(db=db_session, sale_id=sale_id, volume_to_move=x, new_reference="ZCU5")

    source = db_session.get(models.Sale, sale_id)
    child = db_session.get(models.Sale, res.child_id)
    assert source.volume + child.volume == Decimal("1000")
    assert child.volume == x
    assert source.volume >= Decimal("381.018")


def test_roll_sale_cannot_touch_covered_volume(db_session, desk):
    sale_id = desk["sale"].id
    book_sale_coverage(db=db_session, sale_id=sale_id, futures_price=Decimal("430"), contracts=3)

    # 1000 - 381.018 t uncovered
    with pytest.raises(InvalidRollVolume):
        roll_sale(
            db=db_session, sale_id=sale_id, volume_to_move=Decimal("700"), new_reference="ZCU5"
        )
    res = roll_sale(
        db=db_session, sale_id=sale_id, volume_to_move=Decimal("618.982"), new_reference="ZCU5"
    )
    assert res.source_remaining == Decimal("381.018")


def test_roll_validation_order(db_session, desk):
    sale_id = desk["sale"].id
    with pytest.raises(InvalidRollVolume):
        roll_sale(db=db_session, sale_id=sale_id, volume_to_move=Decimal("0"), new_reference="X")
    with pytest.raises(MissingReference):
        roll_sale(db=db_session, sale_id=sale_id, volume_to_move=Decimal("10"), new_reference=" ")
    with pytest.raises(SameReference):
        roll_sale(
            db=db_session, sale_id=sale_id, volume_to_move=Decimal("10"), new_reference="zcn5 "
        )
    assert db_session.get(models.Sale, sale_id).volume == Decimal("1000")


def test_flat_sale_cannot_roll(db_session, desk):
    flat = models.Sale(
        client_id=desk["seller"].id,
        vessel_id=desk["vessel"].id,
        pricing_mode=models.PricingMode.flat,
        volume=Decimal("100"),
        flat_price=Decimal("190"),
    )
    db_session.add(flat)
    db_session.commit()
    with pytest.raises(RollNotSupported):
        roll_sale(db=db_session, sale_id=flat.id, volume_to_move=Decimal("10"), new_reference="Z")


def test_roll_vessel_keeps_sold_volume_on_parent(db_session, desk):
    vessel_id = desk["vessel"].id
    # 5000 t vessel with 1000 t sold
    with pytest.raises(VolumeExceedsBalance):
        roll_vessel(
            db=db_session,
            vessel_id=vessel_id,
            volume_to_move=Decimal("4500"),
            new_reference="ZCU5",
        )

    res = roll_vessel(
        db=db_session,
        vessel_id=vessel_id,
        volume_to_move=Decimal("4000"),
        new_reference="ZCU5",
        new_premium=Decimal("12"),
    )
    assert res.source_remaining == Decimal("1000")
    child = db_session.get(models.Vessel, res.child_id)
    assert child.name == "MV Santos Star - Roll ZCU5"
    assert child.parent_vessel_id == vessel_id
    assert child.total_quantity == Decimal("4000")
    assert child.purchase_premium == Decimal("12")


def test_roll_sale_leaves_listed_uncovered_volume_on_the_sale(db_session, desk):
    sale_id = desk["sale"].id
    listing = rw.create_listing(
        db=db_session,
        seller_id=desk["seller"].id,
        sale_id=sale_id,
        position_type=PositionType.uncovered,
        volume=Decimal("800"),
        requested_price=Decimal("200"),
    )
    rw.approve_listing(db=db_session, listing_id=listing.id, admin_id=desk["admin"].id)

    with pytest.raises(InvalidRollVolume) as exc:
        roll_sale(
            db=db_session, sale_id=sale_id, volume_to_move=Decimal("900"), new_reference="ZCU5"
        )
    assert Decimal(exc.value.details["uncovered"]) == Decimal("200")
    assert db_session.get(models.Sale, sale_id).volume == Decimal("1000")

    res = roll_sale(
        db=db_session, sale_id=sale_id, volume_to_move=Decimal("200"), new_reference="ZCU5"
    )
    assert res.source_remaining == Decimal("800")

    # The whole listing can still settle against the reduced sale.
    bid = place_bid(
        db=db_session,
        listing_id=listing.id,
        bidder_id=desk["buyer"].id,
        price=Decimal("210"),
        volume=Decimal("800"),
    )
    txn = accept_bid(db=db_session, bid_id=bid.id, seller_id=desk["seller"].id)
    assert txn.volume == Decimal("800")
    assert db_session.get(models.ResaleListing, listing.id).state == ListingState.settled
