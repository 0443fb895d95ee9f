from datetime import datetime, timezone
from decimal import Decimal

from graindesk.models.domain import PositionType
from graindesk.services import resale_workflow as rw
from graindesk.services.events import EventBus, EventType, badge_counts
from graindesk.services.settlement import place_bid


def test_subscribers_filter_by_type_and_can_unsubscribe():
    local = EventBus()
    approved, everything = [], []
    stop = local.subscribe(approved.append, EventType.LISTING_APPROVED)
    local.subscribe(everything.append)

    local.publish(EventType.LISTING_APPROVED, {"listing_id": 1})
    local.publish(EventType.BID_PLACED, {"bid_id": 2})
    stop()
    local.publish(EventType.LISTING_APPROVED, {"listing_id": 3})

    assert [e.payload["listing_id"] for e in approved] == [1]
    assert [e.type for e in everything] == [
        EventType.LISTING_APPROVED,
        EventType.BID_PLACED,
        EventType.LISTING_APPROVED,
    ]


def test_failing_subscriber_does_not_block_others():
    local = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    local.subscribe(broken)
    local.subscribe(seen.append)
    event = local.publish(EventType.PRICES_REFRESHED, {"instruments": ["ZCN5"]})

    assert seen == [event]
    assert event.occurred_at.tzinfo is not None


def test_payload_is_copied_at_publish_time():
    local = EventBus()
    payload = {"listing_id": 7}
    event = local.publish(EventType.LISTING_CREATED, payload)
    payload["listing_id"] = 8
    assert event.payload == {"listing_id": 7}


def test_badge_counts_admin_and_client_views(db_session, desk):
    listing = rw.create_listing(
        db=db_session,
        seller_id=desk["seller"].id,
        sale_id=desk["sale"].id,
        position_type=PositionType.uncovered,
        volume=Decimal("200"),
        requested_price=Decimal("190"),
        now=datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc),
    )
    rw.create_listing(
        db=db_session,
        seller_id=desk["seller"].id,
        sale_id=desk["sale"].id,
        position_type=PositionType.uncovered,
        volume=Decimal("100"),
        requested_price=Decimal("190"),
        now=datetime(2025, 3, 3, 9, 20, tzinfo=timezone.utc),
    )
    rw.approve_listing(db=db_session, listing_id=listing.id, admin_id=desk["admin"].id)
    place_bid(
        db=db_session,
        listing_id=listing.id,
        bidder_id=desk["buyer"].id,
        price=Decimal("195"),
        volume=Decimal("50"),
    )

    # 09:55: the second listing's window closed at 09:50
    now = datetime(2025, 3, 3, 9, 55, tzinfo=timezone.utc)
    assert badge_counts(db=db_session, now=now) == {
        "pending_validation": 1,
        "expired_validation": 1,
        "active_bids": 1,
    }
    assert badge_counts(db=db_session, client_id=desk["seller"].id, now=now)["active_bids"] == 1
    assert badge_counts(db=db_session, client_id=desk["buyer"].id, now=now) == {
        "pending_validation": 0,
        "expired_validation": 0,
        "active_bids": 0,
    }
