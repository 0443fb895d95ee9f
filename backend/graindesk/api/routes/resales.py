from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from graindesk.api.deps import Actor, get_current_actor, require_admin
from graindesk.core.errors import Forbidden
from graindesk.database import get_db
from graindesk.models.domain import BidStatus, ListingState
from graindesk.schemas import (
    AdminQueueItemRead,
    BidCreate,
    BidRead,
    ResaleListingCreate,
    ResaleListingRead,
    ResaleRejectRequest,
)
from graindesk.services import resale_workflow, settlement

router = APIRouter(prefix="/resales", tags=["resales"])

_db_dep = Depends(get_db)
_actor_dep = Depends(get_current_actor)
_admin_dep = Depends(require_admin)


@router.post("", response_model=ResaleListingRead, status_code=status.HTTP_201_CREATED)
def create_listing(payload: ResaleListingCreate, db: Session = _db_dep, actor: Actor = _actor_dep):
    return resale_workflow.create_listing(
        db=db,
        seller_id=actor.id,
        sale_id=payload.sale_id,
        position_type=payload.position_type,
        volume=payload.volume,
        requested_price=payload.requested_price,
        comment=payload.comment,
    )


@router.get("", response_model=List[ResaleListingRead])
def list_listings(
    state: Optional[ListingState] = Query(None),
    seller_id: Optional[int] = Query(None),
    db: Session = _db_dep,
    actor: Actor = _actor_dep,
):
    if not actor.is_admin:
        seller_id = actor.id
    return resale_workflow.list_listings(db=db, seller_id=seller_id, state=state)


@router.get("/market", response_model=List[ResaleListingRead])
def market(db: Session = _db_dep, actor: Actor = _actor_dep):
    return resale_workflow.market_listings(db=db, viewer_id=actor.id)


@router.get("/admin-queue", response_model=List[AdminQueueItemRead])
def admin_queue(db: Session = _db_dep, _admin: Actor = _admin_dep):
    return [
        AdminQueueItemRead(
            listing=ResaleListingRead.model_validate(item.listing),
            expired=item.expired,
            warnings=[w.to_dict() for w in item.warnings],
        )
        for item in resale_workflow.admin_queue(db=db)
    ]


@router.get("/{listing_id}", response_model=ResaleListingRead)
def get_listing(listing_id: int, db: Session = _db_dep, _actor: Actor = _actor_dep):
    return resale_workflow.get_listing(db=db, listing_id=listing_id)


@router.post("/{listing_id}/approve", response_model=ResaleListingRead)
def approve_listing(listing_id: int, db: Session = _db_dep, admin: Actor = _admin_dep):
    return resale_workflow.approve_listing(db=db, listing_id=listing_id, admin_id=admin.id)


@router.post("/{listing_id}/reject", response_model=ResaleListingRead)
def reject_listing(
    listing_id: int,
    payload: Optional[ResaleRejectRequest] = None,
    db: Session = _db_dep,
    admin: Actor = _admin_dep,
):
    reason = payload.reason if payload else None
    return resale_workflow.reject_listing(
        db=db, listing_id=listing_id, admin_id=admin.id, reason=reason
    )


@router.post("/{listing_id}/withdraw", response_model=ResaleListingRead)
def withdraw_listing(listing_id: int, db: Session = _db_dep, actor: Actor = _actor_dep):
    return resale_workflow.withdraw_listing(
        db=db, listing_id=listing_id, actor_id=actor.id, actor_is_admin=actor.is_admin
    )


@router.post(
    "/{listing_id}/bids", response_model=BidRead, status_code=status.HTTP_201_CREATED
)
def place_bid(
    listing_id: int, payload: BidCreate, db: Session = _db_dep, actor: Actor = _actor_dep
):
    return settlement.place_bid(
        db=db,
        listing_id=listing_id,
        bidder_id=actor.id,
        price=payload.price,
        volume=payload.volume,
    )


@router.get("/{listing_id}/bids", response_model=List[BidRead])
def list_bids(
    listing_id: int,
    status_filter: Optional[BidStatus] = Query(None, alias="status"),
    db: Session = _db_dep,
    actor: Actor = _actor_dep,
):
    listing = resale_workflow.get_listing(db=db, listing_id=listing_id)
    if not actor.is_admin and listing.seller_id != actor.id:
        raise Forbidden(
            "Only the seller or an admin can see bids on a listing",
            details={"listing_id": listing.id},
        )
    return settlement.list_bids(db=db, listing_id=listing.id, status=status_filter)
