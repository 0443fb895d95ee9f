from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from graindesk.api.deps import Actor, get_current_actor
from graindesk.database import get_db
from graindesk.schemas import BidAcceptRequest, BidRead, TransactionRead
from graindesk.services import settlement

router = APIRouter(prefix="/bids", tags=["bids"])

_db_dep = Depends(get_db)
_actor_dep = Depends(get_current_actor)


@router.post("/{bid_id}/accept", response_model=TransactionRead)
def accept_bid(
    bid_id: int,
    payload: Optional[BidAcceptRequest] = None,
    db: Session = _db_dep,
    actor: Actor = _actor_dep,
):
    """Seller (or an admin) accepts a bid. Settles atomically or fails with 409.

    Only an admin may set the commission; a seller always gets the desk default.
    """
    commission = payload.commission if payload and actor.is_admin else None
    return settlement.accept_bid(
        db=db,
        bid_id=bid_id,
        commission=commission,
        seller_id=None if actor.is_admin else actor.id,
    )


@router.post("/{bid_id}/reject", response_model=BidRead)
def reject_bid(bid_id: int, db: Session = _db_dep, actor: Actor = _actor_dep):
    return settlement.reject_bid(
        db=db, bid_id=bid_id, actor_id=actor.id, actor_is_admin=actor.is_admin
    )
