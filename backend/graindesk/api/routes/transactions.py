from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from graindesk.api.deps import Actor, get_current_actor, require_admin
from graindesk.database import get_db
from graindesk.schemas import TransactionRead
from graindesk.services import settlement

router = APIRouter(prefix="/transactions", tags=["transactions"])

_db_dep = Depends(get_db)


@router.get("", response_model=List[TransactionRead])
def list_transactions(db: Session = _db_dep, actor: Actor = Depends(get_current_actor)):
    client_id = None if actor.is_admin else actor.id
    return settlement.list_transactions(db=db, client_id=client_id)


@router.post("/{transaction_id}/mark-pnl-paid", response_model=TransactionRead)
def mark_pnl_paid(
    transaction_id: int, db: Session = _db_dep, _admin: Actor = Depends(require_admin)
):
    return settlement.mark_pnl_paid(db=db, transaction_id=transaction_id)
