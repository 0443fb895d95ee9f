from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from graindesk.api.deps import Actor, get_current_actor
from graindesk.database import get_db
from graindesk.schemas import PortfolioPnlRead, VesselClientsPnlRead, VesselPnlRead
from graindesk.services import pnl_aggregator

router = APIRouter(prefix="/pnl", tags=["pnl"])

_db_dep = Depends(get_db)
_actor_dep = Depends(get_current_actor)


def _scope(actor: Actor, client_id: Optional[int]) -> Optional[int]:
    # Admins may filter by client; clients are pinned to their own sales.
    return client_id if actor.is_admin else actor.id


@router.get("/portfolio", response_model=PortfolioPnlRead)
def portfolio(
    client_id: Optional[int] = Query(None),
    db: Session = _db_dep,
    actor: Actor = _actor_dep,
):
    res = pnl_aggregator.portfolio_pnl(db=db, client_id=_scope(actor, client_id))
    return PortfolioPnlRead.model_validate(res, from_attributes=True)


@router.get("/vessels", response_model=List[VesselPnlRead])
def vessels(
    client_id: Optional[int] = Query(None),
    db: Session = _db_dep,
    actor: Actor = _actor_dep,
):
    res = pnl_aggregator.portfolio_pnl(db=db, client_id=_scope(actor, client_id))
    return [VesselPnlRead.model_validate(v, from_attributes=True) for v in res.vessels]


@router.get("/vessels/{vessel_id}", response_model=VesselPnlRead)
def vessel(
    vessel_id: int,
    client_id: Optional[int] = Query(None),
    db: Session = _db_dep,
    actor: Actor = _actor_dep,
):
    res = pnl_aggregator.vessel_pnl(
        db=db, vessel_id=vessel_id, client_id=_scope(actor, client_id)
    )
    return VesselPnlRead.model_validate(res, from_attributes=True)


@router.get("/clients", response_model=List[VesselClientsPnlRead])
def by_client(
    client_id: Optional[int] = Query(None),
    db: Session = _db_dep,
    actor: Actor = _actor_dep,
):
    rows = pnl_aggregator.pnl_by_client(db=db, client_id=_scope(actor, client_id))
    return [VesselClientsPnlRead.model_validate(r, from_attributes=True) for r in rows]
