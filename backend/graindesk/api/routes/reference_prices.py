from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from graindesk.api.deps import Actor, get_current_actor, require_admin
from graindesk.database import get_db
from graindesk.schemas import ReferencePriceCreate, ReferencePriceRead
from graindesk.services import market_prices
from graindesk.services.events import EventType, bus

router = APIRouter(prefix="/reference-prices", tags=["reference-prices"])

_db_dep = Depends(get_db)


@router.post(
    "", response_model=List[ReferencePriceRead], status_code=status.HTTP_201_CREATED
)
def record_reference_prices(
    payload: ReferencePriceCreate,
    db: Session = _db_dep,
    _admin: Actor = Depends(require_admin),
):
    try:
        rows = market_prices.record_prices(
            db=db, prices=payload.prices, as_of=payload.as_of, source=payload.source or "manual"
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    for row in rows:
        db.refresh(row)
    bus.publish(EventType.PRICES_REFRESHED, {"instruments": sorted(r.instrument for r in rows)})
    return rows


@router.get("", response_model=List[ReferencePriceRead])
def list_reference_prices(
    instrument: Optional[str] = Query(None),
    limit: int = Query(200, ge=1, le=1000),
    db: Session = _db_dep,
    _actor: Actor = Depends(get_current_actor),
):
    return market_prices.price_history(db=db, instrument=instrument, limit=limit)


@router.get("/latest", response_model=Dict[str, str])
def latest_reference_prices(db: Session = _db_dep, _actor: Actor = Depends(get_current_actor)):
    return {k: str(v) for k, v in market_prices.latest_prices(db=db).items()}
