from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from graindesk.api.deps import Actor, get_current_actor, require_admin
from graindesk.database import get_db
from graindesk.schemas import (
    CoverageCreate,
    CoverageSummaryRead,
    PurchaseCoverageBooked,
    PurchaseCoverageRead,
    RollRead,
    RollRequest,
    VesselCreate,
    VesselRead,
)
from graindesk.services import hedge_allocator, positions

router = APIRouter(prefix="/vessels", tags=["vessels"])

_db_dep = Depends(get_db)
_actor_dep = Depends(get_current_actor)
_admin_dep = Depends(require_admin)


@router.get("", response_model=List[VesselRead])
def list_vessels(db: Session = _db_dep, _actor: Actor = _actor_dep):
    return positions.list_vessels(db=db)


@router.post("", response_model=VesselRead, status_code=status.HTTP_201_CREATED)
def create_vessel(payload: VesselCreate, db: Session = _db_dep, _admin: Actor = _admin_dep):
    return positions.create_vessel(db=db, **payload.model_dump())


@router.get("/{vessel_id}", response_model=VesselRead)
def get_vessel(vessel_id: int, db: Session = _db_dep, _actor: Actor = _actor_dep):
    return positions.get_vessel(db=db, vessel_id=vessel_id)


@router.get("/{vessel_id}/coverage", response_model=CoverageSummaryRead)
def vessel_coverage(vessel_id: int, db: Session = _db_dep, _admin: Actor = _admin_dep):
    vessel = positions.get_vessel(db=db, vessel_id=vessel_id)
    summary = hedge_allocator.vessel_coverage_summary(db=db, vessel=vessel)
    return CoverageSummaryRead.model_validate(summary, from_attributes=True)


@router.post(
    "/{vessel_id}/purchase-coverages",
    response_model=PurchaseCoverageBooked,
    status_code=status.HTTP_201_CREATED,
)
def book_purchase_coverage(
    vessel_id: int,
    payload: CoverageCreate,
    db: Session = _db_dep,
    _admin: Actor = _admin_dep,
):
    coverage, summary = hedge_allocator.book_purchase_coverage(
        db=db,
        vessel_id=vessel_id,
        futures_price=payload.futures_price,
        contracts=payload.contracts,
        tonnage=payload.tonnage,
        coverage_date=payload.coverage_date,
    )
    return PurchaseCoverageBooked(
        coverage=PurchaseCoverageRead.model_validate(coverage),
        summary=CoverageSummaryRead.model_validate(summary, from_attributes=True),
    )


@router.post("/{vessel_id}/roll", response_model=RollRead)
def roll_vessel(
    vessel_id: int,
    payload: RollRequest,
    db: Session = _db_dep,
    _admin: Actor = _admin_dep,
):
    result = hedge_allocator.roll_vessel(
        db=db,
        vessel_id=vessel_id,
        volume_to_move=payload.volume_to_move,
        new_reference=payload.new_reference,
        new_premium=payload.new_premium,
    )
    return RollRead.model_validate(result, from_attributes=True)
