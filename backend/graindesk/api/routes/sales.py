from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from graindesk import models
from graindesk.api.deps import Actor, get_current_actor, require_admin
from graindesk.core.errors import Forbidden
from graindesk.database import get_db
from graindesk.schemas import (
    CoverageCreate,
    CoverageSummaryRead,
    PruRead,
    RollRead,
    RollRequest,
    SaleCoverageBooked,
    SaleCoverageRead,
    SaleCreate,
    SaleRead,
)
from graindesk.services import hedge_allocator, positions, pru_calculator

router = APIRouter(prefix="/sales", tags=["sales"])

_db_dep = Depends(get_db)
_actor_dep = Depends(get_current_actor)
_admin_dep = Depends(require_admin)


def _visible_sale(db: Session, sale_id: int, actor: Actor) -> models.Sale:
    sale = positions.get_sale(db=db, sale_id=sale_id)
    if not actor.is_admin and sale.client_id != actor.id:
        raise Forbidden("Sale belongs to another client", details={"sale_id": sale.id})
    return sale


@router.get("", response_model=List[SaleRead])
def list_sales(
    client_id: Optional[int] = Query(None),
    vessel_id: Optional[int] = Query(None),
    db: Session = _db_dep,
    actor: Actor = _actor_dep,
):
    # Clients only ever see their own book.
    if not actor.is_admin:
        client_id = actor.id
    return positions.list_sales(db=db, client_id=client_id, vessel_id=vessel_id)


@router.post("", response_model=SaleRead, status_code=status.HTTP_201_CREATED)
def create_sale(payload: SaleCreate, db: Session = _db_dep, _admin: Actor = _admin_dep):
    return positions.create_sale(db=db, **payload.model_dump())


@router.get("/{sale_id}", response_model=SaleRead)
def get_sale(sale_id: int, db: Session = _db_dep, actor: Actor = _actor_dep):
    return _visible_sale(db, sale_id, actor)


@router.get("/{sale_id}/pru", response_model=PruRead)
def get_sale_pru(sale_id: int, db: Session = _db_dep, actor: Actor = _actor_dep):
    sale = _visible_sale(db, sale_id, actor)
    result = pru_calculator.compute_pru_for_sale(db=db, sale_id=sale.id)
    return PruRead(
        sale_id=sale.id,
        pru=result.pru,
        pricing_mode=result.pricing_mode,
        blended_price=result.blended_price,
        weighted_futures_price=result.weighted_futures_price,
        hedged_volume=result.hedged_volume,
        unhedged_volume=result.unhedged_volume,
        reference_price=result.reference_price,
        conversion_factor=result.conversion_factor,
        warnings=[w.to_dict() for w in result.warnings],
    )


@router.get("/{sale_id}/coverage", response_model=CoverageSummaryRead)
def get_sale_coverage(sale_id: int, db: Session = _db_dep, actor: Actor = _actor_dep):
    sale = _visible_sale(db, sale_id, actor)
    summary = hedge_allocator.coverage_summary(db=db, sale=sale)
    return CoverageSummaryRead.model_validate(summary, from_attributes=True)


@router.get("/{sale_id}/coverages", response_model=List[SaleCoverageRead])
def list_sale_coverages(sale_id: int, db: Session = _db_dep, actor: Actor = _actor_dep):
    sale = _visible_sale(db, sale_id, actor)
    return list(sale.coverages)


@router.post(
    "/{sale_id}/coverages",
    response_model=SaleCoverageBooked,
    status_code=status.HTTP_201_CREATED,
)
def book_sale_coverage(
    sale_id: int,
    payload: CoverageCreate,
    db: Session = _db_dep,
    _admin: Actor = _admin_dep,
):
    coverage, summary = hedge_allocator.book_sale_coverage(
        db=db,
        sale_id=sale_id,
        futures_price=payload.futures_price,
        contracts=payload.contracts,
        tonnage=payload.tonnage,
        coverage_date=payload.coverage_date,
    )
    return SaleCoverageBooked(
        coverage=SaleCoverageRead.model_validate(coverage),
        summary=CoverageSummaryRead.model_validate(summary, from_attributes=True),
    )


@router.post("/{sale_id}/roll", response_model=RollRead)
def roll_sale(
    sale_id: int,
    payload: RollRequest,
    db: Session = _db_dep,
    _admin: Actor = _admin_dep,
):
    result = hedge_allocator.roll_sale(
        db=db,
        sale_id=sale_id,
        volume_to_move=payload.volume_to_move,
        new_reference=payload.new_reference,
        new_premium=payload.new_premium,
    )
    return RollRead.model_validate(result, from_attributes=True)
