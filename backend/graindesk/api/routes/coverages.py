from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from graindesk.api.deps import Actor, require_admin
from graindesk.database import get_db
from graindesk.schemas import SaleCoverageRead
from graindesk.services import positions

router = APIRouter(prefix="/coverages", tags=["coverages"])


@router.get("/orphaned", response_model=List[SaleCoverageRead])
def list_orphaned_coverages(
    vessel_id: Optional[int] = Query(None, description="Restrict to one vessel."),
    db: Session = Depends(get_db),
    _admin: Actor = Depends(require_admin),
):
    """Hedges left without a sale after resales shrank their originating sale."""
    return positions.orphaned_coverages(db=db, vessel_id=vessel_id)
