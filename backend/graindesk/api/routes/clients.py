from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from graindesk.api.deps import Actor, require_admin
from graindesk.database import get_db
from graindesk.schemas import ClientCreate, ClientRead
from graindesk.services import positions

router = APIRouter(prefix="/clients", tags=["clients"])

_db_dep = Depends(get_db)
_admin_dep = Depends(require_admin)


@router.get("", response_model=List[ClientRead])
def list_clients(db: Session = _db_dep, _admin: Actor = _admin_dep):
    return positions.list_clients(db=db)


@router.post("", response_model=ClientRead, status_code=status.HTTP_201_CREATED)
def create_client(payload: ClientCreate, db: Session = _db_dep, _admin: Actor = _admin_dep):
    return positions.create_client(
        db=db,
        name=payload.name,
        email=payload.email,
        role=payload.role,
        visible_on_market=payload.visible_on_market,
    )


@router.get("/{client_id}", response_model=ClientRead)
def get_client(client_id: int, db: Session = _db_dep, _admin: Actor = _admin_dep):
    return positions.get_client(db=db, client_id=client_id)
