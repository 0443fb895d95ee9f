from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from graindesk.api.deps import Actor, get_current_actor
from graindesk.database import get_db
from graindesk.schemas import BadgeCountsRead
from graindesk.services.events import badge_counts

router = APIRouter(prefix="/events", tags=["events"])


@router.get("/badges", response_model=BadgeCountsRead)
def badges(db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)):
    """Admins get desk-wide counters; clients get counters for their own listings."""
    return badge_counts(db=db, client_id=None if actor.is_admin else actor.id)
