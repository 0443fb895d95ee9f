from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from graindesk.api.deps import Actor, require_admin
from graindesk.database import get_db
from graindesk.schemas import JobRunRead
from graindesk.services.scheduler import EXPIRY_SWEEP, PRICE_REFRESH, last_run

router = APIRouter(prefix="/jobs", tags=["jobs"])

_KNOWN_JOBS = {EXPIRY_SWEEP, PRICE_REFRESH}


@router.get("/{job_name}/last-run", response_model=JobRunRead)
def get_last_run(
    job_name: str, db: Session = Depends(get_db), _admin: Actor = Depends(require_admin)
):
    if job_name not in _KNOWN_JOBS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown job")
    run = last_run(db=db, job_name=job_name)
    if run is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job has not run yet")
    return run
