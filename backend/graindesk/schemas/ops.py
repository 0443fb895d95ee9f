from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from graindesk.models.domain import JobRunStatus


class BadgeCountsRead(BaseModel):
    pending_validation: int
    expired_validation: int
    active_bids: int


class JobRunRead(BaseModel):
    id: int
    job_name: str
    slot_key: str
    status: JobRunStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    result_json: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)
