from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel


class JobResponse(BaseModel):
    id: UUID
    organization_id: UUID
    job_type: str
    priority: int
    status: str
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    attempts: int
    actor_id: Optional[UUID] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    class Config:
        from_attributes = True
