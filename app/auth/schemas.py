from typing import Dict, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class CurrentUser(BaseModel):
    """Authenticated actor resolved from the access token. Used for RBAC and audit attribution."""

    id: UUID
    organization_id: UUID
    role: str
    name: Optional[str] = None
    permissions: Dict[str, Dict[str, bool]] = Field(default_factory=dict)
