"""Request and response schemas of the control API."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from ..models import UpdatePolicy
from ..rollback import RollbackReason, RollbackStatus


class WorkloadSpecRequest(BaseModel):
    """Desired state submitted by an operator."""

    replicas: int = Field(default=1, ge=0)
    template: dict[str, Any] = Field(..., description="Opaque workload template payload")
    template_hash: Optional[str] = Field(
        default=None, description="Content hash; computed from the payload when omitted"
    )
    policy: UpdatePolicy = Field(default_factory=UpdatePolicy)
    manager: str = Field(default="operator", min_length=1)
    force: bool = False


class RollbackRequest(BaseModel):
    """Rollback target."""

    revision: str = Field(default="previous", description='"previous", a revision id or sequence')


class RollbackResponse(BaseModel):
    """Rollback record."""

    id: UUID
    workload: str
    from_revision: Optional[str]
    to_revision: str
    to_sequence: int
    reason: RollbackReason
    status: RollbackStatus
    requested_at: datetime
    completed_at: Optional[datetime] = None
    message: str = ""


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    timestamp: datetime
