from pydantic import BaseModel
from typing import Any, Dict, List, Optional
from uuid import UUID
from datetime import datetime


class AuditLogOut(BaseModel):
    id: UUID
    user_id: Optional[UUID]
    action: str
    entity: str
    entity_id: UUID
    changes: Optional[Dict[str, Any]]
    created_at: datetime

    class Config:
        from_attributes = True


class AuditLogList(BaseModel):
    items: List[AuditLogOut]
    total: int
    limit: int
    offset: int
