from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.audit.schemas import AuditLogList
from app.modules.audit.service import AuditLogService

router = APIRouter(prefix="/audit-logs", tags=["Audit"])


@router.get("/", response_model=AuditLogList)
async def list_audit_logs(
    entity: Optional[str] = Query(None, description="Tipo de entidad (Contract, Invoice, ...)"),
    entity_id: Optional[UUID] = Query(None),
    user_id: Optional[UUID] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role())
):
    """Bitácora de auditoría de la organización, más reciente primero"""
    return AuditLogService(db).get_audit_logs(
        tenant_id=auth_context.tenant_id,
        entity=entity,
        entity_id=entity_id,
        user_id=user_id,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset
    )
