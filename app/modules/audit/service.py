"""
Servicio de auditoría

AuditRecorder añade la entrada a la sesión del llamador: se confirma (o se
revierte) en la misma transacción que la escritura de negocio y el ledger.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, Optional
from uuid import UUID
import logging

from fastapi.encoders import jsonable_encoder
from sqlalchemy.orm import Session

from app.modules.audit.models import AuditLog, AuditAction
from app.modules.audit.schemas import AuditLogList

logger = logging.getLogger(__name__)


def snapshot(instance, fields: Iterable[str]) -> Dict[str, Any]:
    """Copia serializable de los campos indicados de un modelo"""
    return jsonable_encoder({field: getattr(instance, field) for field in fields})


def diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Solo los campos que cambiaron, como {campo: {before, after}}"""
    changes = {}
    for key in sorted(set(before) | set(after)):
        old, new = before.get(key), after.get(key)
        if old != new:
            changes[key] = {"before": old, "after": new}
    return changes


class AuditRecorder:
    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        actor_id: Optional[UUID],
        action: AuditAction,
        entity_type: str,
        entity_id: UUID,
        changes: Optional[Dict[str, Any]],
        tenant_id: UUID
    ) -> None:
        entry = AuditLog(
            user_id=actor_id,
            action=action.value,
            entity=entity_type,
            entity_id=entity_id,
            changes=jsonable_encoder(changes) if changes is not None else None,
            tenant_id=tenant_id
        )
        self.db.add(entry)
        logger.debug(f"Audit {action.value} {entity_type} {entity_id} by {actor_id}")


class AuditLogService:
    """Lectura de la bitácora (solo consulta)"""

    def __init__(self, db: Session):
        self.db = db

    def get_audit_logs(
        self,
        tenant_id: UUID,
        entity: Optional[str] = None,
        entity_id: Optional[UUID] = None,
        user_id: Optional[UUID] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0
    ) -> AuditLogList:
        query = self.db.query(AuditLog).filter(AuditLog.tenant_id == tenant_id)

        if entity:
            query = query.filter(AuditLog.entity == entity)
        if entity_id:
            query = query.filter(AuditLog.entity_id == entity_id)
        if user_id:
            query = query.filter(AuditLog.user_id == user_id)
        if date_from:
            query = query.filter(AuditLog.created_at >= date_from)
        if date_to:
            query = query.filter(AuditLog.created_at <= date_to)

        total = query.count()
        logs = query.order_by(AuditLog.created_at.desc()).offset(offset).limit(limit).all()

        return AuditLogList(items=logs, total=total, limit=limit, offset=offset)
