"""
Bitácora de auditoría inmutable.

Las entradas solo se insertan; cualquier UPDATE o DELETE vía ORM
se rechaza con listeners before_update / before_delete.
"""

from app.database.database import Base
from sqlalchemy import Column, String, DateTime, JSON, event
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from uuid import uuid4
from app.common.mixins import TenantMixin
import enum


class AuditAction(enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class AuditImmutabilityError(Exception):
    """Intento de modificar o borrar una entrada de auditoría"""


class AuditLog(Base, TenantMixin):
    __tablename__ = "audit_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    action = Column(String(10), nullable=False)
    entity = Column(String(50), nullable=False, index=True)
    entity_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    changes = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)


@event.listens_for(AuditLog, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise AuditImmutabilityError(f"AuditLog {target.id} es inmutable")


@event.listens_for(AuditLog, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise AuditImmutabilityError(f"AuditLog {target.id} no puede eliminarse")
