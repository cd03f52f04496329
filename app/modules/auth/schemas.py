from pydantic import BaseModel
from typing import Optional
from uuid import UUID
from enum import Enum


class UserRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    USER = "user"
    VIEWER = "viewer"


WRITER_ROLES = [UserRole.ADMIN.value, UserRole.MANAGER.value, UserRole.USER.value]
ALL_ROLES = WRITER_ROLES + [UserRole.VIEWER.value]


class AuthContext(BaseModel):
    """Contexto de la petición: actor, organización (tenant) y rol"""
    user_id: UUID
    tenant_id: Optional[UUID] = None
    user_role: Optional[str] = None

    @property
    def is_viewer(self) -> bool:
        return self.user_role == UserRole.VIEWER.value

    @property
    def is_admin(self) -> bool:
        return self.user_role == UserRole.ADMIN.value
