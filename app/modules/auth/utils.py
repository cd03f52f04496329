from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID
import jwt

from app.core.config import settings
from app.common.exceptions import ForbiddenError
from app.modules.auth.schemas import AuthContext

SECRET_KEY = settings.APP_SECRET_STRING
ALGORITHM = settings.ALGORITHM
ACCESS_TOKEN_EXPIRE_MINUTES = settings.ACCESS_TOKEN_EXPIRE_MINUTES


def create_context_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT context token with tenant information.
    Expected claims: sub (user id), tenant_id, user_role.
    """
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire, "type": "context"})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: str) -> dict:
    """Verify a JWT token and return the payload."""
    return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])


def require_writer(auth: AuthContext, message: str = "Los lectores no pueden modificar datos") -> None:
    """Los servicios vuelven a comprobar el rol para llamadas fuera de HTTP (imports, scripts)."""
    if auth.tenant_id is None:
        raise ForbiddenError("Se requiere seleccionar una organización")
    if auth.user_role is None or auth.is_viewer:
        raise ForbiddenError(message)


def require_admin(auth: AuthContext, message: str = "Solo los administradores pueden realizar esta acción") -> None:
    if auth.tenant_id is None:
        raise ForbiddenError("Se requiere seleccionar una organización")
    if not auth.is_admin:
        raise ForbiddenError(message)


def tenant_of(auth: AuthContext) -> UUID:
    if auth.tenant_id is None:
        raise ForbiddenError("Se requiere seleccionar una organización")
    return auth.tenant_id
