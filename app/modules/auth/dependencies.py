"""
Dependencias de autenticación para FastAPI.

La sesión la emite un servicio externo; aquí solo se valida el token de
contexto (JWT) y se extrae actor, organización y rol.
"""
from uuid import UUID
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt

from app.modules.auth.schemas import AuthContext, ALL_ROLES, WRITER_ROLES, UserRole
from app.modules.auth.utils import verify_token

# Security scheme
security = HTTPBearer()


class AuthDependencies:
    """Dependencias de autenticación reutilizables."""

    @staticmethod
    def get_auth_context(
        credentials: HTTPAuthorizationCredentials = Depends(security),
    ) -> AuthContext:
        """
        Obtener contexto de autenticación completo con tenant.
        Solo se aceptan tokens de contexto (type=context).
        """
        credentials_exception = HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No se pudieron validar las credenciales",
            headers={"WWW-Authenticate": "Bearer"},
        )

        try:
            payload = verify_token(credentials.credentials)
        except jwt.PyJWTError:
            raise credentials_exception

        user_id = payload.get("sub")
        if user_id is None or payload.get("type") != "context":
            raise credentials_exception

        tenant_id = payload.get("tenant_id")
        try:
            return AuthContext(
                user_id=UUID(str(user_id)),
                tenant_id=UUID(str(tenant_id)) if tenant_id else None,
                user_role=payload.get("user_role"),
            )
        except ValueError:
            raise credentials_exception

    @staticmethod
    def require_role(allowed_roles: list[str]):
        """
        Dependencia para requerir roles específicos.
        """
        def role_checker(auth_context: AuthContext = Depends(AuthDependencies.get_auth_context)):
            if not auth_context.tenant_id:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Se requiere seleccionar una organización"
                )

            if auth_context.user_role not in allowed_roles:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=f"Se requiere uno de estos roles: {', '.join(allowed_roles)}"
                )

            return auth_context
        return role_checker

    @staticmethod
    def require_admin():
        """Dependencia para requerir rol admin."""
        return AuthDependencies.require_role([UserRole.ADMIN.value])

    @staticmethod
    def require_writer():
        """Cualquier rol con derecho de escritura (todos salvo viewer)."""
        return AuthDependencies.require_role(WRITER_ROLES)

    @staticmethod
    def require_any_role():
        """Dependencia que requiere cualquier rol activo en una organización."""
        return AuthDependencies.require_role(ALL_ROLES)


get_auth_context = AuthDependencies.get_auth_context
