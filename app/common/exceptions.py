"""
Errores de dominio del ledger presupuestario.

Son subclases de HTTPException: los servicios los lanzan tal cual y FastAPI
los convierte en la respuesta correspondiente sin código de mapeo en los routers.
"""
from typing import List, Optional

from fastapi import HTTPException, status


class DomainError(HTTPException):
    """Base de todos los errores de negocio"""

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Error de negocio"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(status_code=self.status_code, detail=detail or self.default_detail)


class ValidationError(DomainError):
    """Datos de entrada inválidos; se detecta antes de tocar el ledger"""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_detail = "Datos inválidos"

    def __init__(self, detail: Optional[str] = None, fields: Optional[List[str]] = None):
        self.fields = list(fields or [])
        super().__init__(detail)
        if self.fields:
            self.detail = {"message": detail or self.default_detail, "fields": self.fields}


class NotFoundError(DomainError):
    """Recurso inexistente o fuera del tenant del usuario"""

    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Recurso no encontrado"


class ConflictError(DomainError):
    """Violación de una regla de negocio (dependencias, disponibilidad, estados terminales)"""

    status_code = status.HTTP_409_CONFLICT
    default_detail = "Conflicto con el estado actual"


class ForbiddenError(DomainError):
    """Rol o tenant sin permiso para la operación"""

    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Acceso denegado"


class StorageError(DomainError):
    """Fallo de base de datos; el detalle interno nunca se expone"""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Error interno de almacenamiento"
