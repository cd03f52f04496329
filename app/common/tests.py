"""
Tests de la infraestructura común

- Taxonomía de errores (código HTTP y detalle)
- Configuración
- Middleware de cabeceras de seguridad
- Validación del token de contexto
"""

from datetime import timedelta
from uuid import uuid4

import jwt
import pytest

from app.common.exceptions import (
    ConflictError, DomainError, ForbiddenError, NotFoundError, StorageError, ValidationError
)
from app.core.config import Settings, settings
from app.modules.auth.utils import create_context_token


class TestExceptions:

    @pytest.mark.parametrize("error_class, code", [
        (ValidationError, 422),
        (NotFoundError, 404),
        (ConflictError, 409),
        (ForbiddenError, 403),
        (StorageError, 500),
    ])
    def test_status_codes(self, error_class, code):
        error = error_class()
        assert isinstance(error, DomainError)
        assert error.status_code == code
        assert error.detail == error_class.default_detail

    def test_validation_error_lists_fields(self):
        error = ValidationError("Importe inválido", fields=["amount"])
        assert error.fields == ["amount"]
        assert error.detail == {"message": "Importe inválido", "fields": ["amount"]}

    def test_storage_error_hides_driver_message(self):
        assert StorageError().detail == "Error interno de almacenamiento"


class TestSettings:

    @pytest.mark.parametrize("raw, expected", [("true", True), ('"1"', True), ("off", False), ("no", False)])
    def test_debug_accepts_strings(self, raw, expected):
        assert Settings(DEBUG=raw).DEBUG is expected

    def test_database_url_override(self):
        assert Settings(DATABASE_URL="sqlite:///x.db").database_url == "sqlite:///x.db"

    def test_postgres_url(self):
        config = Settings(
            DATABASE_URL=None, POSTGRES_USER="u", POSTGRES_PASSWORD="p",
            POSTGRES_HOST="db", POSTGRES_PORT=5433, POSTGRES_DB="ledger"
        )
        assert config.database_url == "postgresql+psycopg2://u:p@db:5433/ledger"

    def test_thresholds(self):
        assert settings.CONTRACT_EXPIRING_DAYS == 60
        assert settings.CONTRACT_CRITICAL_DAYS == 15


class TestHTTPInfrastructure:

    def test_security_headers(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"

    def test_expired_token(self, client, tenant_id):
        token = create_context_token(
            {"sub": str(uuid4()), "tenant_id": str(tenant_id), "user_role": "user"},
            expires_delta=timedelta(minutes=-1)
        )
        response = client.get("/budget-lines/", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_token_without_context_type(self, client, tenant_id):
        token = jwt.encode(
            {"sub": str(uuid4()), "tenant_id": str(tenant_id), "user_role": "user"},
            settings.APP_SECRET_STRING, algorithm=settings.ALGORITHM
        )
        response = client.get("/budget-lines/", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_token_without_tenant(self, client):
        token = create_context_token({"sub": str(uuid4()), "user_role": "user"})
        response = client.get("/budget-lines/", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 400

    def test_unknown_role(self, client, auth_headers):
        assert client.get("/budget-lines/", headers=auth_headers("auditor")).status_code == 403
