"""
Fixtures compartidas de pytest

Cada test usa su propia base SQLite en fichero (tmp_path). Las transacciones
se abren con BEGIN IMMEDIATE: dos sesiones que escriben a la vez se serializan
igual que con los bloqueos de fila de PostgreSQL.
"""

import os

os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from app.database.database import Base, get_db
from app.main import app
from app.modules.auth.schemas import AuthContext, UserRole
from app.modules.auth.utils import create_context_token
from app.modules.budget.schemas import BudgetLineCreate, YearlyBudgetIn
from app.modules.budget.service import BudgetLineService


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30}
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # pysqlite no emite BEGIN por su cuenta; lo hace el listener "begin"
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# ===== CONTEXTO DE AUTENTICACIÓN =====

@pytest.fixture
def tenant_id():
    return uuid4()


@pytest.fixture
def other_tenant_id():
    return uuid4()


@pytest.fixture
def make_auth(tenant_id):
    def _make(role: str = UserRole.USER.value, tenant=None) -> AuthContext:
        return AuthContext(user_id=uuid4(), tenant_id=tenant or tenant_id, user_role=role)
    return _make


@pytest.fixture
def writer_auth(make_auth):
    return make_auth(UserRole.USER.value)


@pytest.fixture
def admin_auth(make_auth):
    return make_auth(UserRole.ADMIN.value)


@pytest.fixture
def viewer_auth(make_auth):
    return make_auth(UserRole.VIEWER.value)


# ===== DATOS =====

@pytest.fixture
def make_line(db_session, writer_auth):
    """Crea líneas presupuestarias vía servicio (agregados a cero)"""
    def _make(label: str = "Licences logicielles", budget: Decimal = Decimal("10000"), years=(2024,), auth=None):
        data = BudgetLineCreate(
            label=label,
            budget=budget,
            yearly_budgets=[YearlyBudgetIn(year=year, budget=budget) for year in years]
        )
        return BudgetLineService(db_session).create_budget_line(data, auth or writer_auth)
    return _make


@pytest.fixture
def budget_line(make_line):
    return make_line()


@pytest.fixture
def contract_payload():
    def _payload(budget_line_id=None, amount="1000", **overrides):
        payload = {
            "number": f"CTR-{uuid4().hex[:8]}",
            "label": "Maintenance serveurs",
            "vendor": "Acme SAS",
            "start_date": date(2024, 1, 1),
            "end_date": date(2024, 12, 31),
            "amount": Decimal(amount),
            "budget_line_id": budget_line_id,
        }
        payload.update(overrides)
        return payload
    return _payload


@pytest.fixture
def invoice_payload():
    def _payload(budget_line_id=None, amount="300", is_credit=False, **overrides):
        payload = {
            "number": f"FAC-{uuid4().hex[:8]}",
            "vendor": "Acme SAS",
            "amount": Decimal(amount),
            "is_credit": is_credit,
            "invoice_date": date(2024, 3, 15),
            "budget_line_id": budget_line_id,
        }
        payload.update(overrides)
        return payload
    return _payload


# ===== API =====

@pytest.fixture
def client(session_factory):
    """TestClient con una sesión nueva por petición"""
    def _get_test_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_test_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(tenant_id):
    def _headers(role: str = UserRole.USER.value, tenant=None, user_id=None):
        token = create_context_token({
            "sub": str(user_id or uuid4()),
            "tenant_id": str(tenant or tenant_id),
            "user_role": role,
        })
        return {"Authorization": f"Bearer {token}"}
    return _headers
