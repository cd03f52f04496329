"""
Tests para el módulo de Presupuesto

- CRUD de líneas con aislamiento por tenant
- engaged / invoiced no se pueden escribir desde la API
- Presupuesto anual y referenciales
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from app.common.exceptions import ConflictError, ForbiddenError, NotFoundError
from app.modules.audit.models import AuditLog
from app.modules.budget.models import BudgetLine, YearlyBudget
from app.modules.budget.schemas import BudgetLineUpdate, BudgetTypeCreate, BudgetDomainCreate
from app.modules.budget.service import BudgetLineService, BudgetReferenceService
from app.modules.contracts.schemas import ContractCreate
from app.modules.contracts.service import ContractService


class TestBudgetLineService:

    def test_create_starts_with_zero_aggregates(self, db_session, make_line, writer_auth):
        line = make_line("Formation", budget=Decimal("5000"), years=(2024, 2025))

        assert line.engaged == 0
        assert line.invoiced == 0
        assert line.remaining == Decimal("5000")
        assert [yb.year for yb in line.yearly_budgets] == [2024, 2025]

        entry = db_session.query(AuditLog).filter(AuditLog.entity_id == line.id).one()
        assert entry.action == "CREATE"
        assert entry.user_id == writer_auth.user_id

    def test_update_records_only_changed_fields(self, db_session, budget_line, writer_auth):
        BudgetLineService(db_session).update_budget_line(
            budget_line.id, BudgetLineUpdate(label="Licences SaaS", budget=Decimal("10000")), writer_auth
        )

        entry = db_session.query(AuditLog).filter(
            AuditLog.entity_id == budget_line.id, AuditLog.action == "UPDATE"
        ).one()
        assert set(entry.changes) == {"label"}

    def test_update_cannot_write_aggregates(self):
        with pytest.raises(ValueError):
            BudgetLineUpdate(engaged=Decimal("1"))

    def test_tenant_isolation(self, db_session, budget_line, other_tenant_id):
        service = BudgetLineService(db_session)
        with pytest.raises(NotFoundError):
            service.get_budget_line_by_id(budget_line.id, other_tenant_id)
        assert service.get_budget_lines(other_tenant_id).total == 0

    def test_list_filters(self, db_session, make_line, tenant_id):
        make_line("Serveurs", years=(2024,))
        make_line("Réseau", years=(2025,))

        service = BudgetLineService(db_session)
        assert [l.label for l in service.get_budget_lines(tenant_id, year=2025).items] == ["Réseau"]
        assert [l.label for l in service.get_budget_lines(tenant_id, search="serv").items] == ["Serveurs"]
        assert service.get_budget_lines(tenant_id, limit=1).total == 2

    def test_delete_requires_admin(self, db_session, budget_line, writer_auth):
        with pytest.raises(ForbiddenError):
            BudgetLineService(db_session).delete_budget_line(budget_line.id, writer_auth)

    def test_delete_blocked_with_contracts(self, db_session, budget_line, admin_auth, writer_auth, contract_payload):
        ContractService(db_session).create_contract(ContractCreate(**contract_payload(budget_line.id)), writer_auth)

        with pytest.raises(ConflictError):
            BudgetLineService(db_session).delete_budget_line(budget_line.id, admin_auth)
        assert db_session.query(BudgetLine).filter(BudgetLine.id == budget_line.id).count() == 1

    def test_delete_removes_yearly_rows(self, db_session, budget_line, admin_auth):
        line_id = budget_line.id
        BudgetLineService(db_session).delete_budget_line(line_id, admin_auth)

        assert db_session.query(BudgetLine).filter(BudgetLine.id == line_id).count() == 0
        assert db_session.query(YearlyBudget).filter(YearlyBudget.budget_line_id == line_id).count() == 0

    def test_upsert_yearly_budget_keeps_aggregates(self, db_session, budget_line, writer_auth, contract_payload):
        ContractService(db_session).create_contract(
            ContractCreate(**contract_payload(budget_line.id, amount="800")), writer_auth
        )
        service = BudgetLineService(db_session)

        updated = service.upsert_yearly_budget(budget_line.id, 2024, Decimal("12000"), writer_auth)
        assert updated.budget == Decimal("12000")
        assert updated.engaged == Decimal("800")

        created = service.upsert_yearly_budget(budget_line.id, 2026, Decimal("3000"), writer_auth)
        assert (created.year, created.engaged, created.invoiced) == (2026, 0, 0)


class TestBudgetReferenceService:

    def test_types_are_unique_per_tenant(self, db_session, writer_auth, make_auth, other_tenant_id):
        service = BudgetReferenceService(db_session)
        service.create_type(BudgetTypeCreate(name="Informatique"), writer_auth)

        with pytest.raises(ConflictError):
            service.create_type(BudgetTypeCreate(name="Informatique"), writer_auth)

        # Otro tenant puede reutilizar el nombre
        service.create_type(BudgetTypeCreate(name="Informatique"), make_auth(tenant=other_tenant_id))

    def test_domain_requires_known_type(self, db_session, writer_auth):
        with pytest.raises(NotFoundError):
            BudgetReferenceService(db_session).create_domain(
                BudgetDomainCreate(name="Cloud", type_id=uuid4()), writer_auth
            )

    def test_domains_by_type(self, db_session, writer_auth, tenant_id):
        service = BudgetReferenceService(db_session)
        budget_type = service.create_type(BudgetTypeCreate(name="Informatique"), writer_auth)
        service.create_domain(BudgetDomainCreate(name="Cloud", type_id=budget_type.id), writer_auth)
        service.create_domain(BudgetDomainCreate(name="Divers"), writer_auth)

        assert [d.name for d in service.get_domains(tenant_id, budget_type.id)] == ["Cloud"]
        assert len(service.get_domains(tenant_id)) == 2


class TestBudgetAPI:

    def test_crud_flow(self, client, auth_headers):
        writer = auth_headers("user")
        response = client.post(
            "/budget-lines/",
            json={"label": "Téléphonie", "nature": "Investissement", "budget": "2500",
                  "yearly_budgets": [{"year": 2024, "budget": "2500"}]},
            headers=writer
        )
        assert response.status_code == 201
        body = response.json()
        assert Decimal(body["engaged"]) == 0
        assert body["yearly_budgets"][0]["year"] == 2024

        line_id = body["id"]
        response = client.put(f"/budget-lines/{line_id}", json={"label": "Téléphonie mobile"}, headers=writer)
        assert response.status_code == 200
        assert response.json()["label"] == "Téléphonie mobile"

        response = client.put(f"/budget-lines/{line_id}/yearly-budgets/2025", json={"budget": "900"}, headers=writer)
        assert response.status_code == 200
        assert response.json()["year"] == 2025

        assert client.delete(f"/budget-lines/{line_id}", headers=writer).status_code == 403
        assert client.delete(f"/budget-lines/{line_id}", headers=auth_headers("admin")).status_code == 204
        assert client.get(f"/budget-lines/{line_id}", headers=writer).status_code == 404

    def test_aggregates_are_read_only(self, client, auth_headers):
        writer = auth_headers("user")
        line_id = client.post("/budget-lines/", json={"label": "Impressions"}, headers=writer).json()["id"]

        response = client.put(f"/budget-lines/{line_id}", json={"engaged": "5000"}, headers=writer)
        assert response.status_code == 422

    def test_duplicate_years_rejected(self, client, auth_headers):
        response = client.post(
            "/budget-lines/",
            json={"label": "Double", "yearly_budgets": [{"year": 2024}, {"year": 2024}]},
            headers=auth_headers("user")
        )
        assert response.status_code == 422

    def test_viewer_is_read_only(self, client, auth_headers):
        viewer = auth_headers("viewer")
        assert client.get("/budget-lines/", headers=viewer).status_code == 200
        assert client.post("/budget-lines/", json={"label": "X"}, headers=viewer).status_code == 403

    def test_missing_token(self, client):
        assert client.get("/budget-lines/").status_code in (401, 403)
