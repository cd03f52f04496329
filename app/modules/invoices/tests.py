"""
Tests para el módulo de Facturas

- Facturas y avoirs (importe siempre positivo, signo por is_credit)
- Filtros de listado
- Vínculo previsional en la creación
- Importación y API
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from app.common.exceptions import ConflictError, NotFoundError
from app.modules.audit.models import AuditLog
from app.modules.budget.models import BudgetLine
from app.modules.forecast.schemas import ForecastBudgetLineCreate, ForecastExpenseCreate
from app.modules.forecast.service import ForecastService
from app.modules.invoices.schemas import InvoiceCreate, InvoiceUpdate, InvoiceStatusEnum
from app.modules.invoices.service import InvoiceService


@pytest.fixture
def forecast_expense(db_session, writer_auth):
    service = ForecastService(db_session)
    line = service.create_forecast_line(ForecastBudgetLineCreate(label="Prévision IT", year=2024), writer_auth)
    return service.create_expense(
        ForecastExpenseCreate(forecast_budget_line_id=line.id, label="Renouvellement PC", amount=Decimal("5000")),
        writer_auth
    )


class TestInvoiceSchemas:

    def test_amount_must_be_positive(self, invoice_payload):
        with pytest.raises(ValueError):
            InvoiceCreate(**invoice_payload(amount="-10"))
        with pytest.raises(ValueError):
            InvoiceCreate(**invoice_payload(amount="0"))

    def test_update_rejects_unknown_fields(self):
        with pytest.raises(ValueError):
            InvoiceUpdate(invoice_year=2030)


class TestInvoiceService:

    def test_create_sets_year_and_audits(self, db_session, writer_auth, invoice_payload):
        invoice = InvoiceService(db_session).create_invoice(
            InvoiceCreate(**invoice_payload(invoice_date=date(2025, 2, 3))), writer_auth
        )

        assert invoice.invoice_year == 2025
        assert invoice.tenant_id == writer_auth.tenant_id
        entry = db_session.query(AuditLog).filter(AuditLog.entity_id == invoice.id).one()
        assert entry.action == "CREATE"
        assert entry.changes["after"]["number"] == invoice.number

    def test_unknown_contract(self, db_session, writer_auth, invoice_payload):
        with pytest.raises(NotFoundError):
            InvoiceService(db_session).create_invoice(
                InvoiceCreate(**invoice_payload(contract_id=uuid4())), writer_auth
            )

    def test_list_filters(self, db_session, writer_auth, budget_line, invoice_payload, tenant_id):
        service = InvoiceService(db_session)
        service.create_invoice(InvoiceCreate(**invoice_payload(budget_line.id, vendor="Acme")), writer_auth)
        service.create_invoice(InvoiceCreate(**invoice_payload(
            None, vendor="Globex", is_credit=True, invoice_date=date(2023, 11, 2),
            status=InvoiceStatusEnum.LATE
        )), writer_auth)

        assert service.get_invoices(tenant_id).total == 2
        assert service.get_invoices(tenant_id, year=2023).items[0].vendor == "Globex"
        assert service.get_invoices(tenant_id, is_credit=True).total == 1
        assert service.get_invoices(tenant_id, budget_line_id=budget_line.id).total == 1
        assert service.get_invoices(tenant_id, status=InvoiceStatusEnum.LATE.value).total == 1
        assert service.get_invoices(tenant_id, search="glob").total == 1
        assert service.get_invoices(tenant_id, without_contract=True).total == 2
        assert service.get_invoices(tenant_id, unpointed_only=True).total == 2

    def test_create_with_forecast_link(self, db_session, writer_auth, invoice_payload, forecast_expense, tenant_id):
        service = InvoiceService(db_session)
        invoice = service.create_invoice(
            InvoiceCreate(**invoice_payload(linked_forecast_expense_id=forecast_expense.id)), writer_auth
        )
        assert invoice.linked_forecast_expense_id == forecast_expense.id
        assert service.get_invoices(tenant_id, unlinked_only=True).total == 0

        with pytest.raises(ConflictError):
            service.create_invoice(
                InvoiceCreate(**invoice_payload(linked_forecast_expense_id=forecast_expense.id)), writer_auth
            )
        # La segunda factura se revirtió por completo
        assert service.get_invoices(tenant_id).total == 1

    def test_failed_link_rolls_back_ledger(self, db_session, writer_auth, budget_line, invoice_payload):
        with pytest.raises(NotFoundError):
            InvoiceService(db_session).create_invoice(
                InvoiceCreate(**invoice_payload(budget_line.id, linked_forecast_expense_id=uuid4())), writer_auth
            )
        db_session.expire_all()
        assert db_session.get(BudgetLine, budget_line.id).invoiced == 0

    def test_import_collects_row_errors(self, db_session, writer_auth, budget_line, invoice_payload):
        rows = [
            InvoiceCreate(**invoice_payload(budget_line.id, amount="100")),
            InvoiceCreate(**invoice_payload(uuid4(), amount="100")),
            InvoiceCreate(**invoice_payload(budget_line.id, amount="25", is_credit=True)),
        ]
        result = InvoiceService(db_session).import_invoices(rows, writer_auth)

        assert len(result.created) == 2
        assert result.errors[0].row == 1
        db_session.expire_all()
        assert db_session.get(BudgetLine, budget_line.id).invoiced == Decimal("75")


class TestInvoiceAPI:

    def test_credit_note_flow(self, client, auth_headers):
        writer = auth_headers("user")
        line_id = client.post("/budget-lines/", json={"label": "Énergie", "budget": "1000"}, headers=writer).json()["id"]

        base = {"vendor": "EDF", "invoice_date": "2024-04-01", "budget_line_id": line_id}
        assert client.post("/invoices/", json={**base, "number": "F-1", "amount": "500"}, headers=writer).status_code == 201
        response = client.post("/invoices/", json={**base, "number": "AV-1", "amount": "100", "is_credit": True}, headers=writer)
        assert response.status_code == 201
        assert Decimal(response.json()["signed_amount"]) == Decimal("-100")

        line = client.get(f"/budget-lines/{line_id}", headers=writer).json()
        assert Decimal(line["invoiced"]) == Decimal("400")
        assert Decimal(line["remaining"]) == Decimal("600")

        credit_id = response.json()["id"]
        assert client.delete(f"/invoices/{credit_id}", headers=writer).status_code == 204
        line = client.get(f"/budget-lines/{line_id}", headers=writer).json()
        assert Decimal(line["invoiced"]) == Decimal("500")

    def test_negative_amount_rejected(self, client, auth_headers):
        response = client.post("/invoices/", json={
            "number": "F-NEG", "vendor": "EDF", "amount": "-5", "invoice_date": "2024-04-01"
        }, headers=auth_headers("user"))
        assert response.status_code == 422

    def test_unknown_line_returns_404(self, client, auth_headers):
        response = client.post("/invoices/", json={
            "number": "F-X", "vendor": "EDF", "amount": "5", "invoice_date": "2024-04-01",
            "budget_line_id": str(uuid4())
        }, headers=auth_headers("user"))
        assert response.status_code == 404

    def test_list_by_status(self, client, auth_headers):
        writer = auth_headers("user")
        client.post("/invoices/", json={
            "number": "F-L", "vendor": "EDF", "amount": "5", "invoice_date": "2024-04-01", "status": "Retard"
        }, headers=writer)

        response = client.get("/invoices/", params={"status": "Retard"}, headers=writer)
        assert response.json()["total"] == 1
        response = client.get("/invoices/", params={"status": "Payée"}, headers=writer)
        assert response.json()["total"] == 0
