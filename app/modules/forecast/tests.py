"""
Tests del presupuesto previsional y del vínculo PIVOT

- Disponibilidad de gastos previstos (exclusión del documento en edición)
- Vincular / desvincular (idempotente, sin efecto sobre el ledger)
- Previsto vs realizado
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from app.common.exceptions import ConflictError, NotFoundError, ValidationError
from app.modules.audit.models import AuditLog
from app.modules.budget.models import BudgetLine
from app.modules.forecast.schemas import ForecastBudgetLineCreate, ForecastExpenseCreate, ForecastExpenseUpdate
from app.modules.forecast.service import ForecastLinker, ForecastService, LinkedDocument, compute_variance
from app.modules.invoices.models import Invoice
from app.modules.invoices.schemas import InvoiceCreate
from app.modules.invoices.service import InvoiceService
from app.modules.purchase_orders.models import PurchaseOrder
from app.modules.purchase_orders.schemas import PurchaseOrderCreate
from app.modules.purchase_orders.service import PurchaseOrderService


@pytest.fixture
def forecast_line(db_session, writer_auth):
    return ForecastService(db_session).create_forecast_line(
        ForecastBudgetLineCreate(label="Prévision infrastructure", year=2024, budget=Decimal("20000")), writer_auth
    )


@pytest.fixture
def make_expense(db_session, writer_auth, forecast_line):
    def _make(label="Serveurs", amount="5000", year=None):
        return ForecastService(db_session).create_expense(
            ForecastExpenseCreate(
                forecast_budget_line_id=forecast_line.id, label=label, amount=Decimal(amount), year=year
            ),
            writer_auth
        )
    return _make


@pytest.fixture
def make_invoice(db_session, writer_auth, invoice_payload):
    def _make(**overrides):
        return InvoiceService(db_session).create_invoice(InvoiceCreate(**invoice_payload(**overrides)), writer_auth)
    return _make


class TestComputeVariance:

    def test_over_plan(self):
        assert compute_variance(Decimal("5000"), Decimal("5600")) == (Decimal("600.00"), Decimal("12.00"))

    def test_under_plan(self):
        assert compute_variance(Decimal("300"), Decimal("200")) == (Decimal("-100.00"), Decimal("-33.33"))

    def test_nothing_planned(self):
        variance, percent = compute_variance(Decimal("0"), Decimal("80"))
        assert variance == Decimal("80.00")
        assert percent is None


class TestForecastAvailability:

    def test_exclusion_of_edited_invoice(self, db_session, writer_auth, make_expense, make_invoice, tenant_id):
        """Vinculado solo a I: visible excluyendo I, invisible sin exclusión"""
        expense = make_expense()
        invoice = make_invoice()
        ForecastLinker(db_session).link_forecast(LinkedDocument.INVOICE, invoice.id, expense.id, writer_auth)

        linker = ForecastLinker(db_session)
        assert expense.id in [e.id for e in linker.list_available_forecast_expenses(tenant_id, 2024, exclude_invoice_id=invoice.id)]
        assert expense.id not in [e.id for e in linker.list_available_forecast_expenses(tenant_id, 2024)]
        assert expense.id not in [
            e.id for e in linker.list_available_forecast_expenses(tenant_id, 2024, exclude_invoice_id=uuid4())
        ]

    def test_filtered_by_year_and_tenant(self, db_session, make_expense, tenant_id, other_tenant_id):
        make_expense(label="2024")
        make_expense(label="2025", year=2025)
        linker = ForecastLinker(db_session)

        assert [e.label for e in linker.list_available_forecast_expenses(tenant_id, 2025)] == ["2025"]
        assert linker.list_available_forecast_expenses(other_tenant_id, 2024) == []

    def test_invoiced_expense_not_offered_to_purchase_orders(self, db_session, writer_auth, make_expense, make_invoice, tenant_id):
        expense = make_expense()
        free = make_expense(label="Stockage")
        invoice = make_invoice()
        linker = ForecastLinker(db_session)
        linker.link_forecast(LinkedDocument.INVOICE, invoice.id, expense.id, writer_auth)

        order = PurchaseOrderService(db_session).create_purchase_order(
            PurchaseOrderCreate(number="BC-1", vendor="Dell", amount=Decimal("4800")), writer_auth
        )
        available = linker.list_available_forecast_expenses(tenant_id, 2024, exclude_purchase_order_id=order.id)
        assert [e.id for e in available] == [free.id]

        with pytest.raises(ConflictError):
            linker.link_forecast(LinkedDocument.PURCHASE_ORDER, order.id, expense.id, writer_auth)

    def test_purchase_orders_do_not_consume_expense(self, db_session, writer_auth, make_expense, make_invoice, tenant_id):
        expense = make_expense()
        service = PurchaseOrderService(db_session)
        first = service.create_purchase_order(
            PurchaseOrderCreate(number="BC-1", vendor="Dell", amount=Decimal("2000")), writer_auth
        )
        second = service.create_purchase_order(
            PurchaseOrderCreate(number="BC-2", vendor="HP", amount=Decimal("2500")), writer_auth
        )
        service.link_forecast(first.id, expense.id, writer_auth)
        assert service.link_forecast(second.id, expense.id, writer_auth).linked_forecast_expense_id == expense.id

        linker = ForecastLinker(db_session)
        assert [e.id for e in linker.list_available_forecast_expenses(tenant_id, 2024)] == [expense.id]
        # Una factura puede seguir vinculándose al gasto
        invoice = make_invoice()
        linked = linker.link_forecast(LinkedDocument.INVOICE, invoice.id, expense.id, writer_auth)
        assert linked.linked_forecast_expense_id == expense.id

    def test_exclusions_are_mutually_exclusive(self, db_session, tenant_id):
        with pytest.raises(ValidationError):
            ForecastLinker(db_session).list_available_forecast_expenses(
                tenant_id, 2024, exclude_invoice_id=uuid4(), exclude_purchase_order_id=uuid4()
            )


class TestForecastLinking:

    def test_link_does_not_touch_ledger(self, db_session, writer_auth, budget_line, make_expense, make_invoice):
        expense = make_expense()
        invoice = make_invoice(budget_line_id=budget_line.id, amount="300")

        linked = ForecastLinker(db_session).link_forecast(LinkedDocument.INVOICE, invoice.id, expense.id, writer_auth)

        assert linked.linked_forecast_expense_id == expense.id
        db_session.expire_all()
        line = db_session.get(BudgetLine, budget_line.id)
        assert (line.engaged, line.invoiced) == (0, Decimal("300"))

    def test_second_invoice_conflicts(self, db_session, writer_auth, make_expense, make_invoice):
        expense = make_expense()
        first, second = make_invoice(), make_invoice()
        linker = ForecastLinker(db_session)
        linker.link_forecast(LinkedDocument.INVOICE, first.id, expense.id, writer_auth)

        with pytest.raises(ConflictError):
            linker.link_forecast(LinkedDocument.INVOICE, second.id, expense.id, writer_auth)
        assert db_session.get(Invoice, second.id).linked_forecast_expense_id is None

    def test_relink_same_expense_is_noop(self, db_session, writer_auth, make_expense, make_invoice):
        expense = make_expense()
        invoice = make_invoice()
        linker = ForecastLinker(db_session)
        linker.link_forecast(LinkedDocument.INVOICE, invoice.id, expense.id, writer_auth)
        linker.link_forecast(LinkedDocument.INVOICE, invoice.id, expense.id, writer_auth)

        entries = db_session.query(AuditLog).filter(
            AuditLog.entity == "Invoice", AuditLog.entity_id == invoice.id, AuditLog.action == "UPDATE"
        ).all()
        assert len(entries) == 1

    def test_unlink_is_idempotent(self, db_session, writer_auth, make_expense, make_invoice):
        expense = make_expense()
        invoice = make_invoice()
        linker = ForecastLinker(db_session)
        linker.link_forecast(LinkedDocument.INVOICE, invoice.id, expense.id, writer_auth)

        assert linker.unlink(LinkedDocument.INVOICE, invoice.id, writer_auth).linked_forecast_expense_id is None
        assert linker.unlink(LinkedDocument.INVOICE, invoice.id, writer_auth).linked_forecast_expense_id is None

    def test_unlink_never_linked_invoice(self, db_session, writer_auth, make_invoice):
        invoice = make_invoice()
        linker = ForecastLinker(db_session)
        linker.unlink(LinkedDocument.INVOICE, invoice.id, writer_auth)
        linker.unlink(LinkedDocument.INVOICE, invoice.id, writer_auth)

        assert db_session.query(AuditLog).filter(
            AuditLog.entity_id == invoice.id, AuditLog.action == "UPDATE"
        ).count() == 0

    def test_unknown_expense(self, db_session, writer_auth, make_invoice):
        invoice = make_invoice()
        with pytest.raises(NotFoundError):
            ForecastLinker(db_session).link_forecast(LinkedDocument.INVOICE, invoice.id, uuid4(), writer_auth)

    def test_expense_of_other_tenant(self, db_session, writer_auth, make_auth, other_tenant_id, make_invoice):
        foreign_auth = make_auth(tenant=other_tenant_id)
        service = ForecastService(db_session)
        line = service.create_forecast_line(ForecastBudgetLineCreate(label="Autre", year=2024), foreign_auth)
        foreign = service.create_expense(
            ForecastExpenseCreate(forecast_budget_line_id=line.id, label="X", amount=Decimal("1")), foreign_auth
        )
        invoice = make_invoice()

        with pytest.raises(NotFoundError):
            ForecastLinker(db_session).link_forecast(LinkedDocument.INVOICE, invoice.id, foreign.id, writer_auth)


class TestForecastService:

    def test_expense_defaults_to_line_year(self, make_expense):
        assert make_expense().year == 2024
        assert make_expense(year=2026).year == 2026

    def test_variance(self, db_session, writer_auth, make_expense, make_invoice, tenant_id):
        expense = make_expense(amount="5000")
        invoice = make_invoice(amount="5600")
        linker = ForecastLinker(db_session)
        linker.link_forecast(LinkedDocument.INVOICE, invoice.id, expense.id, writer_auth)

        variance = linker.variance(expense.id, tenant_id)
        assert variance.planned == Decimal("5000.00")
        assert variance.realized == Decimal("5600.00")
        assert variance.variance == Decimal("600.00")
        assert variance.variance_percent == Decimal("12.00")
        assert variance.linked_invoices == 1

    def test_credit_note_counts_unsigned(self, db_session, writer_auth, make_expense, make_invoice, tenant_id):
        expense = make_expense(amount="1000")
        credit = make_invoice(amount="200", is_credit=True)
        linker = ForecastLinker(db_session)
        linker.link_forecast(LinkedDocument.INVOICE, credit.id, expense.id, writer_auth)

        assert linker.variance(expense.id, tenant_id).realized == Decimal("200.00")

    def test_line_summary(self, db_session, writer_auth, forecast_line, make_expense, make_invoice, tenant_id):
        first = make_expense(label="A", amount="1000")
        make_expense(label="B", amount="500")
        invoice = make_invoice(amount="1100")
        ForecastLinker(db_session).link_forecast(LinkedDocument.INVOICE, invoice.id, first.id, writer_auth)

        summary = ForecastService(db_session).get_line_summary(forecast_line.id, tenant_id)
        assert summary.planned == Decimal("1500.00")
        assert summary.realized == Decimal("1100.00")
        assert summary.variance == Decimal("-400.00")
        assert sorted(e.label for e in summary.expenses) == ["A", "B"]

    def test_update_expense(self, db_session, writer_auth, make_expense):
        expense = make_expense()
        updated = ForecastService(db_session).update_expense(
            expense.id, ForecastExpenseUpdate(amount=Decimal("6500")), writer_auth
        )
        assert updated.amount == Decimal("6500")

    def test_delete_expense_releases_documents(self, db_session, writer_auth, make_expense, make_invoice):
        expense = make_expense()
        invoice = make_invoice()
        order = PurchaseOrderService(db_session).create_purchase_order(
            PurchaseOrderCreate(number="BC-9", vendor="Dell", amount=Decimal("10"), linked_forecast_expense_id=expense.id),
            writer_auth
        )
        ForecastLinker(db_session).link_forecast(LinkedDocument.INVOICE, invoice.id, expense.id, writer_auth)

        ForecastService(db_session).delete_expense(expense.id, writer_auth)

        db_session.expire_all()
        assert db_session.get(Invoice, invoice.id).linked_forecast_expense_id is None
        assert db_session.get(PurchaseOrder, order.id).linked_forecast_expense_id is None
        unlink_entries = db_session.query(AuditLog).filter(
            AuditLog.entity.in_(["Invoice", "PurchaseOrder"]), AuditLog.action == "UPDATE"
        ).all()
        assert {e.entity for e in unlink_entries if e.changes["linked_forecast_expense_id"]["after"] is None} == {
            "Invoice", "PurchaseOrder"
        }

    def test_delete_line_cascades_expenses(self, db_session, writer_auth, forecast_line, make_expense, make_invoice, tenant_id):
        expense = make_expense()
        invoice = make_invoice()
        ForecastLinker(db_session).link_forecast(LinkedDocument.INVOICE, invoice.id, expense.id, writer_auth)

        ForecastService(db_session).delete_forecast_line(forecast_line.id, writer_auth)

        assert ForecastService(db_session).get_expenses(tenant_id).total == 0
        assert db_session.get(Invoice, invoice.id).linked_forecast_expense_id is None


class TestForecastAPI:

    def test_link_and_available(self, client, auth_headers):
        writer = auth_headers("user")
        line = client.post("/forecast-budget-lines/", json={"label": "IT", "year": 2024}, headers=writer).json()
        expense = client.post("/forecast-expenses/", json={
            "forecast_budget_line_id": line["id"], "label": "Licences", "amount": "900"
        }, headers=writer).json()
        invoice = client.post("/invoices/", json={
            "number": "F-1", "vendor": "Microsoft", "amount": "950", "invoice_date": "2024-05-01"
        }, headers=writer).json()

        response = client.put(f"/invoices/{invoice['id']}/link-forecast",
                              json={"forecast_expense_id": expense["id"]}, headers=writer)
        assert response.status_code == 200
        assert response.json()["linked_forecast_expense_id"] == expense["id"]

        available = client.get("/forecast-expenses/available", params={"year": 2024}, headers=writer).json()
        assert available == []
        available = client.get("/forecast-expenses/available",
                               params={"year": 2024, "exclude_invoice_id": invoice["id"]}, headers=writer).json()
        assert [e["id"] for e in available] == [expense["id"]]

        variance = client.get(f"/forecast-expenses/{expense['id']}/variance", headers=writer).json()
        assert Decimal(variance["variance"]) == Decimal("50")

        response = client.put(f"/invoices/{invoice['id']}/link-forecast", json={"forecast_expense_id": None}, headers=writer)
        assert response.status_code == 200
        assert response.json()["linked_forecast_expense_id"] is None

    def test_both_exclusions_rejected(self, client, auth_headers):
        response = client.get("/forecast-expenses/available", params={
            "year": 2024, "exclude_invoice_id": str(uuid4()), "exclude_purchase_order_id": str(uuid4())
        }, headers=auth_headers("user"))
        assert response.status_code == 422
