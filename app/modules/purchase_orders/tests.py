"""
Tests para el módulo de Órdenes de compra

- Máquina de estados (libre salvo estados terminales)
- Número único por organización
- Independencia respecto del ledger
"""

from decimal import Decimal

import pytest

from app.common.exceptions import ConflictError, ForbiddenError, NotFoundError
from app.modules.audit.models import AuditLog
from app.modules.budget.models import BudgetLine
from app.modules.forecast.schemas import ForecastBudgetLineCreate, ForecastExpenseCreate
from app.modules.forecast.service import ForecastService
from app.modules.purchase_orders.models import PurchaseOrderStatus as S
from app.modules.purchase_orders.schemas import PurchaseOrderCreate, PurchaseOrderUpdate
from app.modules.purchase_orders.service import PurchaseOrderService, can_transition


@pytest.fixture
def make_order(db_session, writer_auth):
    def _make(number="BC-001", amount="1500", **overrides):
        return PurchaseOrderService(db_session).create_purchase_order(
            PurchaseOrderCreate(number=number, vendor="Dell", amount=Decimal(amount), **overrides), writer_auth
        )
    return _make


class TestTransitions:

    @pytest.mark.parametrize("current, target", [
        (S.DRAFT, S.SENT),
        (S.DRAFT, S.CONFIRMED),
        (S.SENT, S.DELIVERED),
        (S.DELIVERED, S.INVOICED),
        (S.DRAFT, S.CANCELLED),
        (S.DELIVERED, S.CANCELLED),
        (S.SENT, S.SENT),
        (S.SENT, S.DRAFT),
        (S.DELIVERED, S.CONFIRMED),
        (S.CONFIRMED, S.INVOICED),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("current, target", [
        (S.INVOICED, S.CANCELLED),
        (S.CANCELLED, S.SENT),
        (S.CANCELLED, S.DRAFT),
        (S.INVOICED, S.DRAFT),
    ])
    def test_forbidden(self, current, target):
        assert not can_transition(current, target)


class TestPurchaseOrderService:

    def test_create_starts_in_draft(self, db_session, make_order):
        order = make_order()

        assert order.status == S.DRAFT
        assert order.order_date is not None
        entry = db_session.query(AuditLog).filter(AuditLog.entity_id == order.id).one()
        assert entry.action == "CREATE"

    def test_number_unique_per_tenant(self, db_session, make_order, make_auth, other_tenant_id):
        make_order("BC-7")
        with pytest.raises(ConflictError):
            make_order("BC-7")

        other = PurchaseOrderService(db_session).create_purchase_order(
            PurchaseOrderCreate(number="BC-7", vendor="HP", amount=Decimal("10")), make_auth(tenant=other_tenant_id)
        )
        assert other.number == "BC-7"

    def test_does_not_touch_ledger(self, db_session, budget_line, make_order):
        make_order(amount="9000")
        db_session.expire_all()
        line = db_session.get(BudgetLine, budget_line.id)
        assert (line.engaged, line.invoiced) == (0, 0)

    def test_transition_records_audit(self, db_session, writer_auth, make_order):
        order = make_order()
        service = PurchaseOrderService(db_session)

        assert service.transition_status(order.id, S.SENT, writer_auth).status == S.SENT
        entry = db_session.query(AuditLog).filter(
            AuditLog.entity_id == order.id, AuditLog.action == "UPDATE"
        ).one()
        assert entry.changes == {"status": {"before": "DRAFT", "after": "SENT"}}

        # Repetir el estado actual no genera entrada
        service.transition_status(order.id, S.SENT, writer_auth)
        assert db_session.query(AuditLog).filter(
            AuditLog.entity_id == order.id, AuditLog.action == "UPDATE"
        ).count() == 1

    def test_backward_transition(self, db_session, writer_auth, make_order):
        order = make_order()
        service = PurchaseOrderService(db_session)
        service.transition_status(order.id, S.DELIVERED, writer_auth)

        assert service.transition_status(order.id, S.SENT, writer_auth).status == S.SENT
        entries = db_session.query(AuditLog).filter(
            AuditLog.entity_id == order.id, AuditLog.action == "UPDATE"
        ).all()
        assert len(entries) == 2

    def test_initial_status(self, db_session, make_order):
        assert make_order(status=S.CONFIRMED).status == S.CONFIRMED
        entry = db_session.query(AuditLog).filter(AuditLog.action == "CREATE").one()
        assert entry.changes["after"]["status"] == "CONFIRMED"

    def test_terminal_orders_are_frozen(self, db_session, writer_auth, make_order):
        order = make_order()
        service = PurchaseOrderService(db_session)
        service.transition_status(order.id, S.CANCELLED, writer_auth)

        with pytest.raises(ConflictError):
            service.update_purchase_order(order.id, PurchaseOrderUpdate(vendor="HP"), writer_auth)
        with pytest.raises(ConflictError):
            service.transition_status(order.id, S.SENT, writer_auth)

    def test_update_audits_diff(self, db_session, writer_auth, make_order):
        order = make_order()
        PurchaseOrderService(db_session).update_purchase_order(
            order.id, PurchaseOrderUpdate(vendor="Lenovo", amount=Decimal("1500")), writer_auth
        )

        entry = db_session.query(AuditLog).filter(
            AuditLog.entity_id == order.id, AuditLog.action == "UPDATE"
        ).one()
        assert entry.changes == {"vendor": {"before": "Dell", "after": "Lenovo"}}

    def test_invoiced_order_cannot_be_deleted(self, db_session, writer_auth, make_order):
        order = make_order()
        service = PurchaseOrderService(db_session)
        service.transition_status(order.id, S.INVOICED, writer_auth)

        with pytest.raises(ConflictError):
            service.delete_purchase_order(order.id, writer_auth)

    def test_delete(self, db_session, writer_auth, make_order):
        order = make_order()
        order_id = order.id
        service = PurchaseOrderService(db_session)
        service.delete_purchase_order(order_id, writer_auth)

        with pytest.raises(NotFoundError):
            service.get_purchase_order_by_id(order_id, writer_auth.tenant_id)
        assert db_session.query(AuditLog).filter(
            AuditLog.entity_id == order_id, AuditLog.action == "DELETE"
        ).count() == 1

    def test_viewer_cannot_create(self, db_session, viewer_auth):
        with pytest.raises(ForbiddenError):
            PurchaseOrderService(db_session).create_purchase_order(
                PurchaseOrderCreate(number="BC-V", vendor="Dell", amount=Decimal("1")), viewer_auth
            )

    def test_filters(self, db_session, writer_auth, make_order, tenant_id):
        service = PurchaseOrderService(db_session)
        first = make_order("BC-1")
        make_order("BC-2", description="Écrans 27 pouces")
        service.transition_status(first.id, S.SENT, writer_auth)

        assert service.get_purchase_orders(tenant_id, status=S.SENT).total == 1
        assert service.get_purchase_orders(tenant_id, search="pouces").total == 1
        assert service.get_purchase_orders(tenant_id, unlinked_only=True).total == 2

    def test_link_forecast(self, db_session, writer_auth, make_order):
        forecast = ForecastService(db_session)
        line = forecast.create_forecast_line(ForecastBudgetLineCreate(label="Postes", year=2024), writer_auth)
        expense = forecast.create_expense(
            ForecastExpenseCreate(forecast_budget_line_id=line.id, label="Portables", amount=Decimal("3000")),
            writer_auth
        )
        order = make_order()
        service = PurchaseOrderService(db_session)

        assert service.link_forecast(order.id, expense.id, writer_auth).linked_forecast_expense_id == expense.id
        # Varias órdenes pueden apuntar al mismo gasto previsto
        assert service.link_forecast(make_order("BC-002").id, expense.id, writer_auth).linked_forecast_expense_id == expense.id
        assert service.link_forecast(order.id, None, writer_auth).linked_forecast_expense_id is None


class TestPurchaseOrderAPI:

    def test_status_flow(self, client, auth_headers):
        writer = auth_headers("user")
        response = client.post(
            "/purchase-orders/", json={"number": "BC-API", "vendor": "Dell", "amount": "480"}, headers=writer
        )
        assert response.status_code == 201
        order_id = response.json()["id"]
        assert response.json()["status"] == "DRAFT"

        for target in ("SENT", "DELIVERED", "INVOICED"):
            response = client.post(f"/purchase-orders/{order_id}/status", json={"status": target}, headers=writer)
            assert response.status_code == 200
            assert response.json()["status"] == target

        response = client.post(f"/purchase-orders/{order_id}/status", json={"status": "CANCELLED"}, headers=writer)
        assert response.status_code == 409
        assert client.delete(f"/purchase-orders/{order_id}", headers=writer).status_code == 409

    def test_status_not_editable_through_put(self, client, auth_headers):
        writer = auth_headers("user")
        order_id = client.post(
            "/purchase-orders/", json={"number": "BC-PUT", "vendor": "Dell", "amount": "10"}, headers=writer
        ).json()["id"]

        response = client.put(f"/purchase-orders/{order_id}", json={"status": "SENT"}, headers=writer)
        assert response.status_code == 422

    def test_viewer_is_read_only(self, client, auth_headers):
        viewer = auth_headers("viewer")
        assert client.get("/purchase-orders/", headers=viewer).status_code == 200
        response = client.post(
            "/purchase-orders/", json={"number": "BC-V", "vendor": "Dell", "amount": "10"}, headers=viewer
        )
        assert response.status_code == 403
