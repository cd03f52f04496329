"""
Tests for the budget reports

Figures are read from the ledger aggregates, so every scenario is built
through the services (contracts and invoices move engaged / invoiced).
"""

from datetime import date
from decimal import Decimal

import pytest

from app.common.exceptions import ValidationError
from app.modules.budget.schemas import BudgetDomainCreate, BudgetLineCreate, NatureEnum, YearlyBudgetIn
from app.modules.budget.service import BudgetLineService, BudgetReferenceService
from app.modules.contracts.schemas import ContractCreate
from app.modules.contracts.service import ContractService
from app.modules.invoices.schemas import InvoiceCreate, InvoiceStatusEnum
from app.modules.invoices.service import InvoiceService
from app.modules.reports.service import BudgetReportService


@pytest.fixture
def portfolio(db_session, writer_auth, contract_payload, invoice_payload):
    """
    Serveurs: Investissement, domain Infra, 10000 in 2024, 4000 engaged, 12000 invoiced (late)
    Licences: Fonctionnement, no domain, 5000 in 2024 and 2025, 1000 invoiced in 2025
    """
    domain = BudgetReferenceService(db_session).create_domain(BudgetDomainCreate(name="Infra"), writer_auth)
    lines = BudgetLineService(db_session)
    servers = lines.create_budget_line(BudgetLineCreate(
        label="Serveurs", nature=NatureEnum.INVESTISSEMENT, domain_id=domain.id, budget=Decimal("10000"),
        yearly_budgets=[YearlyBudgetIn(year=2024, budget=Decimal("10000"))]
    ), writer_auth)
    licences = lines.create_budget_line(BudgetLineCreate(
        label="Licences", budget=Decimal("5000"),
        yearly_budgets=[YearlyBudgetIn(year=2024, budget=Decimal("5000")), YearlyBudgetIn(year=2025, budget=Decimal("5000"))]
    ), writer_auth)

    ContractService(db_session).create_contract(ContractCreate(**contract_payload(
        servers.id, amount="4000", end_date=date(2024, 6, 10)
    )), writer_auth)
    invoices = InvoiceService(db_session)
    invoices.create_invoice(InvoiceCreate(**invoice_payload(
        servers.id, amount="12000", status=InvoiceStatusEnum.LATE, due_date=date(2024, 4, 15)
    )), writer_auth)
    invoices.create_invoice(InvoiceCreate(**invoice_payload(
        licences.id, amount="1000", invoice_date=date(2025, 2, 1)
    )), writer_auth)
    return {"servers": servers, "licences": licences, "domain": domain}


class TestBudgetReportService:

    def test_summary(self, db_session, tenant_id, portfolio):
        summary = BudgetReportService(db_session, tenant_id).get_summary()

        assert (summary.budget, summary.engaged, summary.invoiced) == (15000, 4000, 13000)
        assert summary.remaining == 2000
        assert summary.engagement_rate == Decimal("26.67")
        assert summary.consumption_rate == Decimal("86.67")
        assert summary.lines_count == 2
        assert summary.over_budget_lines == 1
        assert summary.currency == "EUR"

    def test_summary_for_year(self, db_session, tenant_id, portfolio):
        summary = BudgetReportService(db_session, tenant_id).get_summary(2025)

        assert (summary.budget, summary.engaged, summary.invoiced) == (5000, 0, 1000)
        assert summary.consumption_rate == Decimal("20.00")
        assert summary.lines_count == 1
        assert summary.over_budget_lines == 0

    def test_empty_tenant(self, db_session, other_tenant_id, portfolio):
        summary = BudgetReportService(db_session, other_tenant_id).get_summary()

        assert summary.budget == 0
        assert summary.engagement_rate is None
        assert summary.lines_count == 0

    def test_by_year(self, db_session, tenant_id, portfolio):
        items = BudgetReportService(db_session, tenant_id).get_by_year().items

        assert [item.year for item in items] == [2024, 2025]
        assert (items[0].budget, items[0].engaged, items[0].invoiced) == (15000, 4000, 12000)
        assert (items[1].budget, items[1].engaged, items[1].invoiced) == (5000, 0, 1000)

    def test_by_nature(self, db_session, tenant_id, portfolio):
        items = {item.nature: item for item in BudgetReportService(db_session, tenant_id).get_by_nature().items}

        assert items["Investissement"].invoiced == 12000
        assert items["Fonctionnement"].invoiced == 1000
        assert items["Fonctionnement"].lines_count == 1

    def test_by_domain(self, db_session, tenant_id, portfolio):
        items = {item.domain_name: item for item in BudgetReportService(db_session, tenant_id).get_by_domain().items}

        assert set(items) == {"Infra", "Sans domaine"}
        assert items["Infra"].domain_id == portfolio["domain"].id
        assert items["Infra"].engaged == 4000
        assert items["Sans domaine"].domain_id is None

    def test_alerts(self, db_session, tenant_id, portfolio):
        alerts = BudgetReportService(db_session, tenant_id).get_alerts(today=date(2024, 6, 1))

        by_type = {alert.type: alert for alert in alerts.items}
        assert set(by_type) == {"contract", "invoice", "budget"}
        assert by_type["contract"].critical is True
        assert by_type["contract"].severity == "error"
        assert by_type["invoice"].date == date(2024, 4, 15)
        assert by_type["budget"].id == portfolio["servers"].id
        assert alerts.total == 3

    def test_contract_alert_window(self, db_session, tenant_id, portfolio):
        service = BudgetReportService(db_session, tenant_id)

        # 40 días antes del vencimiento: aviso sin criticidad
        early = [a for a in service.get_alerts(today=date(2024, 5, 1)).items if a.type == "contract"]
        assert [a.severity for a in early] == ["warning"]
        # Ya vencido: no aparece
        assert not [a for a in service.get_alerts(today=date(2024, 7, 1)).items if a.type == "contract"]

    def test_monthly_stats(self, db_session, writer_auth, tenant_id, other_tenant_id, portfolio, invoice_payload):
        InvoiceService(db_session).create_invoice(InvoiceCreate(**invoice_payload(
            portfolio["licences"].id, amount="200", is_credit=True, invoice_date=date(2025, 2, 20)
        )), writer_auth)

        stats = BudgetReportService(db_session, tenant_id).get_monthly_stats([2025, 2024, 2024])

        assert stats.years == [2024, 2025]
        assert [item.month for item in stats.items] == list(range(1, 13))
        assert stats.items[0].label == "janv."
        assert stats.items[2].invoiced == {2024: Decimal("12000"), 2025: 0}
        assert stats.items[1].invoiced == {2024: 0, 2025: Decimal("800")}
        # Coincide con el agregado del ledger para ese año
        assert sum(item.invoiced[2025] for item in stats.items) == BudgetReportService(
            db_session, tenant_id
        ).get_summary(2025).invoiced

        other = BudgetReportService(db_session, other_tenant_id).get_monthly_stats([2024])
        assert all(item.invoiced == {2024: 0} for item in other.items)

    def test_monthly_stats_requires_years(self, db_session, tenant_id):
        with pytest.raises(ValidationError):
            BudgetReportService(db_session, tenant_id).get_monthly_stats([])


class TestReportsAPI:

    def test_endpoints(self, client, auth_headers):
        viewer = auth_headers("viewer")
        writer = auth_headers("user")
        client.post("/budget-lines/", json={
            "label": "Cloud", "budget": "2000", "yearly_budgets": [{"year": 2024, "budget": "2000"}]
        }, headers=writer)

        response = client.get("/reports/budget/summary", headers=viewer)
        assert response.status_code == 200
        assert Decimal(response.json()["budget"]) == Decimal("2000")

        assert client.get("/reports/budget/by-year", headers=viewer).json()["items"][0]["year"] == 2024
        assert client.get("/reports/budget/by-nature", params={"year": 2024}, headers=viewer).status_code == 200
        assert client.get("/reports/budget/by-domain", headers=viewer).json()["items"][0]["domain_name"] == "Sans domaine"
        assert client.get("/reports/budget/alerts", headers=viewer).json()["total"] == 0

    def test_monthly(self, client, auth_headers):
        writer = auth_headers("user")
        client.post("/invoices/", json={
            "number": "F-M", "vendor": "OVH", "amount": "350", "invoice_date": "2024-11-05"
        }, headers=writer)

        response = client.get("/reports/budget/monthly", params={"years": "2023, 2024"}, headers=auth_headers("viewer"))
        assert response.status_code == 200
        body = response.json()
        assert body["years"] == [2023, 2024]
        assert Decimal(body["items"][10]["invoiced"]["2024"]) == Decimal("350")
        assert Decimal(body["items"][10]["invoiced"]["2023"]) == 0

        assert client.get("/reports/budget/monthly", params={"years": "abc"}, headers=writer).status_code == 422
        assert client.get("/reports/budget/monthly", headers=writer).status_code == 422

    def test_alerts_limit_bounds(self, client, auth_headers):
        response = client.get("/reports/budget/alerts", params={"limit": 0}, headers=auth_headers("viewer"))
        assert response.status_code == 422
