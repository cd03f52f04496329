"""
Tests para el módulo de Contratos

- Estado derivado (Actif / Expirant / Expiré) y criticidad
- Filtros por estado traducidos a rangos de end_date
- Total facturado firmado por contrato
- Importación por lotes con errores por fila
"""

from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from app.common.exceptions import ForbiddenError, ValidationError
from app.modules.audit.models import AuditLog
from app.modules.budget.models import BudgetLine
from app.modules.contracts.schemas import ContractCreate, ContractUpdate
from app.modules.contracts.service import ContractService
from app.modules.contracts.status import (
    ContractStatus, derive_contract_status, days_remaining, is_critical, end_date_range
)
from app.modules.invoices.schemas import InvoiceCreate
from app.modules.invoices.service import InvoiceService

TODAY = date(2024, 6, 1)


class TestContractStatus:
    """Función pura de end_date y la fecha actual"""

    @pytest.mark.parametrize("offset, expected", [
        (-1, ContractStatus.EXPIRE),
        (0, ContractStatus.EXPIRANT),
        (15, ContractStatus.EXPIRANT),
        (60, ContractStatus.EXPIRANT),
        (61, ContractStatus.ACTIF),
        (400, ContractStatus.ACTIF),
    ])
    def test_derive_status(self, offset, expected):
        assert derive_contract_status(TODAY + timedelta(days=offset), TODAY) == expected

    def test_days_remaining(self):
        assert days_remaining(date(2024, 6, 11), TODAY) == 10
        assert days_remaining(date(2024, 5, 31), TODAY) == -1

    @pytest.mark.parametrize("offset, expected", [(-1, False), (0, True), (15, True), (16, False)])
    def test_is_critical(self, offset, expected):
        assert is_critical(TODAY + timedelta(days=offset), TODAY) is expected

    def test_end_date_range_matches_status(self):
        for status in ContractStatus:
            date_from, date_to = end_date_range(status, TODAY)
            for probe in (date_from, date_to):
                if probe is not None:
                    assert derive_contract_status(probe, TODAY) == status


class TestContractService:

    def test_status_is_derived_on_read(self, db_session, writer_auth, contract_payload):
        service = ContractService(db_session)
        contract = service.create_contract(
            ContractCreate(**contract_payload(end_date=date(2024, 6, 20))), writer_auth
        )

        out = service.get_contract(contract.id, writer_auth.tenant_id, today=TODAY)
        assert out.status == ContractStatus.EXPIRANT
        assert out.days_remaining == 19
        assert out.is_critical is False

        later = service.get_contract(contract.id, writer_auth.tenant_id, today=date(2024, 7, 1))
        assert later.status == ContractStatus.EXPIRE

    def test_filter_by_status(self, db_session, writer_auth, contract_payload, tenant_id):
        service = ContractService(db_session)
        service.create_contract(ContractCreate(**contract_payload(label="Expiré", end_date=date(2024, 5, 1))), writer_auth)
        service.create_contract(ContractCreate(**contract_payload(label="Bientôt", end_date=date(2024, 7, 1))), writer_auth)
        service.create_contract(ContractCreate(**contract_payload(label="Long", end_date=date(2025, 12, 31))), writer_auth)

        def labels(status):
            return [c.label for c in service.get_contracts(tenant_id, status=status, today=TODAY).items]

        assert labels(ContractStatus.EXPIRE) == ["Expiré"]
        assert labels(ContractStatus.EXPIRANT) == ["Bientôt"]
        assert labels(ContractStatus.ACTIF) == ["Long"]
        assert service.get_contracts(tenant_id, today=TODAY).total == 3

    def test_total_invoiced_is_signed(self, db_session, writer_auth, contract_payload, invoice_payload):
        contract = ContractService(db_session).create_contract(ContractCreate(**contract_payload()), writer_auth)
        invoices = InvoiceService(db_session)
        invoices.create_invoice(InvoiceCreate(**invoice_payload(amount="400", contract_id=contract.id)), writer_auth)
        invoices.create_invoice(
            InvoiceCreate(**invoice_payload(amount="150", is_credit=True, contract_id=contract.id)), writer_auth
        )

        out = ContractService(db_session).get_contract(contract.id, writer_auth.tenant_id)
        assert out.total_invoiced == Decimal("250")

    def test_update_validates_dates(self, db_session, writer_auth, contract_payload):
        service = ContractService(db_session)
        contract = service.create_contract(ContractCreate(**contract_payload()), writer_auth)

        with pytest.raises(ValidationError):
            service.update_contract(contract.id, ContractUpdate(end_date=date(2023, 12, 31)), writer_auth)

    def test_update_audits_diff(self, db_session, writer_auth, contract_payload):
        service = ContractService(db_session)
        contract = service.create_contract(ContractCreate(**contract_payload()), writer_auth)

        service.update_contract(contract.id, ContractUpdate(vendor="Globex", amount=Decimal("1200")), writer_auth)

        entry = db_session.query(AuditLog).filter(
            AuditLog.entity == "Contract", AuditLog.action == "UPDATE"
        ).one()
        assert set(entry.changes) == {"vendor", "amount"}
        assert entry.changes["vendor"] == {"before": "Acme SAS", "after": "Globex"}

    def test_create_rejects_inverted_dates(self, contract_payload):
        with pytest.raises(ValueError):
            ContractCreate(**contract_payload(start_date=date(2024, 6, 1), end_date=date(2024, 1, 1)))


class TestContractImport:

    def test_partial_import(self, db_session, writer_auth, budget_line, contract_payload):
        rows = [
            ContractCreate(**contract_payload(budget_line.id, amount="100")),
            ContractCreate(**contract_payload(uuid4(), amount="200")),
            ContractCreate(**contract_payload(budget_line.id, amount="300")),
        ]
        result = ContractService(db_session).import_contracts(rows, writer_auth)

        assert len(result.created) == 2
        assert [e.row for e in result.errors] == [1]
        db_session.expire_all()
        assert db_session.get(BudgetLine, budget_line.id).engaged == Decimal("400")

    def test_viewer_cannot_import(self, db_session, viewer_auth, contract_payload):
        with pytest.raises(ForbiddenError):
            ContractService(db_session).import_contracts([ContractCreate(**contract_payload())], viewer_auth)


class TestContractAPI:

    def _payload(self, line_id=None, **overrides):
        payload = {
            "number": "CTR-API",
            "label": "Support",
            "vendor": "Initech",
            "start_date": "2024-01-01",
            "end_date": "2030-12-31",
            "amount": "1000",
            "budget_line_id": line_id,
        }
        payload.update(overrides)
        return payload

    def test_create_updates_line(self, client, auth_headers):
        writer = auth_headers("user")
        line_id = client.post("/budget-lines/", json={"label": "Support"}, headers=writer).json()["id"]

        response = client.post("/contracts/", json=self._payload(line_id), headers=writer)
        assert response.status_code == 201
        assert response.json()["status"] == "Actif"

        line = client.get(f"/budget-lines/{line_id}", headers=writer).json()
        assert Decimal(line["engaged"]) == Decimal("1000")

    def test_delete_with_invoices_returns_409(self, client, auth_headers):
        writer = auth_headers("user")
        contract_id = client.post("/contracts/", json=self._payload(), headers=writer).json()["id"]
        client.post("/invoices/", json={
            "number": "F-1", "vendor": "Initech", "amount": "10",
            "invoice_date": "2024-02-01", "contract_id": contract_id
        }, headers=writer)

        response = client.delete(f"/contracts/{contract_id}", headers=writer)
        assert response.status_code == 409

    def test_filter_by_status_alias(self, client, auth_headers):
        writer = auth_headers("user")
        client.post("/contracts/", json=self._payload(end_date="2020-12-31", start_date="2020-01-01"), headers=writer)

        response = client.get("/contracts/", params={"status": "Expiré"}, headers=writer)
        assert response.status_code == 200
        assert response.json()["total"] == 1

    def test_other_tenant_cannot_read(self, client, auth_headers, other_tenant_id):
        contract_id = client.post("/contracts/", json=self._payload(), headers=auth_headers("user")).json()["id"]
        response = client.get(f"/contracts/{contract_id}", headers=auth_headers("user", tenant=other_tenant_id))
        assert response.status_code == 404
