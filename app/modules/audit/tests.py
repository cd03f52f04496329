"""
Tests de la bitácora de auditoría

- La entrada se confirma o revierte junto con la escritura de negocio
- Entradas inmutables
- Consulta filtrada por organización
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from app.common.exceptions import NotFoundError
from app.modules.audit.models import AuditAction, AuditImmutabilityError, AuditLog
from app.modules.audit.service import AuditLogService, AuditRecorder, diff, snapshot
from app.modules.budget.models import BudgetLine
from app.modules.contracts.schemas import ContractCreate
from app.modules.contracts.service import ContractService


class TestSnapshotDiff:

    def test_snapshot_is_json_ready(self, budget_line):
        data = snapshot(budget_line, ("label", "budget", "id"))

        assert data["label"] == "Licences logicielles"
        assert data["budget"] == 10000
        assert data["id"] == str(budget_line.id)

    def test_diff_keeps_changed_fields_only(self):
        before = {"vendor": "Acme", "amount": 100, "label": "X"}
        after = {"vendor": "Globex", "amount": 100.0, "label": "X"}

        assert diff(before, after) == {"vendor": {"before": "Acme", "after": "Globex"}}

    def test_diff_of_identical_snapshots(self):
        assert diff({"a": 1}, {"a": 1}) == {}


class TestAuditTransaction:

    def test_entry_commits_with_business_write(self, db_session, writer_auth, budget_line, contract_payload):
        contract = ContractService(db_session).create_contract(
            ContractCreate(**contract_payload(budget_line.id)), writer_auth
        )

        entry = db_session.query(AuditLog).filter(AuditLog.entity_id == contract.id).one()
        assert entry.entity == "Contract"
        assert entry.tenant_id == writer_auth.tenant_id
        assert entry.changes["after"]["amount"] == 1000

    def test_entry_rolls_back_with_business_write(self, db_session, writer_auth, contract_payload):
        before = db_session.query(AuditLog).count()

        with pytest.raises(NotFoundError):
            ContractService(db_session).create_contract(ContractCreate(**contract_payload(uuid4())), writer_auth)

        assert db_session.query(AuditLog).count() == before
        assert db_session.query(BudgetLine).count() == 0

    def test_recorder_does_not_commit(self, db_session, tenant_id):
        AuditRecorder(db_session).record(uuid4(), AuditAction.CREATE, "Contract", uuid4(), {"after": {}}, tenant_id)
        db_session.rollback()

        assert db_session.query(AuditLog).count() == 0


class TestAuditImmutability:

    @pytest.fixture
    def entry(self, db_session, tenant_id):
        AuditRecorder(db_session).record(uuid4(), AuditAction.CREATE, "Invoice", uuid4(), {"after": {"amount": 5}}, tenant_id)
        db_session.commit()
        return db_session.query(AuditLog).one()

    def test_update_rejected(self, db_session, entry):
        entry.changes = {"after": {"amount": 6}}
        with pytest.raises(AuditImmutabilityError):
            db_session.flush()
        db_session.rollback()

        assert db_session.query(AuditLog).one().changes == {"after": {"amount": 5}}

    def test_delete_rejected(self, db_session, entry):
        db_session.delete(entry)
        with pytest.raises(AuditImmutabilityError):
            db_session.flush()
        db_session.rollback()

        assert db_session.query(AuditLog).count() == 1


class TestAuditLogService:

    def test_filters(self, db_session, make_line, make_auth, tenant_id, other_tenant_id):
        author = make_auth()
        line = make_line("Réseau", auth=author)
        make_line("Sécurité")
        make_line("Autre tenant", auth=make_auth(tenant=other_tenant_id))

        service = AuditLogService(db_session)
        assert service.get_audit_logs(tenant_id).total == 2
        assert service.get_audit_logs(tenant_id, entity="BudgetLine").total == 2
        assert service.get_audit_logs(tenant_id, entity="Contract").total == 0
        assert service.get_audit_logs(tenant_id, entity_id=line.id).items[0].entity_id == line.id
        assert service.get_audit_logs(tenant_id, user_id=author.user_id).total == 1
        assert service.get_audit_logs(other_tenant_id).total == 1

    def test_date_window(self, db_session, make_line, tenant_id):
        make_line()
        now = datetime.now(timezone.utc)

        service = AuditLogService(db_session)
        assert service.get_audit_logs(tenant_id, date_from=now + timedelta(days=1)).total == 0
        assert service.get_audit_logs(tenant_id, date_to=now - timedelta(days=1)).total == 0


class TestAuditAPI:

    def test_list_scoped_to_tenant(self, client, auth_headers, other_tenant_id):
        writer = auth_headers("user")
        line_id = client.post("/budget-lines/", json={"label": "Cloud", "budget": "100"}, headers=writer).json()["id"]
        client.put(f"/budget-lines/{line_id}", json={"budget": "250"}, headers=writer)

        response = client.get("/audit-logs/", params={"entity_id": line_id}, headers=auth_headers("viewer"))
        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 2
        assert {item["action"] for item in body["items"]} == {"CREATE", "UPDATE"}
        update = next(item for item in body["items"] if item["action"] == "UPDATE")
        assert Decimal(str(update["changes"]["budget"]["after"])) == Decimal("250")

        other = client.get("/audit-logs/", headers=auth_headers("user", tenant=other_tenant_id)).json()
        assert other["total"] == 0

    def test_read_only(self, client, auth_headers):
        assert client.post("/audit-logs/", json={}, headers=auth_headers("admin")).status_code == 405
