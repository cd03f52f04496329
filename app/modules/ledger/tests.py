"""
Tests del ledger presupuestario

Cubren:
- Invariante engaged / invoiced tras cada mutación de contratos y facturas
- Reasignación entre líneas, avoirs y reparto anual
- Borrado bloqueado de contratos con facturas
- Campos contables protegidos fuera del LedgerMutator
- Fallo a mitad de una reasignación: nada queda aplicado
- Escenario completo y creación concurrente sobre la misma línea
- Reconciliación (check / rebuild)
"""

import threading
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import update

from app.common.exceptions import ConflictError, ForbiddenError, NotFoundError, StorageError, ValidationError
from app.common.ledger_guard import LedgerFieldError
from app.modules.audit.models import AuditLog
from app.modules.budget.models import BudgetLine, YearlyBudget
from app.modules.contracts.models import Contract
from app.modules.contracts.schemas import ContractCreate, ContractUpdate
from app.modules.contracts.service import ContractService
from app.modules.invoices.models import Invoice
from app.modules.invoices.schemas import InvoiceCreate, InvoiceUpdate
from app.modules.invoices.service import InvoiceService
from app.modules.ledger import LedgerMutator, LedgerReconciler, LedgerRepository

ZERO = Decimal("0")


def line_totals(db, line_id):
    engaged, invoiced = db.query(BudgetLine.engaged, BudgetLine.invoiced).filter(BudgetLine.id == line_id).one()
    return Decimal(engaged), Decimal(invoiced)


def yearly_totals(db, line_id, year):
    row = db.query(YearlyBudget.engaged, YearlyBudget.invoiced).filter(
        YearlyBudget.budget_line_id == line_id,
        YearlyBudget.year == year
    ).first()
    return (Decimal(row[0]), Decimal(row[1])) if row else None


# ===== REPOSITORIO =====

class TestLedgerRepository:
    """Incrementos atómicos"""

    def test_increment_line(self, db_session, budget_line, tenant_id):
        repo = LedgerRepository(db_session)
        repo.increment_engaged(tenant_id, budget_line.id, Decimal("250"))
        repo.increment_invoiced(tenant_id, budget_line.id, Decimal("-40"))
        db_session.commit()

        assert line_totals(db_session, budget_line.id) == (Decimal("250"), Decimal("-40"))

    def test_increment_other_tenant_line_fails(self, db_session, budget_line, other_tenant_id):
        with pytest.raises(NotFoundError):
            LedgerRepository(db_session).increment_engaged(other_tenant_id, budget_line.id, Decimal("10"))

    def test_zero_delta_is_noop(self, db_session, budget_line, other_tenant_id):
        # Delta cero no toca la base: ni siquiera valida la línea
        LedgerRepository(db_session).increment_engaged(other_tenant_id, budget_line.id, ZERO)

    def test_yearly_row_created_on_demand(self, db_session, budget_line):
        repo = LedgerRepository(db_session)
        repo.increment_yearly_invoiced(budget_line.id, 2031, Decimal("75"))
        db_session.commit()

        assert yearly_totals(db_session, budget_line.id, 2031) == (ZERO, Decimal("75"))
        budget = db_session.query(YearlyBudget.budget).filter(
            YearlyBudget.budget_line_id == budget_line.id, YearlyBudget.year == 2031
        ).scalar()
        assert Decimal(budget) == ZERO


# ===== CONTRATOS =====

class TestContractLedger:

    def test_create_contract_adds_engaged(self, db_session, budget_line, writer_auth, contract_payload):
        ContractService(db_session).create_contract(ContractCreate(**contract_payload(budget_line.id)), writer_auth)

        assert line_totals(db_session, budget_line.id) == (Decimal("1000"), ZERO)
        assert yearly_totals(db_session, budget_line.id, 2024) == (Decimal("1000"), ZERO)

    def test_contract_without_line_does_not_touch_ledger(self, db_session, budget_line, writer_auth, contract_payload):
        ContractService(db_session).create_contract(ContractCreate(**contract_payload(None)), writer_auth)
        assert line_totals(db_session, budget_line.id) == (ZERO, ZERO)

    def test_amount_change_applies_delta(self, db_session, budget_line, writer_auth, contract_payload):
        service = ContractService(db_session)
        contract = service.create_contract(ContractCreate(**contract_payload(budget_line.id)), writer_auth)

        service.update_contract(contract.id, ContractUpdate(amount=Decimal("1500")), writer_auth)
        assert line_totals(db_session, budget_line.id) == (Decimal("1500"), ZERO)

    def test_reassignment_is_neutral(self, db_session, make_line, writer_auth, contract_payload):
        """Mover un contrato de X a Y: -A en X, +A en Y, total global igual"""
        line_x = make_line("Ligne X")
        line_y = make_line("Ligne Y")
        service = ContractService(db_session)
        service.create_contract(ContractCreate(**contract_payload(line_y.id, amount="200")), writer_auth)
        contract = service.create_contract(ContractCreate(**contract_payload(line_x.id, amount="700")), writer_auth)
        grand_total = line_totals(db_session, line_x.id)[0] + line_totals(db_session, line_y.id)[0]

        service.update_contract(contract.id, ContractUpdate(budget_line_id=line_y.id), writer_auth)

        assert line_totals(db_session, line_x.id)[0] == ZERO
        assert line_totals(db_session, line_y.id)[0] == Decimal("900")
        assert line_totals(db_session, line_x.id)[0] + line_totals(db_session, line_y.id)[0] == grand_total
        assert yearly_totals(db_session, line_x.id, 2024) == (ZERO, ZERO)

    def test_reassign_and_change_amount_together(self, db_session, make_line, writer_auth, contract_payload):
        line_x = make_line("Ligne X")
        line_y = make_line("Ligne Y")
        service = ContractService(db_session)
        contract = service.create_contract(ContractCreate(**contract_payload(line_x.id, amount="700")), writer_auth)

        service.update_contract(
            contract.id, ContractUpdate(budget_line_id=line_y.id, amount=Decimal("450")), writer_auth
        )

        assert line_totals(db_session, line_x.id)[0] == ZERO
        assert line_totals(db_session, line_y.id)[0] == Decimal("450")

    def test_unassign_contract(self, db_session, budget_line, writer_auth, contract_payload):
        service = ContractService(db_session)
        contract = service.create_contract(ContractCreate(**contract_payload(budget_line.id)), writer_auth)

        service.update_contract(contract.id, ContractUpdate(budget_line_id=None), writer_auth)
        assert line_totals(db_session, budget_line.id) == (ZERO, ZERO)

    def test_yearly_split(self, db_session, budget_line, writer_auth, contract_payload):
        payload = contract_payload(
            budget_line.id, amount="1000", end_date=date(2025, 12, 31),
            yearly_amounts=[{"year": 2024, "amount": "600"}, {"year": 2025, "amount": "400"}]
        )
        service = ContractService(db_session)
        contract = service.create_contract(ContractCreate(**payload), writer_auth)

        assert yearly_totals(db_session, budget_line.id, 2024) == (Decimal("600"), ZERO)
        assert yearly_totals(db_session, budget_line.id, 2025) == (Decimal("400"), ZERO)

        service.update_contract(
            contract.id, ContractUpdate(yearly_amounts=[{"year": 2025, "amount": "1000"}]), writer_auth
        )
        assert yearly_totals(db_session, budget_line.id, 2024) == (ZERO, ZERO)
        assert yearly_totals(db_session, budget_line.id, 2025) == (Decimal("1000"), ZERO)
        assert line_totals(db_session, budget_line.id)[0] == Decimal("1000")

    def test_invalid_amount_leaves_ledger_unchanged(self, db_session, budget_line, writer_auth, tenant_id):
        contract = Contract(
            number="CTR-0", label="Nul", vendor="Acme", start_date=date(2024, 1, 1),
            end_date=date(2024, 6, 30), amount=ZERO, budget_line_id=budget_line.id
        )
        with pytest.raises(ValidationError) as exc:
            LedgerMutator(db_session, writer_auth).apply_contract_create(contract)
        db_session.rollback()

        assert exc.value.fields == ["amount"]
        assert line_totals(db_session, budget_line.id) == (ZERO, ZERO)

    def test_line_of_other_tenant_rejected(self, db_session, make_line, make_auth, writer_auth, other_tenant_id, contract_payload):
        foreign_line = make_line("Autre organisation", auth=make_auth(tenant=other_tenant_id))

        with pytest.raises(NotFoundError):
            ContractService(db_session).create_contract(
                ContractCreate(**contract_payload(foreign_line.id)), writer_auth
            )
        assert line_totals(db_session, foreign_line.id) == (ZERO, ZERO)

    def test_mutator_rejects_non_ledger_fields(self, db_session, budget_line, writer_auth, contract_payload):
        contract = ContractService(db_session).create_contract(
            ContractCreate(**contract_payload(budget_line.id)), writer_auth
        )
        with pytest.raises(ValueError):
            LedgerMutator(db_session, writer_auth).apply_contract_change(contract.id, {"label": "Autre"})

    def test_viewer_cannot_mutate(self, db_session, budget_line, viewer_auth, contract_payload):
        with pytest.raises(ForbiddenError):
            ContractService(db_session).create_contract(
                ContractCreate(**contract_payload(budget_line.id)), viewer_auth
            )


# ===== FACTURAS =====

class TestInvoiceLedger:

    def test_credit_note_sign(self, db_session, budget_line, writer_auth, invoice_payload):
        """invoiced=500 + avoir de 100 → 400; borrar el avoir → 500"""
        service = InvoiceService(db_session)
        service.create_invoice(InvoiceCreate(**invoice_payload(budget_line.id, amount="500")), writer_auth)
        assert line_totals(db_session, budget_line.id)[1] == Decimal("500")

        credit = service.create_invoice(
            InvoiceCreate(**invoice_payload(budget_line.id, amount="100", is_credit=True)), writer_auth
        )
        assert line_totals(db_session, budget_line.id)[1] == Decimal("400")
        assert credit.signed_amount == Decimal("-100")

        service.delete_invoice(credit.id, writer_auth)
        assert line_totals(db_session, budget_line.id)[1] == Decimal("500")

    def test_sign_amount_and_line_change_together(self, db_session, make_line, writer_auth, invoice_payload):
        line_a = make_line("Ligne A")
        line_b = make_line("Ligne B")
        service = InvoiceService(db_session)
        invoice = service.create_invoice(InvoiceCreate(**invoice_payload(line_a.id, amount="300")), writer_auth)

        service.update_invoice(
            invoice.id,
            InvoiceUpdate(amount=Decimal("200"), is_credit=True, budget_line_id=line_b.id),
            writer_auth
        )

        assert line_totals(db_session, line_a.id)[1] == ZERO
        assert line_totals(db_session, line_b.id)[1] == Decimal("-200")
        assert yearly_totals(db_session, line_a.id, 2024) == (ZERO, ZERO)
        assert yearly_totals(db_session, line_b.id, 2024) == (ZERO, Decimal("-200"))

    def test_invoice_date_moves_yearly_bucket(self, db_session, budget_line, writer_auth, invoice_payload):
        service = InvoiceService(db_session)
        invoice = service.create_invoice(InvoiceCreate(**invoice_payload(budget_line.id, amount="120")), writer_auth)

        updated = service.update_invoice(invoice.id, InvoiceUpdate(invoice_date=date(2025, 1, 10)), writer_auth)

        assert updated.invoice_year == 2025
        assert yearly_totals(db_session, budget_line.id, 2024) == (ZERO, ZERO)
        assert yearly_totals(db_session, budget_line.id, 2025) == (ZERO, Decimal("120"))
        assert line_totals(db_session, budget_line.id)[1] == Decimal("120")

    def test_non_ledger_update_keeps_aggregates(self, db_session, budget_line, writer_auth, invoice_payload):
        service = InvoiceService(db_session)
        invoice = service.create_invoice(InvoiceCreate(**invoice_payload(budget_line.id, amount="80")), writer_auth)

        service.update_invoice(invoice.id, InvoiceUpdate(comment="Vérifiée", pointed=True), writer_auth)
        assert line_totals(db_session, budget_line.id)[1] == Decimal("80")

    def test_invoice_does_not_inherit_contract_line(self, db_session, budget_line, writer_auth, contract_payload, invoice_payload):
        contract = ContractService(db_session).create_contract(
            ContractCreate(**contract_payload(budget_line.id)), writer_auth
        )
        invoice = InvoiceService(db_session).create_invoice(
            InvoiceCreate(**invoice_payload(None, contract_id=contract.id)), writer_auth
        )

        assert invoice.budget_line_id is None
        assert line_totals(db_session, budget_line.id) == (Decimal("1000"), ZERO)

    def test_failure_during_reassignment_rolls_back_everything(self, db_session, make_line, writer_auth,
                                                              invoice_payload, monkeypatch):
        """La línea antigua ya se decrementó cuando falla el incremento de la nueva"""
        line_a = make_line("Ligne A")
        line_b = make_line("Ligne B")
        service = InvoiceService(db_session)
        invoice = service.create_invoice(InvoiceCreate(**invoice_payload(line_a.id, amount="300")), writer_auth)

        original = LedgerRepository.increment_invoiced
        calls = []

        def fail_on_second_call(self, *args, **kwargs):
            calls.append(args)
            if len(calls) == 2:
                raise RuntimeError("conexión perdida")
            return original(self, *args, **kwargs)

        monkeypatch.setattr(LedgerRepository, "increment_invoiced", fail_on_second_call)

        with pytest.raises(StorageError):
            service.update_invoice(invoice.id, InvoiceUpdate(budget_line_id=line_b.id), writer_auth)

        assert len(calls) == 2
        assert line_totals(db_session, line_a.id) == (ZERO, Decimal("300"))
        assert line_totals(db_session, line_b.id) == (ZERO, ZERO)
        assert yearly_totals(db_session, line_a.id, 2024) == (ZERO, Decimal("300"))
        assert yearly_totals(db_session, line_b.id, 2024) == (ZERO, ZERO)
        assert db_session.get(Invoice, invoice.id).budget_line_id == line_a.id
        assert db_session.query(AuditLog).filter(
            AuditLog.entity_id == invoice.id, AuditLog.action == "UPDATE"
        ).count() == 0


# ===== CAMPOS CONTABLES PROTEGIDOS =====

class TestLedgerFieldGuard:

    def test_direct_invoice_amount_write_rejected(self, db_session, budget_line, writer_auth, invoice_payload):
        invoice = InvoiceService(db_session).create_invoice(
            InvoiceCreate(**invoice_payload(budget_line.id, amount="100")), writer_auth
        )

        invoice.amount = Decimal("999")
        with pytest.raises(LedgerFieldError):
            db_session.commit()
        db_session.rollback()

        assert Decimal(db_session.get(Invoice, invoice.id).amount) == Decimal("100")
        assert LedgerReconciler(db_session, writer_auth).check() == []

    @pytest.mark.parametrize("field_name, value", [
        ("is_credit", True),
        ("invoice_date", date(2025, 6, 1)),
        ("budget_line_id", None),
    ])
    def test_other_invoice_ledger_fields_rejected(self, db_session, budget_line, writer_auth, invoice_payload,
                                                  field_name, value):
        invoice = InvoiceService(db_session).create_invoice(
            InvoiceCreate(**invoice_payload(budget_line.id)), writer_auth
        )

        setattr(invoice, field_name, value)
        with pytest.raises(LedgerFieldError):
            db_session.flush()
        db_session.rollback()

    def test_direct_contract_writes_rejected(self, db_session, budget_line, writer_auth, contract_payload):
        contract = ContractService(db_session).create_contract(
            ContractCreate(**contract_payload(
                budget_line.id, amount="1000",
                yearly_amounts=[{"year": 2024, "amount": "600"}, {"year": 2025, "amount": "400"}]
            )), writer_auth
        )
        contract = db_session.get(Contract, contract.id)

        contract.start_date = date(2025, 1, 1)
        with pytest.raises(LedgerFieldError):
            db_session.flush()
        db_session.rollback()

        contract = db_session.get(Contract, contract.id)
        contract.yearly_amounts.clear()
        with pytest.raises(LedgerFieldError):
            db_session.flush()
        db_session.rollback()

        assert LedgerReconciler(db_session, writer_auth).check() == []

    def test_direct_delete_rejected(self, db_session, budget_line, writer_auth, invoice_payload):
        invoice = InvoiceService(db_session).create_invoice(
            InvoiceCreate(**invoice_payload(budget_line.id)), writer_auth
        )

        db_session.delete(invoice)
        with pytest.raises(LedgerFieldError):
            db_session.flush()
        db_session.rollback()
        assert db_session.get(Invoice, invoice.id) is not None

    def test_non_ledger_fields_stay_writable(self, db_session, budget_line, writer_auth, invoice_payload):
        invoice = InvoiceService(db_session).create_invoice(
            InvoiceCreate(**invoice_payload(budget_line.id)), writer_auth
        )

        invoice.comment = "Contrôlée"
        invoice.pointed = True
        db_session.commit()
        assert db_session.get(Invoice, invoice.id).pointed is True


# ===== BORRADO BLOQUEADO =====

class TestDeleteBlocked:

    def test_contract_with_invoices_cannot_be_deleted(self, db_session, budget_line, writer_auth, contract_payload, invoice_payload):
        contract = ContractService(db_session).create_contract(
            ContractCreate(**contract_payload(budget_line.id)), writer_auth
        )
        InvoiceService(db_session).create_invoice(
            InvoiceCreate(**invoice_payload(budget_line.id, contract_id=contract.id)), writer_auth
        )
        before = line_totals(db_session, budget_line.id)

        with pytest.raises(ConflictError) as exc:
            ContractService(db_session).delete_contract(contract.id, writer_auth)

        assert "1 factura" in exc.value.detail
        assert line_totals(db_session, budget_line.id) == before
        assert db_session.query(Contract).filter(Contract.id == contract.id).count() == 1


# ===== INVARIANTE Y ESCENARIOS =====

class TestLedgerScenarios:

    def test_invariant_holds_after_each_mutation(self, db_session, make_line, writer_auth, contract_payload, invoice_payload):
        line_a = make_line("Ligne A")
        line_b = make_line("Ligne B")
        contracts = ContractService(db_session)
        invoices = InvoiceService(db_session)
        reconciler = LedgerReconciler(db_session, writer_auth)

        steps = []
        c1 = contracts.create_contract(ContractCreate(**contract_payload(line_a.id, amount="900")), writer_auth)
        steps.append(reconciler.check())
        c2 = contracts.create_contract(ContractCreate(**contract_payload(line_b.id, amount="150")), writer_auth)
        steps.append(reconciler.check())
        i1 = invoices.create_invoice(InvoiceCreate(**invoice_payload(line_a.id, amount="330", contract_id=c1.id)), writer_auth)
        steps.append(reconciler.check())
        invoices.create_invoice(InvoiceCreate(**invoice_payload(line_a.id, amount="30", is_credit=True)), writer_auth)
        steps.append(reconciler.check())
        contracts.update_contract(c2.id, ContractUpdate(budget_line_id=line_a.id, amount=Decimal("175")), writer_auth)
        steps.append(reconciler.check())
        invoices.update_invoice(i1.id, InvoiceUpdate(budget_line_id=line_b.id, invoice_date=date(2025, 2, 1)), writer_auth)
        steps.append(reconciler.check())
        invoices.delete_invoice(i1.id, writer_auth)
        steps.append(reconciler.check())
        contracts.delete_contract(c1.id, writer_auth)
        steps.append(reconciler.check())

        assert steps == [[]] * len(steps)
        assert line_totals(db_session, line_a.id) == (Decimal("175"), Decimal("-30"))
        assert line_totals(db_session, line_b.id) == (ZERO, ZERO)

    def test_end_to_end(self, db_session, writer_auth, make_line, contract_payload, invoice_payload):
        line = make_line("Hébergement")
        assert line_totals(db_session, line.id) == (ZERO, ZERO)

        contracts = ContractService(db_session)
        invoices = InvoiceService(db_session)

        c1 = contracts.create_contract(ContractCreate(**contract_payload(line.id, amount="1000")), writer_auth)
        assert line_totals(db_session, line.id) == (Decimal("1000"), ZERO)

        i1 = invoices.create_invoice(
            InvoiceCreate(**invoice_payload(line.id, amount="300", contract_id=c1.id)), writer_auth
        )
        assert line_totals(db_session, line.id)[1] == Decimal("300")

        invoices.update_invoice(i1.id, InvoiceUpdate(amount=Decimal("300"), is_credit=True), writer_auth)
        assert line_totals(db_session, line.id)[1] == Decimal("-300")

        with pytest.raises(ConflictError):
            contracts.delete_contract(c1.id, writer_auth)

        invoices.delete_invoice(i1.id, writer_auth)
        assert line_totals(db_session, line.id)[1] == ZERO

        contracts.delete_contract(c1.id, writer_auth)
        assert line_totals(db_session, line.id) == (ZERO, ZERO)

    @pytest.mark.parametrize("workers, amount, expected", [(2, "50", "100"), (10, "10", "100")])
    def test_concurrent_invoice_creation(self, db_session, session_factory, budget_line, writer_auth,
                                         invoice_payload, workers, amount, expected):
        """Transacciones independientes sobre la misma línea: ningún incremento se pierde"""
        line_id = budget_line.id
        db_session.commit()

        barrier = threading.Barrier(workers)
        errors = []

        def create():
            session = session_factory()
            try:
                barrier.wait()
                InvoiceService(session).create_invoice(
                    InvoiceCreate(**invoice_payload(line_id, amount=amount)), writer_auth
                )
            except Exception as e:
                errors.append(e)
            finally:
                session.close()

        threads = [threading.Thread(target=create) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert errors == []
        assert line_totals(db_session, line_id)[1] == Decimal(expected)
        assert db_session.query(Invoice).filter(Invoice.budget_line_id == line_id).count() == workers


# ===== RECONCILIACIÓN =====

class TestLedgerReconciler:

    def _corrupt(self, db_session, line_id):
        db_session.execute(update(BudgetLine).where(BudgetLine.id == line_id).values(engaged=Decimal("999")))
        db_session.execute(
            update(YearlyBudget).where(YearlyBudget.budget_line_id == line_id, YearlyBudget.year == 2024)
            .values(invoiced=Decimal("1"))
        )
        db_session.commit()

    def test_check_detects_drift(self, db_session, budget_line, writer_auth, contract_payload):
        ContractService(db_session).create_contract(
            ContractCreate(**contract_payload(budget_line.id, amount="400")), writer_auth
        )
        assert LedgerReconciler(db_session, writer_auth).check() == []

        self._corrupt(db_session, budget_line.id)
        discrepancies = LedgerReconciler(db_session, writer_auth).check()

        found = {(d.year, d.field): d for d in discrepancies}
        assert set(found) == {(None, "engaged"), (2024, "invoiced")}
        assert found[(None, "engaged")].difference == Decimal("-599")

    def test_rebuild_restores_and_audits(self, db_session, budget_line, admin_auth, writer_auth, contract_payload):
        ContractService(db_session).create_contract(
            ContractCreate(**contract_payload(budget_line.id, amount="400")), writer_auth
        )
        self._corrupt(db_session, budget_line.id)

        corrected = LedgerReconciler(db_session, admin_auth).rebuild()

        assert len(corrected) == 2
        assert line_totals(db_session, budget_line.id) == (Decimal("400"), ZERO)
        assert yearly_totals(db_session, budget_line.id, 2024) == (Decimal("400"), ZERO)
        assert LedgerReconciler(db_session, admin_auth).check() == []

        entry = db_session.query(AuditLog).filter(
            AuditLog.entity == "BudgetLine",
            AuditLog.entity_id == budget_line.id,
            AuditLog.user_id == admin_auth.user_id
        ).one()
        assert len(entry.changes["reconciliation"]) == 2

    def test_rebuild_on_consistent_ledger_is_noop(self, db_session, budget_line, admin_auth):
        assert LedgerReconciler(db_session, admin_auth).rebuild() == []

    def test_rebuild_requires_admin(self, db_session, budget_line, writer_auth):
        with pytest.raises(ForbiddenError):
            LedgerReconciler(db_session, writer_auth).rebuild()


class TestLedgerAPI:

    def test_check_and_recalculate(self, client, auth_headers):
        admin = auth_headers("admin")
        response = client.post("/budget-lines/", json={"label": "API", "budget": "100"}, headers=admin)
        assert response.status_code == 201

        check = client.get("/admin/ledger/check", headers=admin)
        assert check.status_code == 200
        assert check.json() == {"consistent": True, "discrepancies": []}

        rebuild = client.post("/admin/ledger/recalculate", headers=admin)
        assert rebuild.status_code == 200
        assert rebuild.json()["corrected"] == 0

    def test_requires_admin(self, client, auth_headers):
        assert client.get("/admin/ledger/check", headers=auth_headers("user")).status_code == 403
