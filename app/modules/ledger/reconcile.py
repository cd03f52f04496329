"""
Reconciliación del ledger

Recalcula `engaged` / `invoiced` (por línea y por año) sumando los documentos
y los compara con los valores almacenados. `rebuild()` corrige las diferencias
y deja constancia en la bitácora de auditoría.
"""

from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
from uuid import UUID
import logging

from fastapi import HTTPException
from sqlalchemy.orm import Session, selectinload

from app.common.exceptions import StorageError
from app.modules.audit.models import AuditAction
from app.modules.audit.service import AuditRecorder
from app.modules.auth.schemas import AuthContext
from app.modules.auth.utils import require_admin, tenant_of
from app.modules.budget.models import BudgetLine, YearlyBudget
from app.modules.contracts.models import Contract
from app.modules.invoices.models import Invoice
from app.modules.ledger.mutator import contract_position, invoice_position, ZERO
from app.modules.ledger.repository import LedgerRepository, ENGAGED, INVOICED

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerDiscrepancy:
    budget_line_id: UUID
    year: Optional[int]
    field: str
    stored: Decimal
    expected: Decimal

    @property
    def difference(self) -> Decimal:
        return self.expected - self.stored


class LedgerReconciler:
    def __init__(self, db: Session, auth: AuthContext):
        self.db = db
        self.auth = auth

    def _expected(self, tenant_id: UUID) -> Tuple[Dict[UUID, Dict[str, Decimal]], Dict[Tuple[UUID, int], Dict[str, Decimal]]]:
        lines: Dict[UUID, Dict[str, Decimal]] = defaultdict(lambda: {ENGAGED: ZERO, INVOICED: ZERO})
        years: Dict[Tuple[UUID, int], Dict[str, Decimal]] = defaultdict(lambda: {ENGAGED: ZERO, INVOICED: ZERO})

        contracts = self.db.query(Contract).options(selectinload(Contract.yearly_amounts)).filter(
            Contract.tenant_id == tenant_id,
            Contract.budget_line_id.isnot(None)
        )
        for contract in contracts:
            position = contract_position(contract)
            lines[position.budget_line_id][ENGAGED] += position.total
            for year, value in position.yearly.items():
                years[(position.budget_line_id, year)][ENGAGED] += value

        invoices = self.db.query(Invoice).filter(
            Invoice.tenant_id == tenant_id,
            Invoice.budget_line_id.isnot(None)
        )
        for invoice in invoices:
            position = invoice_position(invoice)
            lines[position.budget_line_id][INVOICED] += position.total
            for year, value in position.yearly.items():
                years[(position.budget_line_id, year)][INVOICED] += value

        return lines, years

    def check(self) -> List[LedgerDiscrepancy]:
        """Diferencias entre lo almacenado y lo recalculado (lista vacía = ledger consistente)"""
        tenant_id = tenant_of(self.auth)
        expected_lines, expected_years = self._expected(tenant_id)
        discrepancies: List[LedgerDiscrepancy] = []

        budget_lines = self.db.query(BudgetLine).options(selectinload(BudgetLine.yearly_budgets)).filter(
            BudgetLine.tenant_id == tenant_id
        ).order_by(BudgetLine.label).all()

        for line in budget_lines:
            expected = expected_lines.get(line.id, {ENGAGED: ZERO, INVOICED: ZERO})
            for field in (ENGAGED, INVOICED):
                stored = Decimal(getattr(line, field) or 0)
                if stored != expected[field]:
                    discrepancies.append(LedgerDiscrepancy(line.id, None, field, stored, expected[field]))

            stored_years = {yb.year: yb for yb in line.yearly_budgets}
            line_years = {year for (line_id, year) in expected_years if line_id == line.id}
            for year in sorted(set(stored_years) | line_years):
                expected_year = expected_years.get((line.id, year), {ENGAGED: ZERO, INVOICED: ZERO})
                yearly = stored_years.get(year)
                for field in (ENGAGED, INVOICED):
                    stored = Decimal(getattr(yearly, field) or 0) if yearly else ZERO
                    if stored != expected_year[field]:
                        discrepancies.append(LedgerDiscrepancy(line.id, year, field, stored, expected_year[field]))

        if discrepancies:
            logger.warning(f"Ledger de tenant {tenant_id}: {len(discrepancies)} diferencias detectadas")
        return discrepancies

    def rebuild(self) -> List[LedgerDiscrepancy]:
        """Reescribe los agregados desde los documentos; devuelve lo corregido"""
        require_admin(self.auth, "Solo los administradores pueden recalcular el ledger")
        tenant_id = tenant_of(self.auth)

        try:
            discrepancies = self.check()
            if not discrepancies:
                return []

            expected_lines, expected_years = self._expected(tenant_id)
            repository = LedgerRepository(self.db)
            recorder = AuditRecorder(self.db)

            for line_id in sorted({d.budget_line_id for d in discrepancies}, key=str):
                totals = expected_lines.get(line_id, {ENGAGED: ZERO, INVOICED: ZERO})
                repository.set_line_totals(line_id, totals[ENGAGED], totals[INVOICED])
                repository.set_yearly_totals(line_id, {
                    year: values for (owner, year), values in expected_years.items() if owner == line_id
                })
                recorder.record(
                    actor_id=self.auth.user_id,
                    action=AuditAction.UPDATE,
                    entity_type="BudgetLine",
                    entity_id=line_id,
                    changes={
                        "reconciliation": [
                            {
                                "year": d.year,
                                "field": d.field,
                                "before": d.stored,
                                "after": d.expected,
                            }
                            for d in discrepancies if d.budget_line_id == line_id
                        ]
                    },
                    tenant_id=tenant_id
                )

            self.db.commit()
            logger.info(f"Ledger de tenant {tenant_id} recalculado: {len(discrepancies)} correcciones")
            return discrepancies

        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            logger.exception("Error recalculando el ledger")
            self.db.rollback()
            raise StorageError()
