"""
Repositorio del ledger presupuestario

Única vía de escritura de los agregados `engaged` / `invoiced` de BudgetLine
y YearlyBudget. Los cambios se aplican como UPDATE ... SET campo = campo + delta
(incremento atómico en base de datos, nunca lectura-modificación-escritura)
para no perder actualizaciones concurrentes sobre la misma línea.
"""

from decimal import Decimal
from typing import Dict, Optional
from uuid import UUID
import logging

from sqlalchemy import update, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.common.exceptions import NotFoundError
from app.modules.budget.models import BudgetLine, YearlyBudget

logger = logging.getLogger(__name__)

ENGAGED = "engaged"
INVOICED = "invoiced"
LEDGER_FIELDS = (ENGAGED, INVOICED)


class LedgerRepository:
    def __init__(self, db: Session):
        self.db = db

    def ensure_line(self, tenant_id: UUID, budget_line_id: UUID) -> None:
        """Verifica que la línea existe y pertenece al tenant"""
        exists = self.db.execute(
            select(BudgetLine.id).where(
                BudgetLine.id == budget_line_id,
                BudgetLine.tenant_id == tenant_id
            )
        ).first()
        if not exists:
            raise NotFoundError("Línea presupuestaria no encontrada")

    def increment_engaged(self, tenant_id: UUID, budget_line_id: UUID, delta: Decimal) -> None:
        self._increment_line(tenant_id, budget_line_id, ENGAGED, delta)

    def increment_invoiced(self, tenant_id: UUID, budget_line_id: UUID, delta: Decimal) -> None:
        self._increment_line(tenant_id, budget_line_id, INVOICED, delta)

    def increment_yearly_engaged(self, budget_line_id: UUID, year: int, delta: Decimal) -> None:
        self._increment_yearly(budget_line_id, year, ENGAGED, delta)

    def increment_yearly_invoiced(self, budget_line_id: UUID, year: int, delta: Decimal) -> None:
        self._increment_yearly(budget_line_id, year, INVOICED, delta)

    def set_line_totals(self, budget_line_id: UUID, engaged: Decimal, invoiced: Decimal) -> None:
        """Reescritura completa; reservada a la reconciliación"""
        self.db.execute(
            update(BudgetLine)
            .where(BudgetLine.id == budget_line_id)
            .values(engaged=engaged, invoiced=invoiced)
        )

    def set_yearly_totals(self, budget_line_id: UUID, totals: Dict[int, Dict[str, Decimal]]) -> None:
        """Reescritura de todas las filas anuales de una línea; las ausentes quedan a cero"""
        existing = {
            yb.year: yb for yb in self.db.query(YearlyBudget).filter(YearlyBudget.budget_line_id == budget_line_id)
        }
        for year in set(existing) | set(totals):
            values = totals.get(year, {})
            if year not in existing:
                self._get_or_create_yearly(budget_line_id, year)
            self.db.execute(
                update(YearlyBudget)
                .where(YearlyBudget.budget_line_id == budget_line_id, YearlyBudget.year == year)
                .values(
                    engaged=values.get(ENGAGED, Decimal("0")),
                    invoiced=values.get(INVOICED, Decimal("0"))
                )
            )

    def _increment_line(self, tenant_id: UUID, budget_line_id: UUID, field: str, delta: Decimal) -> None:
        if not delta:
            return
        column = getattr(BudgetLine, field)
        result = self.db.execute(
            update(BudgetLine)
            .where(BudgetLine.id == budget_line_id, BudgetLine.tenant_id == tenant_id)
            .values({field: column + delta})
        )
        if result.rowcount != 1:
            raise NotFoundError("Línea presupuestaria no encontrada")
        logger.debug(f"Ledger line {budget_line_id}: {field} {delta:+}")

    def _increment_yearly(self, budget_line_id: UUID, year: int, field: str, delta: Decimal) -> None:
        if not delta:
            return
        self._get_or_create_yearly(budget_line_id, year)
        column = getattr(YearlyBudget, field)
        self.db.execute(
            update(YearlyBudget)
            .where(YearlyBudget.budget_line_id == budget_line_id, YearlyBudget.year == year)
            .values({field: column + delta})
        )
        logger.debug(f"Ledger line {budget_line_id} year {year}: {field} {delta:+}")

    def _get_or_create_yearly(self, budget_line_id: UUID, year: int) -> Optional[UUID]:
        row = self.db.execute(
            select(YearlyBudget.id).where(
                YearlyBudget.budget_line_id == budget_line_id,
                YearlyBudget.year == year
            )
        ).first()
        if row:
            return row[0]
        # Año sin fila: se crea con budget 0 (otra transacción puede crearla a la vez)
        try:
            with self.db.begin_nested():
                yearly = YearlyBudget(budget_line_id=budget_line_id, year=year, budget=0, engaged=0, invoiced=0)
                self.db.add(yearly)
            return yearly.id
        except IntegrityError:
            logger.info(f"YearlyBudget {budget_line_id}/{year} creado concurrentemente")
            return None
