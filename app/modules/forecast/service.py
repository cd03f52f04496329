"""
Servicios del presupuesto previsional

- ForecastService: CRUD de líneas y gastos previstos, resumen previsto / realizado
- ForecastLinker (PIVOT): vínculo factura / orden de compra → gasto previsto

Vincular o desvincular nunca modifica engaged / invoiced.
"""

from fastapi import HTTPException
from sqlalchemy.orm import Session
from sqlalchemy import func
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, List, Optional, Union
from uuid import UUID
import logging

from app.common.exceptions import ConflictError, NotFoundError, ValidationError, StorageError
from app.modules.audit.models import AuditAction
from app.modules.audit.service import AuditRecorder, snapshot, diff
from app.modules.auth.schemas import AuthContext
from app.modules.auth.utils import require_writer, tenant_of
from app.modules.forecast.models import ForecastBudgetLine, ForecastExpense
from app.modules.forecast.schemas import (
    ForecastBudgetLineCreate, ForecastBudgetLineUpdate, ForecastBudgetLineList,
    ForecastExpenseCreate, ForecastExpenseUpdate, ForecastExpenseList,
    ForecastVariance, ForecastLineSummary
)
from app.modules.invoices.models import Invoice
from app.modules.purchase_orders.models import PurchaseOrder

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CENT = Decimal("0.01")

FORECAST_LINE_AUDIT_FIELDS = ("label", "description", "nature", "year", "budget", "type_id", "domain_id")
FORECAST_EXPENSE_AUDIT_FIELDS = ("forecast_budget_line_id", "label", "description", "amount", "year")


class LinkedDocument(str, Enum):
    INVOICE = "Invoice"
    PURCHASE_ORDER = "PurchaseOrder"


_DOCUMENT_MODELS = {
    LinkedDocument.INVOICE: Invoice,
    LinkedDocument.PURCHASE_ORDER: PurchaseOrder,
}


def compute_variance(planned: Decimal, realized: Decimal):
    """(variance, variance_percent); el porcentaje es None si no hay nada previsto"""
    variance = (realized - planned).quantize(CENT)
    if planned == 0:
        return variance, None
    percent = (variance / planned * 100).quantize(CENT, rounding=ROUND_HALF_UP)
    return variance, percent


class ForecastLinker:
    """Vínculos PIVOT y disponibilidad de gastos previstos"""

    def __init__(self, db: Session):
        self.db = db
        self.audit = AuditRecorder(db)

    def _available_filter(self, exclude_invoice_id: Optional[UUID]):
        """
        Disponible = ninguna factura vinculada salvo, como mucho, la que se está
        editando. Las órdenes de compra vinculadas no consumen el gasto.
        """
        if exclude_invoice_id is None:
            return ~ForecastExpense.linked_invoices.any()
        return ~ForecastExpense.linked_invoices.any(Invoice.id != exclude_invoice_id)

    def list_available_forecast_expenses(
        self,
        tenant_id: UUID,
        year: int,
        exclude_invoice_id: Optional[UUID] = None,
        exclude_purchase_order_id: Optional[UUID] = None
    ) -> List[ForecastExpense]:
        """
        Gastos previstos del año que se pueden vincular.

        La disponibilidad se evalúa siempre sobre las facturas vinculadas.
        `exclude_purchase_order_id` identifica al formulario de orden de compra
        que pregunta: como una orden nunca es factura, no libera ningún gasto.
        Siempre se calcula al momento, sin caché.
        """
        if exclude_invoice_id and exclude_purchase_order_id:
            raise ValidationError(
                "exclude_invoice_id y exclude_purchase_order_id son excluyentes",
                fields=["exclude_invoice_id", "exclude_purchase_order_id"]
            )

        return self.db.query(ForecastExpense).filter(
            ForecastExpense.tenant_id == tenant_id,
            ForecastExpense.year == year,
            self._available_filter(exclude_invoice_id)
        ).order_by(ForecastExpense.label).all()

    def attach(self, kind: LinkedDocument, document, forecast_expense_id: Optional[UUID], auth: AuthContext) -> bool:
        """
        Asigna (o limpia) el vínculo de un documento ya cargado, sin commit.
        Devuelve False si no había nada que cambiar.
        """
        previous = document.linked_forecast_expense_id
        if previous == forecast_expense_id:
            return False

        if forecast_expense_id is not None:
            # Bloqueo del gasto: dos vínculos simultáneos no pueden verlo libre a la vez
            expense = self.db.query(ForecastExpense).filter(
                ForecastExpense.id == forecast_expense_id,
                ForecastExpense.tenant_id == document.tenant_id
            ).with_for_update().first()
            if not expense:
                raise NotFoundError("Gasto previsto no encontrado")

            self.db.flush()
            exclude_invoice_id = document.id if kind == LinkedDocument.INVOICE else None
            available = self.db.query(ForecastExpense.id).filter(
                ForecastExpense.id == expense.id,
                self._available_filter(exclude_invoice_id)
            ).first()
            if not available:
                raise ConflictError("El gasto previsto ya está vinculado a otro documento")

        document.linked_forecast_expense_id = forecast_expense_id
        self.db.flush()
        self.audit.record(
            auth.user_id, AuditAction.UPDATE, kind.value, document.id,
            {"linked_forecast_expense_id": {"before": previous, "after": forecast_expense_id}},
            document.tenant_id
        )
        logger.info(f"{kind.value} {document.id}: vínculo previsional {previous} -> {forecast_expense_id}")
        return True

    def link_forecast(
        self,
        kind: LinkedDocument,
        document_id: UUID,
        forecast_expense_id: Optional[UUID],
        auth: AuthContext
    ) -> Union[Invoice, PurchaseOrder]:
        """Vincula (o desvincula con None). Repetir el mismo vínculo no es un error."""
        require_writer(auth)
        tenant_id = tenant_of(auth)
        try:
            document = self._get_document(kind, document_id, tenant_id)
            self.attach(kind, document, forecast_expense_id, auth)
            self.db.commit()
            self.db.refresh(document)
            return document

        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            logger.exception(f"Error vinculando {kind.value} {document_id}")
            self.db.rollback()
            raise StorageError()

    def unlink(self, kind: LinkedDocument, document_id: UUID, auth: AuthContext) -> Union[Invoice, PurchaseOrder]:
        """Idempotente: desvincular un documento sin vínculo no hace nada"""
        return self.link_forecast(kind, document_id, None, auth)

    def variance(self, forecast_expense_id: UUID, tenant_id: UUID) -> ForecastVariance:
        expense = self.db.query(ForecastExpense).filter(
            ForecastExpense.id == forecast_expense_id,
            ForecastExpense.tenant_id == tenant_id
        ).first()
        if not expense:
            raise NotFoundError("Gasto previsto no encontrado")
        return self.variances_for([expense])[expense.id]

    def variances_for(self, expenses: List[ForecastExpense]) -> Dict[UUID, ForecastVariance]:
        ids = [e.id for e in expenses]
        if not ids:
            return {}

        invoice_rows = self.db.query(
            Invoice.linked_forecast_expense_id,
            func.coalesce(func.sum(Invoice.amount), 0),
            func.count(Invoice.id)
        ).filter(Invoice.linked_forecast_expense_id.in_(ids)).group_by(Invoice.linked_forecast_expense_id).all()
        realized = {row[0]: (Decimal(row[1]), row[2]) for row in invoice_rows}

        po_rows = self.db.query(
            PurchaseOrder.linked_forecast_expense_id,
            func.count(PurchaseOrder.id)
        ).filter(PurchaseOrder.linked_forecast_expense_id.in_(ids)).group_by(
            PurchaseOrder.linked_forecast_expense_id
        ).all()
        orders = dict(po_rows)

        result = {}
        for expense in expenses:
            planned = Decimal(expense.amount)
            realized_amount, invoice_count = realized.get(expense.id, (ZERO, 0))
            variance, percent = compute_variance(planned, realized_amount)
            result[expense.id] = ForecastVariance(
                forecast_expense_id=expense.id,
                label=expense.label,
                planned=planned.quantize(CENT),
                realized=realized_amount.quantize(CENT),
                variance=variance,
                variance_percent=percent,
                linked_invoices=invoice_count,
                linked_purchase_orders=orders.get(expense.id, 0)
            )
        return result

    def _get_document(self, kind: LinkedDocument, document_id: UUID, tenant_id: UUID):
        model = _DOCUMENT_MODELS[kind]
        document = self.db.query(model).filter(
            model.id == document_id,
            model.tenant_id == tenant_id
        ).with_for_update().first()
        if not document:
            raise NotFoundError("Factura no encontrada" if kind == LinkedDocument.INVOICE else "Orden de compra no encontrada")
        return document


class ForecastService:
    """CRUD del presupuesto previsional"""

    def __init__(self, db: Session):
        self.db = db
        self.audit = AuditRecorder(db)

    # ===== LÍNEAS =====

    def get_forecast_line_by_id(self, line_id: UUID, tenant_id: UUID) -> ForecastBudgetLine:
        line = self.db.query(ForecastBudgetLine).filter(
            ForecastBudgetLine.id == line_id,
            ForecastBudgetLine.tenant_id == tenant_id
        ).first()
        if not line:
            raise NotFoundError("Línea previsional no encontrada")
        return line

    def get_forecast_lines(
        self,
        tenant_id: UUID,
        year: Optional[int] = None,
        nature: Optional[str] = None,
        limit: int = 20,
        offset: int = 0
    ) -> ForecastBudgetLineList:
        query = self.db.query(ForecastBudgetLine).filter(ForecastBudgetLine.tenant_id == tenant_id)
        if year:
            query = query.filter(ForecastBudgetLine.year == year)
        if nature:
            query = query.filter(ForecastBudgetLine.nature == nature)

        total = query.count()
        lines = query.order_by(ForecastBudgetLine.year.desc(), ForecastBudgetLine.label).offset(offset).limit(limit).all()
        return ForecastBudgetLineList(items=lines, total=total, limit=limit, offset=offset)

    def create_forecast_line(self, data: ForecastBudgetLineCreate, auth: AuthContext) -> ForecastBudgetLine:
        require_writer(auth)
        tenant_id = tenant_of(auth)
        try:
            values = data.model_dump()
            values["nature"] = data.nature.value
            line = ForecastBudgetLine(**values, tenant_id=tenant_id)
            self.db.add(line)
            self.db.flush()

            self.audit.record(
                auth.user_id, AuditAction.CREATE, "ForecastBudgetLine", line.id,
                {"after": snapshot(line, FORECAST_LINE_AUDIT_FIELDS)}, tenant_id
            )
            self.db.commit()
            self.db.refresh(line)
            return line

        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            logger.exception("Error creando línea previsional")
            self.db.rollback()
            raise StorageError()

    def update_forecast_line(self, line_id: UUID, data: ForecastBudgetLineUpdate, auth: AuthContext) -> ForecastBudgetLine:
        require_writer(auth)
        tenant_id = tenant_of(auth)
        try:
            line = self.get_forecast_line_by_id(line_id, tenant_id)
            before = snapshot(line, FORECAST_LINE_AUDIT_FIELDS)

            update_data = data.model_dump(exclude_unset=True)
            if update_data.get("nature") is not None:
                update_data["nature"] = update_data["nature"].value
            for field, value in update_data.items():
                setattr(line, field, value)
            self.db.flush()

            changes = diff(before, snapshot(line, FORECAST_LINE_AUDIT_FIELDS))
            if changes:
                self.audit.record(auth.user_id, AuditAction.UPDATE, "ForecastBudgetLine", line.id, changes, tenant_id)
            self.db.commit()
            self.db.refresh(line)
            return line

        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            logger.exception(f"Error actualizando línea previsional {line_id}")
            self.db.rollback()
            raise StorageError()

    def delete_forecast_line(self, line_id: UUID, auth: AuthContext) -> None:
        """Borra la línea y sus gastos; los documentos vinculados quedan sin vínculo"""
        require_writer(auth)
        tenant_id = tenant_of(auth)
        try:
            line = self.get_forecast_line_by_id(line_id, tenant_id)
            for expense in list(line.expenses):
                self._release_documents(expense, auth)
            self.audit.record(
                auth.user_id, AuditAction.DELETE, "ForecastBudgetLine", line.id,
                {"before": snapshot(line, FORECAST_LINE_AUDIT_FIELDS)}, tenant_id
            )
            self.db.delete(line)
            self.db.commit()

        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            logger.exception(f"Error eliminando línea previsional {line_id}")
            self.db.rollback()
            raise StorageError()

    def get_line_summary(self, line_id: UUID, tenant_id: UUID) -> ForecastLineSummary:
        """Previsto vs realizado de todos los gastos de una línea"""
        line = self.get_forecast_line_by_id(line_id, tenant_id)
        variances = ForecastLinker(self.db).variances_for(list(line.expenses))

        planned = sum((v.planned for v in variances.values()), ZERO)
        realized = sum((v.realized for v in variances.values()), ZERO)
        return ForecastLineSummary(
            forecast_budget_line_id=line.id,
            label=line.label,
            year=line.year,
            budget=line.budget,
            planned=planned,
            realized=realized,
            variance=(realized - planned).quantize(CENT),
            expenses=[variances[e.id] for e in line.expenses]
        )

    # ===== GASTOS =====

    def get_expense_by_id(self, expense_id: UUID, tenant_id: UUID) -> ForecastExpense:
        expense = self.db.query(ForecastExpense).filter(
            ForecastExpense.id == expense_id,
            ForecastExpense.tenant_id == tenant_id
        ).first()
        if not expense:
            raise NotFoundError("Gasto previsto no encontrado")
        return expense

    def get_expenses(
        self,
        tenant_id: UUID,
        year: Optional[int] = None,
        forecast_budget_line_id: Optional[UUID] = None,
        limit: int = 20,
        offset: int = 0
    ) -> ForecastExpenseList:
        query = self.db.query(ForecastExpense).filter(ForecastExpense.tenant_id == tenant_id)
        if year:
            query = query.filter(ForecastExpense.year == year)
        if forecast_budget_line_id:
            query = query.filter(ForecastExpense.forecast_budget_line_id == forecast_budget_line_id)

        total = query.count()
        expenses = query.order_by(ForecastExpense.label).offset(offset).limit(limit).all()
        return ForecastExpenseList(items=expenses, total=total, limit=limit, offset=offset)

    def create_expense(self, data: ForecastExpenseCreate, auth: AuthContext) -> ForecastExpense:
        require_writer(auth)
        tenant_id = tenant_of(auth)
        try:
            line = self.get_forecast_line_by_id(data.forecast_budget_line_id, tenant_id)
            expense = ForecastExpense(
                forecast_budget_line_id=line.id,
                label=data.label,
                description=data.description,
                amount=data.amount,
                year=data.year or line.year,
                tenant_id=tenant_id
            )
            self.db.add(expense)
            self.db.flush()

            self.audit.record(
                auth.user_id, AuditAction.CREATE, "ForecastExpense", expense.id,
                {"after": snapshot(expense, FORECAST_EXPENSE_AUDIT_FIELDS)}, tenant_id
            )
            self.db.commit()
            self.db.refresh(expense)
            return expense

        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            logger.exception("Error creando gasto previsto")
            self.db.rollback()
            raise StorageError()

    def update_expense(self, expense_id: UUID, data: ForecastExpenseUpdate, auth: AuthContext) -> ForecastExpense:
        require_writer(auth)
        tenant_id = tenant_of(auth)
        try:
            expense = self.get_expense_by_id(expense_id, tenant_id)
            before = snapshot(expense, FORECAST_EXPENSE_AUDIT_FIELDS)
            for field, value in data.model_dump(exclude_unset=True).items():
                setattr(expense, field, value)
            self.db.flush()

            changes = diff(before, snapshot(expense, FORECAST_EXPENSE_AUDIT_FIELDS))
            if changes:
                self.audit.record(auth.user_id, AuditAction.UPDATE, "ForecastExpense", expense.id, changes, tenant_id)
            self.db.commit()
            self.db.refresh(expense)
            return expense

        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            logger.exception(f"Error actualizando gasto previsto {expense_id}")
            self.db.rollback()
            raise StorageError()

    def delete_expense(self, expense_id: UUID, auth: AuthContext) -> None:
        require_writer(auth)
        tenant_id = tenant_of(auth)
        try:
            expense = self.get_expense_by_id(expense_id, tenant_id)
            self._release_documents(expense, auth)
            self.audit.record(
                auth.user_id, AuditAction.DELETE, "ForecastExpense", expense.id,
                {"before": snapshot(expense, FORECAST_EXPENSE_AUDIT_FIELDS)}, tenant_id
            )
            self.db.delete(expense)
            self.db.commit()

        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            logger.exception(f"Error eliminando gasto previsto {expense_id}")
            self.db.rollback()
            raise StorageError()

    def _release_documents(self, expense: ForecastExpense, auth: AuthContext) -> None:
        linker = ForecastLinker(self.db)
        for invoice in list(expense.linked_invoices):
            linker.attach(LinkedDocument.INVOICE, invoice, None, auth)
        for order in list(expense.linked_purchase_orders):
            linker.attach(LinkedDocument.PURCHASE_ORDER, order, None, auth)
        self.db.expire(expense, ["linked_invoices", "linked_purchase_orders"])
