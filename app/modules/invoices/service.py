"""
Servicios de negocio para Facturas

Importe, signo (is_credit), línea presupuestaria y fecha de factura son
campos contables: se delegan al LedgerMutator. El vínculo previsional se
delega al ForecastLinker. Documento, ledger y auditoría van en un solo commit.
"""

from fastapi import HTTPException
from sqlalchemy.orm import Session
from sqlalchemy import or_
from typing import List, Optional
from uuid import UUID
import logging

from app.common.exceptions import NotFoundError, ValidationError, StorageError, ForbiddenError
from app.modules.audit.models import AuditAction
from app.modules.audit.service import AuditRecorder, snapshot, diff
from app.modules.auth.schemas import AuthContext
from app.modules.auth.utils import require_writer, tenant_of
from app.modules.contracts.models import Contract
from app.modules.contracts.schemas import ImportResult, ImportRowError
from app.modules.forecast.service import ForecastLinker, LinkedDocument
from app.modules.invoices.models import Invoice
from app.modules.invoices.schemas import InvoiceCreate, InvoiceUpdate, InvoiceList
from app.modules.ledger.mutator import LedgerMutator, INVOICE_LEDGER_FIELDS

logger = logging.getLogger(__name__)

INVOICE_AUDIT_FIELDS = (
    "number", "vendor", "description", "amount", "amount_ht", "is_credit", "nature", "status",
    "invoice_date", "due_date", "payment_date", "accounting_code", "comment", "pointed",
    "contract_id", "budget_line_id", "type_id", "domain_id", "linked_forecast_expense_id"
)


class InvoiceService:
    """Servicio principal de facturas"""

    def __init__(self, db: Session):
        self.db = db
        self.audit = AuditRecorder(db)

    def get_invoice_by_id(self, invoice_id: UUID, tenant_id: UUID) -> Invoice:
        invoice = self.db.query(Invoice).filter(
            Invoice.id == invoice_id,
            Invoice.tenant_id == tenant_id
        ).first()
        if not invoice:
            raise NotFoundError("Factura no encontrada")
        return invoice

    def get_invoices(
        self,
        tenant_id: UUID,
        year: Optional[int] = None,
        nature: Optional[str] = None,
        status: Optional[str] = None,
        is_credit: Optional[bool] = None,
        budget_line_id: Optional[UUID] = None,
        contract_id: Optional[UUID] = None,
        vendor: Optional[str] = None,
        unpointed_only: bool = False,
        without_contract: bool = False,
        unlinked_only: bool = False,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0
    ) -> InvoiceList:
        """Listar facturas con filtros opcionales, más recientes primero"""
        query = self.db.query(Invoice).filter(Invoice.tenant_id == tenant_id)

        if year:
            query = query.filter(Invoice.invoice_year == year)
        if nature:
            query = query.filter(Invoice.nature == nature)
        if status:
            query = query.filter(Invoice.status == status)
        if is_credit is not None:
            query = query.filter(Invoice.is_credit == is_credit)
        if budget_line_id:
            query = query.filter(Invoice.budget_line_id == budget_line_id)
        if contract_id:
            query = query.filter(Invoice.contract_id == contract_id)
        if vendor:
            query = query.filter(Invoice.vendor.ilike(f"%{vendor}%"))
        if unpointed_only:
            query = query.filter(Invoice.pointed.is_(False))
        if without_contract:
            query = query.filter(Invoice.contract_id.is_(None))
        if unlinked_only:
            query = query.filter(Invoice.linked_forecast_expense_id.is_(None))
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(
                Invoice.number.ilike(pattern),
                Invoice.vendor.ilike(pattern),
                Invoice.description.ilike(pattern)
            ))

        total = query.count()
        invoices = query.order_by(Invoice.invoice_date.desc()).offset(offset).limit(limit).all()
        return InvoiceList(items=invoices, total=total, limit=limit, offset=offset)

    def create_invoice(self, data: InvoiceCreate, auth: AuthContext) -> Invoice:
        """Crear factura o avoir; aplica su importe firmado a la línea"""
        require_writer(auth, "Los lectores no pueden crear facturas")
        tenant_id = tenant_of(auth)
        try:
            self._check_contract(data.contract_id, tenant_id)
            invoice = Invoice(
                number=data.number,
                vendor=data.vendor,
                description=data.description,
                amount=data.amount,
                amount_ht=data.amount_ht,
                is_credit=data.is_credit,
                nature=data.nature.value if data.nature else None,
                status=data.status.value,
                invoice_date=data.invoice_date,
                due_date=data.due_date,
                payment_date=data.payment_date,
                accounting_code=data.accounting_code,
                comment=data.comment,
                pointed=data.pointed,
                contract_id=data.contract_id,
                budget_line_id=data.budget_line_id,
                type_id=data.type_id,
                domain_id=data.domain_id
            )
            LedgerMutator(self.db, auth).apply_invoice_create(invoice)

            self.audit.record(
                auth.user_id, AuditAction.CREATE, "Invoice", invoice.id,
                {"after": snapshot(invoice, INVOICE_AUDIT_FIELDS)}, tenant_id
            )
            if data.linked_forecast_expense_id:
                ForecastLinker(self.db).attach(LinkedDocument.INVOICE, invoice, data.linked_forecast_expense_id, auth)

            self.db.commit()
            self.db.refresh(invoice)
            logger.info(
                f"Factura {invoice.id} creada ({invoice.signed_amount} en línea {invoice.budget_line_id})"
            )
            return invoice

        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            logger.exception("Error creando factura")
            self.db.rollback()
            raise StorageError()

    def update_invoice(self, invoice_id: UUID, data: InvoiceUpdate, auth: AuthContext) -> Invoice:
        """
        Actualizar una factura.

        Importe, signo y línea pueden cambiar a la vez: el mutator revierte la
        contribución anterior y aplica la nueva.
        """
        require_writer(auth, "Los lectores no pueden modificar facturas")
        tenant_id = tenant_of(auth)
        try:
            invoice = self.get_invoice_by_id(invoice_id, tenant_id)
            before = snapshot(invoice, INVOICE_AUDIT_FIELDS)

            update_data = data.model_dump(exclude_unset=True)
            for required in ("number", "vendor", "amount", "is_credit", "invoice_date", "status", "pointed"):
                if required in update_data and update_data[required] is None:
                    raise ValidationError(f"{required} es obligatorio", fields=[required])
            if "contract_id" in update_data:
                self._check_contract(update_data["contract_id"], tenant_id)
            for enum_field in ("nature", "status"):
                if update_data.get(enum_field) is not None:
                    update_data[enum_field] = update_data[enum_field].value

            ledger_changes = {k: update_data.pop(k) for k in INVOICE_LEDGER_FIELDS if k in update_data}
            if ledger_changes:
                invoice = LedgerMutator(self.db, auth).apply_invoice_change(invoice.id, ledger_changes)

            for field, value in update_data.items():
                setattr(invoice, field, value)
            self.db.flush()

            changes = diff(before, snapshot(invoice, INVOICE_AUDIT_FIELDS))
            if changes:
                self.audit.record(auth.user_id, AuditAction.UPDATE, "Invoice", invoice.id, changes, tenant_id)
            self.db.commit()
            self.db.refresh(invoice)
            return invoice

        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            logger.exception(f"Error actualizando factura {invoice_id}")
            self.db.rollback()
            raise StorageError()

    def delete_invoice(self, invoice_id: UUID, auth: AuthContext) -> None:
        require_writer(auth, "Los lectores no pueden eliminar facturas")
        tenant_id = tenant_of(auth)
        try:
            before = snapshot(self.get_invoice_by_id(invoice_id, tenant_id), INVOICE_AUDIT_FIELDS)
            LedgerMutator(self.db, auth).apply_invoice_delete(invoice_id)

            self.audit.record(auth.user_id, AuditAction.DELETE, "Invoice", invoice_id, {"before": before}, tenant_id)
            self.db.commit()
            logger.info(f"Factura {invoice_id} eliminada por {auth.user_id}")

        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            logger.exception(f"Error eliminando factura {invoice_id}")
            self.db.rollback()
            raise StorageError()

    def link_forecast(self, invoice_id: UUID, forecast_expense_id: Optional[UUID], auth: AuthContext) -> Invoice:
        return ForecastLinker(self.db).link_forecast(LinkedDocument.INVOICE, invoice_id, forecast_expense_id, auth)

    def import_invoices(self, rows: List[InvoiceCreate], auth: AuthContext) -> ImportResult:
        """Cada fila pasa por create_invoice en su propia transacción"""
        require_writer(auth, "Los lectores no pueden importar facturas")
        created: List[UUID] = []
        errors: List[ImportRowError] = []

        for index, row in enumerate(rows):
            try:
                created.append(self.create_invoice(row, auth).id)
            except ForbiddenError:
                raise
            except HTTPException as e:
                errors.append(ImportRowError(row=index, detail=e.detail))

        logger.info(f"Importación de facturas: {len(created)} creadas, {len(errors)} errores")
        return ImportResult(created=created, errors=errors)

    def _check_contract(self, contract_id: Optional[UUID], tenant_id: UUID) -> None:
        if contract_id and not self.db.query(Contract.id).filter(
            Contract.id == contract_id,
            Contract.tenant_id == tenant_id
        ).first():
            raise NotFoundError("Contrato no encontrado")
