"""
Servicios de negocio para el módulo de Contratos

Los campos con efecto contable (importe, línea, fecha de inicio, reparto
anual) se delegan al LedgerMutator; el resto se asigna aquí. Documento,
ledger y auditoría se confirman en un único commit.
"""

from fastapi import HTTPException
from sqlalchemy.orm import Session, selectinload
from sqlalchemy import func, or_
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID
import logging

from app.common.exceptions import NotFoundError, ValidationError, StorageError, ForbiddenError
from app.modules.audit.models import AuditAction
from app.modules.audit.service import AuditRecorder, snapshot, diff
from app.modules.auth.schemas import AuthContext
from app.modules.auth.utils import require_writer, tenant_of
from app.modules.contracts.models import Contract
from app.modules.contracts.schemas import (
    ContractCreate, ContractUpdate, ContractOut, ContractList, ImportResult, ImportRowError
)
from app.modules.contracts.status import (
    ContractStatus, derive_contract_status, days_remaining, is_critical, end_date_range
)
from app.modules.invoices.models import Invoice
from app.modules.ledger.mutator import LedgerMutator, CONTRACT_LEDGER_FIELDS

logger = logging.getLogger(__name__)

CONTRACT_AUDIT_FIELDS = (
    "number", "label", "vendor", "provider_name", "start_date", "end_date", "amount",
    "description", "accounting_code", "type_id", "domain_id", "budget_line_id"
)


def contract_snapshot(contract: Contract) -> Dict:
    data = snapshot(contract, CONTRACT_AUDIT_FIELDS)
    data["yearly_amounts"] = [
        {"year": split.year, "amount": str(split.amount)} for split in contract.yearly_amounts
    ]
    return data


class ContractService:
    """Servicio principal de contratos"""

    def __init__(self, db: Session):
        self.db = db
        self.audit = AuditRecorder(db)

    # ===== LECTURA =====

    def get_contract_by_id(self, contract_id: UUID, tenant_id: UUID) -> Contract:
        contract = self.db.query(Contract).options(selectinload(Contract.yearly_amounts)).filter(
            Contract.id == contract_id,
            Contract.tenant_id == tenant_id
        ).first()
        if not contract:
            raise NotFoundError("Contrato no encontrado")
        return contract

    def get_contract(self, contract_id: UUID, tenant_id: UUID, today: Optional[date] = None) -> ContractOut:
        contract = self.get_contract_by_id(contract_id, tenant_id)
        return self._to_out(contract, self._invoiced_totals([contract.id]), today)

    def get_contracts(
        self,
        tenant_id: UUID,
        status: Optional[ContractStatus] = None,
        vendor: Optional[str] = None,
        budget_line_id: Optional[UUID] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
        today: Optional[date] = None
    ) -> ContractList:
        """Listar contratos; el filtro por estado se traduce a un rango de end_date"""
        query = self.db.query(Contract).filter(Contract.tenant_id == tenant_id)

        if status:
            date_from, date_to = end_date_range(status, today)
            if date_from:
                query = query.filter(Contract.end_date >= date_from)
            if date_to:
                query = query.filter(Contract.end_date <= date_to)
        if vendor:
            query = query.filter(Contract.vendor.ilike(f"%{vendor}%"))
        if budget_line_id:
            query = query.filter(Contract.budget_line_id == budget_line_id)
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(
                Contract.number.ilike(pattern),
                Contract.label.ilike(pattern),
                Contract.vendor.ilike(pattern)
            ))

        total = query.count()
        contracts = query.options(selectinload(Contract.yearly_amounts)).order_by(
            Contract.end_date
        ).offset(offset).limit(limit).all()

        totals = self._invoiced_totals([c.id for c in contracts])
        items = [self._to_out(contract, totals, today) for contract in contracts]
        return ContractList(items=items, total=total, limit=limit, offset=offset)

    # ===== ESCRITURA =====

    def create_contract(self, data: ContractCreate, auth: AuthContext) -> ContractOut:
        require_writer(auth)
        tenant_id = tenant_of(auth)
        try:
            contract = Contract(
                number=data.number,
                label=data.label,
                vendor=data.vendor,
                provider_name=data.provider_name,
                start_date=data.start_date,
                end_date=data.end_date,
                amount=data.amount,
                description=data.description,
                accounting_code=data.accounting_code,
                type_id=data.type_id,
                domain_id=data.domain_id,
                budget_line_id=data.budget_line_id
            )
            LedgerMutator(self.db, auth).apply_contract_create(
                contract, [item.model_dump() for item in data.yearly_amounts]
            )

            self.audit.record(
                auth.user_id, AuditAction.CREATE, "Contract", contract.id,
                {"after": contract_snapshot(contract)}, tenant_id
            )
            self.db.commit()
            logger.info(f"Contrato {contract.id} creado ({contract.amount} en línea {contract.budget_line_id})")
            return self.get_contract(contract.id, tenant_id)

        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            logger.exception("Error creando contrato")
            self.db.rollback()
            raise StorageError()

    def update_contract(self, contract_id: UUID, data: ContractUpdate, auth: AuthContext) -> ContractOut:
        require_writer(auth)
        tenant_id = tenant_of(auth)
        try:
            contract = self.get_contract_by_id(contract_id, tenant_id)
            before = contract_snapshot(contract)

            update_data = data.model_dump(exclude_unset=True)
            start = update_data.get("start_date") or contract.start_date
            end = update_data.get("end_date") or contract.end_date
            if end < start:
                raise ValidationError("end_date no puede ser anterior a start_date", fields=["end_date"])
            for required in ("number", "label", "vendor", "start_date", "end_date", "amount"):
                if required in update_data and update_data[required] is None:
                    raise ValidationError(f"{required} es obligatorio", fields=[required])

            ledger_changes = {k: update_data.pop(k) for k in CONTRACT_LEDGER_FIELDS if k in update_data}
            if ledger_changes:
                contract = LedgerMutator(self.db, auth).apply_contract_change(contract.id, ledger_changes)

            for field, value in update_data.items():
                setattr(contract, field, value)
            self.db.flush()

            changes = diff(before, contract_snapshot(contract))
            if changes:
                self.audit.record(auth.user_id, AuditAction.UPDATE, "Contract", contract.id, changes, tenant_id)
            self.db.commit()
            logger.info(f"Contrato {contract_id} actualizado: {sorted(changes)}")
            return self.get_contract(contract_id, tenant_id)

        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            logger.exception(f"Error actualizando contrato {contract_id}")
            self.db.rollback()
            raise StorageError()

    def delete_contract(self, contract_id: UUID, auth: AuthContext) -> None:
        """Bloqueado mientras el contrato tenga facturas"""
        require_writer(auth, "Los lectores no pueden eliminar contratos")
        tenant_id = tenant_of(auth)
        try:
            before = contract_snapshot(self.get_contract_by_id(contract_id, tenant_id))
            LedgerMutator(self.db, auth).apply_contract_delete(contract_id)

            self.audit.record(auth.user_id, AuditAction.DELETE, "Contract", contract_id, {"before": before}, tenant_id)
            self.db.commit()
            logger.info(f"Contrato {contract_id} eliminado por {auth.user_id}")

        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            logger.exception(f"Error eliminando contrato {contract_id}")
            self.db.rollback()
            raise StorageError()

    def import_contracts(self, rows: List[ContractCreate], auth: AuthContext) -> ImportResult:
        """
        Importación por lotes: cada fila sigue el mismo camino que una creación
        interactiva, en su propia transacción. Una fila inválida no detiene el lote.
        """
        require_writer(auth)
        created: List[UUID] = []
        errors: List[ImportRowError] = []

        for index, row in enumerate(rows):
            try:
                created.append(self.create_contract(row, auth).id)
            except ForbiddenError:
                raise
            except HTTPException as e:
                errors.append(ImportRowError(row=index, detail=e.detail))

        logger.info(f"Importación de contratos: {len(created)} creados, {len(errors)} errores")
        return ImportResult(created=created, errors=errors)

    # ===== AUXILIARES =====

    def _invoiced_totals(self, contract_ids: List[UUID]) -> Dict[UUID, Decimal]:
        if not contract_ids:
            return {}
        # Suma firmada: los avoirs restan
        rows = self.db.query(
            Invoice.contract_id,
            Invoice.is_credit,
            func.coalesce(func.sum(Invoice.amount), 0)
        ).filter(Invoice.contract_id.in_(contract_ids)).group_by(Invoice.contract_id, Invoice.is_credit).all()

        totals: Dict[UUID, Decimal] = {}
        for contract_id, credit, amount in rows:
            value = Decimal(amount)
            totals[contract_id] = totals.get(contract_id, Decimal("0")) + (-value if credit else value)
        return totals

    @staticmethod
    def _to_out(contract: Contract, totals: Dict[UUID, Decimal], today: Optional[date] = None) -> ContractOut:
        out = ContractOut.model_validate(contract)
        out.status = derive_contract_status(contract.end_date, today)
        out.days_remaining = days_remaining(contract.end_date, today)
        out.is_critical = is_critical(contract.end_date, today)
        out.total_invoiced = totals.get(contract.id, Decimal("0"))
        return out
