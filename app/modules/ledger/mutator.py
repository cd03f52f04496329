"""
LedgerMutator: servicio de dominio que mantiene `engaged` / `invoiced`

Toda creación, modificación o borrado de un Contrato o Factura que afecte
a importe, línea presupuestaria, signo (avoir) o año pasa por aquí. El
mutator calcula el delta (revertir lo antiguo, aplicar lo nuevo) y lo
aplica con el LedgerRepository dentro de la transacción del llamador.

No hace commit: el servicio que lo invoca registra la auditoría y confirma
todo en una única transacción (o revierte todo).
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from functools import wraps
from typing import Any, Dict, List, Optional
from uuid import UUID
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.common.exceptions import ConflictError, NotFoundError, ValidationError
from app.common.ledger_guard import ledger_mutation
from app.modules.auth.schemas import AuthContext
from app.modules.auth.utils import require_writer
from app.modules.contracts.models import Contract, ContractYearlyAmount
from app.modules.invoices.models import Invoice
from app.modules.ledger.repository import LedgerRepository, ENGAGED, INVOICED

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

# Campos con efecto sobre el ledger; ledger_guard rechaza cualquier otra escritura
CONTRACT_LEDGER_FIELDS = ("amount", "budget_line_id", "start_date", "yearly_amounts")
INVOICE_LEDGER_FIELDS = ("amount", "is_credit", "budget_line_id", "invoice_date")


@dataclass(frozen=True)
class LedgerPosition:
    """Contribución de un documento al ledger: línea, total y reparto anual"""
    budget_line_id: Optional[UUID]
    total: Decimal
    yearly: Dict[int, Decimal] = field(default_factory=dict)


def contract_position(contract: Contract) -> LedgerPosition:
    """Reparto anual explícito si existe; si no, todo en el año de inicio"""
    amount = Decimal(contract.amount)
    if contract.yearly_amounts:
        yearly: Dict[int, Decimal] = {}
        for split in contract.yearly_amounts:
            yearly[split.year] = yearly.get(split.year, ZERO) + Decimal(split.amount)
    else:
        yearly = {contract.start_date.year: amount}
    return LedgerPosition(contract.budget_line_id, amount, yearly)


def invoice_position(invoice: Invoice) -> LedgerPosition:
    signed = Decimal(invoice.signed_amount)
    return LedgerPosition(invoice.budget_line_id, signed, {invoice.invoice_year: signed})


def _validate_amount(amount, field_name: str = "amount") -> Decimal:
    if amount is None or Decimal(amount) <= 0:
        raise ValidationError("El importe debe ser positivo", fields=[field_name])
    return Decimal(amount)


def _validate_yearly_amounts(yearly_amounts: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    years = [item["year"] for item in yearly_amounts]
    if len(years) != len(set(years)):
        raise ValidationError("Años duplicados en el reparto anual", fields=["yearly_amounts"])
    for item in yearly_amounts:
        if item["amount"] is None or Decimal(item["amount"]) < 0:
            raise ValidationError("Los importes anuales no pueden ser negativos", fields=["yearly_amounts"])
    return yearly_amounts


def _ledger_write(method):
    """Abre la ventana en la que los listeners de ledger_guard aceptan escrituras"""
    @wraps(method)
    def wrapper(self, *args, **kwargs):
        with ledger_mutation(self.db):
            return method(self, *args, **kwargs)
    return wrapper


class LedgerMutator:
    def __init__(self, db: Session, auth: AuthContext):
        self.db = db
        self.auth = auth
        self.repository = LedgerRepository(db)

    @property
    def tenant_id(self) -> UUID:
        return self.auth.tenant_id

    # ------------------------------------------------------------------
    # Contratos
    # ------------------------------------------------------------------

    @_ledger_write
    def apply_contract_create(self, contract: Contract, yearly_amounts: Optional[List[Dict[str, Any]]] = None) -> Contract:
        """Persiste el contrato y suma su importe a `engaged` de su línea"""
        require_writer(self.auth)
        _validate_amount(contract.amount)
        if contract.start_date and contract.end_date and contract.end_date < contract.start_date:
            raise ValidationError("La fecha de fin es anterior a la de inicio", fields=["end_date"])
        if contract.budget_line_id:
            self.repository.ensure_line(self.tenant_id, contract.budget_line_id)

        contract.tenant_id = self.tenant_id
        if yearly_amounts:
            contract.yearly_amounts = [
                ContractYearlyAmount(year=item["year"], amount=item["amount"])
                for item in _validate_yearly_amounts(yearly_amounts)
            ]
        self.db.add(contract)
        self.db.flush()

        self._move(ENGAGED, None, contract_position(contract))
        return contract

    @_ledger_write
    def apply_contract_change(self, contract_id: UUID, changes: Dict[str, Any]) -> Contract:
        """
        Aplica cambios de campos con efecto contable a un contrato existente.

        `changes` solo admite claves de CONTRACT_LEDGER_FIELDS; `yearly_amounts`
        reemplaza el reparto completo (lista vacía = sin reparto).
        """
        require_writer(self.auth)
        unknown = set(changes) - set(CONTRACT_LEDGER_FIELDS)
        if unknown:
            raise ValueError(f"Campos sin efecto contable: {sorted(unknown)}")

        contract = self._get_contract(contract_id)
        old_position = contract_position(contract)

        if "amount" in changes:
            contract.amount = _validate_amount(changes["amount"])
        if "budget_line_id" in changes and changes["budget_line_id"] != contract.budget_line_id:
            if changes["budget_line_id"]:
                self.repository.ensure_line(self.tenant_id, changes["budget_line_id"])
            contract.budget_line_id = changes["budget_line_id"]
        if "start_date" in changes:
            contract.start_date = changes["start_date"]
        if "yearly_amounts" in changes:
            new_splits = _validate_yearly_amounts(changes["yearly_amounts"] or [])
            # Vaciar y hacer flush antes de insertar: (contract_id, year) es único
            contract.yearly_amounts.clear()
            self.db.flush()
            contract.yearly_amounts.extend(
                ContractYearlyAmount(year=item["year"], amount=item["amount"]) for item in new_splits
            )
        self.db.flush()

        self._move(ENGAGED, old_position, contract_position(contract))
        return contract

    @_ledger_write
    def apply_contract_delete(self, contract_id: UUID) -> Contract:
        """Resta el importe de la línea y borra; prohibido si tiene facturas"""
        require_writer(self.auth)
        contract = self._get_contract(contract_id)

        invoice_count = self.db.query(func.count(Invoice.id)).filter(
            Invoice.contract_id == contract.id
        ).scalar()
        if invoice_count:
            raise ConflictError(
                f"No se puede eliminar el contrato: tiene {invoice_count} factura(s) asociada(s)"
            )

        self._move(ENGAGED, contract_position(contract), None)
        self.db.delete(contract)
        self.db.flush()
        return contract

    # ------------------------------------------------------------------
    # Facturas
    # ------------------------------------------------------------------

    @_ledger_write
    def apply_invoice_create(self, invoice: Invoice) -> Invoice:
        """Persiste la factura y aplica su importe firmado a `invoiced`"""
        require_writer(self.auth)
        _validate_amount(invoice.amount)
        if invoice.invoice_date is None:
            raise ValidationError("La fecha de factura es obligatoria", fields=["invoice_date"])
        if invoice.budget_line_id:
            self.repository.ensure_line(self.tenant_id, invoice.budget_line_id)
        if invoice.contract_id:
            self._get_contract(invoice.contract_id, lock=False)

        invoice.tenant_id = self.tenant_id
        invoice.is_credit = bool(invoice.is_credit)
        invoice.invoice_year = invoice.invoice_date.year
        self.db.add(invoice)
        self.db.flush()

        self._move(INVOICED, None, invoice_position(invoice))
        return invoice

    @_ledger_write
    def apply_invoice_change(self, invoice_id: UUID, changes: Dict[str, Any]) -> Invoice:
        """
        Importe, signo, línea y fecha son ejes independientes: se revierte la
        contribución firmada antigua en la línea antigua y se aplica la nueva
        en la línea nueva.
        """
        require_writer(self.auth)
        unknown = set(changes) - set(INVOICE_LEDGER_FIELDS)
        if unknown:
            raise ValueError(f"Campos sin efecto contable: {sorted(unknown)}")

        invoice = self._get_invoice(invoice_id)
        old_position = invoice_position(invoice)

        if "amount" in changes:
            invoice.amount = _validate_amount(changes["amount"])
        if "is_credit" in changes:
            invoice.is_credit = bool(changes["is_credit"])
        if "budget_line_id" in changes and changes["budget_line_id"] != invoice.budget_line_id:
            if changes["budget_line_id"]:
                self.repository.ensure_line(self.tenant_id, changes["budget_line_id"])
            invoice.budget_line_id = changes["budget_line_id"]
        if "invoice_date" in changes:
            new_date: date = changes["invoice_date"]
            if new_date is None:
                raise ValidationError("La fecha de factura es obligatoria", fields=["invoice_date"])
            invoice.invoice_date = new_date
            invoice.invoice_year = new_date.year
        self.db.flush()

        self._move(INVOICED, old_position, invoice_position(invoice))
        return invoice

    @_ledger_write
    def apply_invoice_delete(self, invoice_id: UUID) -> Invoice:
        require_writer(self.auth)
        invoice = self._get_invoice(invoice_id)
        self._move(INVOICED, invoice_position(invoice), None)
        self.db.delete(invoice)
        self.db.flush()
        return invoice

    # ------------------------------------------------------------------

    def _move(self, field_name: str, old: Optional[LedgerPosition], new: Optional[LedgerPosition]) -> None:
        """Misma línea: un único delta. Líneas distintas: -old en la antigua, +new en la nueva."""
        old_line = old.budget_line_id if old else None
        new_line = new.budget_line_id if new else None

        if old_line and old_line == new_line:
            self._apply(field_name, old_line, new.total - old.total, {
                year: new.yearly.get(year, ZERO) - old.yearly.get(year, ZERO)
                for year in set(old.yearly) | set(new.yearly)
            })
            return

        if old_line and new_line:
            logger.debug(f"Reasignación de {field_name}: línea {old_line} -> {new_line}")
        if old_line:
            self._apply(field_name, old_line, -old.total, {year: -value for year, value in old.yearly.items()})
        if new_line:
            self._apply(field_name, new_line, new.total, dict(new.yearly))

    def _apply(self, field_name: str, budget_line_id: UUID, delta: Decimal, yearly: Dict[int, Decimal]) -> None:
        if field_name == ENGAGED:
            self.repository.increment_engaged(self.tenant_id, budget_line_id, delta)
        else:
            self.repository.increment_invoiced(self.tenant_id, budget_line_id, delta)

        for year in sorted(yearly):
            if field_name == ENGAGED:
                self.repository.increment_yearly_engaged(budget_line_id, year, yearly[year])
            else:
                self.repository.increment_yearly_invoiced(budget_line_id, year, yearly[year])

    def _get_contract(self, contract_id: UUID, lock: bool = True) -> Contract:
        query = self.db.query(Contract).filter(
            Contract.id == contract_id,
            Contract.tenant_id == self.tenant_id
        )
        # Bloqueo de fila: dos ediciones simultáneas del mismo documento no parten del mismo estado
        contract = (query.with_for_update().populate_existing() if lock else query).first()
        if not contract:
            raise NotFoundError("Contrato no encontrado")
        return contract

    def _get_invoice(self, invoice_id: UUID) -> Invoice:
        invoice = self.db.query(Invoice).filter(
            Invoice.id == invoice_id,
            Invoice.tenant_id == self.tenant_id
        ).with_for_update().populate_existing().first()
        if not invoice:
            raise NotFoundError("Factura no encontrada")
        return invoice
