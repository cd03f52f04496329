from app.database.database import Base
from sqlalchemy import Column, String, Boolean, ForeignKey, Numeric, Integer, Date, Text
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import UUID
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin
from app.common.ledger_guard import guard_ledger_fields
import enum


class InvoiceStatus(enum.Enum):
    PAID = "Payée"            # Pagada
    PENDING = "En attente"    # Pendiente
    LATE = "Retard"           # Vencida


class Invoice(Base, TenantMixin, TimestampMixin):
    """
    Factura recibida (o avoir / nota de crédito si is_credit)

    `amount` siempre se guarda positivo; el signo lo aplica is_credit.
    `amount`, `is_credit`, `budget_line_id` e `invoice_date` solo los escribe el LedgerMutator
    (listeners de app/common/ledger_guard.py).
    """
    __tablename__ = "invoices"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)

    # References
    contract_id = Column(UUID(as_uuid=True), ForeignKey("contracts.id"), nullable=True, index=True)
    budget_line_id = Column(UUID(as_uuid=True), ForeignKey("budget_lines.id"), nullable=True, index=True)
    linked_forecast_expense_id = Column(
        UUID(as_uuid=True), ForeignKey("forecast_expenses.id", ondelete="SET NULL"), nullable=True, index=True
    )
    type_id = Column(UUID(as_uuid=True), ForeignKey("budget_types.id"), nullable=True)
    domain_id = Column(UUID(as_uuid=True), ForeignKey("budget_domains.id"), nullable=True)

    # Invoice data
    number = Column(String(100), nullable=False, index=True)
    vendor = Column(String(200), nullable=False, index=True)
    description = Column(Text, nullable=True)
    amount = Column(Numeric(15, 2), nullable=False)
    amount_ht = Column(Numeric(15, 2), nullable=True)
    is_credit = Column(Boolean, nullable=False, default=False)
    nature = Column(String(20), nullable=True)
    status = Column(String(20), nullable=False, default=InvoiceStatus.PENDING.value)

    # Dates
    invoice_date = Column(Date, nullable=False)
    invoice_year = Column(Integer, nullable=False, index=True)
    due_date = Column(Date, nullable=True)
    payment_date = Column(Date, nullable=True)

    accounting_code = Column(String(50), nullable=True)
    comment = Column(Text, nullable=True)
    pointed = Column(Boolean, nullable=False, default=False)

    # Relationships
    contract = relationship("Contract", back_populates="invoices")
    budget_line = relationship("BudgetLine", back_populates="invoices")
    linked_forecast_expense = relationship("ForecastExpense", back_populates="linked_invoices")

    @property
    def signed_amount(self):
        """Contribución al ledger: negativa para los avoirs"""
        return -self.amount if self.is_credit else self.amount


guard_ledger_fields(Invoice, ("amount", "is_credit", "budget_line_id", "invoice_date", "invoice_year"))
