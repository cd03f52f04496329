"""
Modelos SQLAlchemy para Órdenes de compra (bons de commande)

No participan en el ledger de líneas presupuestarias; solo se enlazan
a gastos previsionales. El estado es una máquina de estados explícita.
"""

from app.database.database import Base
from sqlalchemy import Column, String, ForeignKey, Numeric, Date, Text, Enum, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import UUID
from datetime import date
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin
import enum


class PurchaseOrderStatus(enum.Enum):
    """Estados de órdenes de compra"""
    DRAFT = "DRAFT"             # Borrador
    SENT = "SENT"               # Enviada al proveedor
    CONFIRMED = "CONFIRMED"     # Confirmada por el proveedor
    DELIVERED = "DELIVERED"     # Entregada
    INVOICED = "INVOICED"       # Facturada (terminal)
    CANCELLED = "CANCELLED"     # Anulada (terminal)


class PurchaseOrder(Base, TenantMixin, TimestampMixin):
    __tablename__ = "purchase_orders"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    number = Column(String(100), nullable=False)
    vendor = Column(String(200), nullable=False, index=True)
    order_date = Column(Date, nullable=False, default=date.today)
    expected_delivery_date = Column(Date, nullable=True)
    amount = Column(Numeric(15, 2), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(Enum(PurchaseOrderStatus), nullable=False, default=PurchaseOrderStatus.DRAFT, index=True)

    linked_forecast_expense_id = Column(
        UUID(as_uuid=True), ForeignKey("forecast_expenses.id", ondelete="SET NULL"), nullable=True, index=True
    )

    linked_forecast_expense = relationship("ForecastExpense", back_populates="linked_purchase_orders")

    __table_args__ = (
        UniqueConstraint("tenant_id", "number", name="uq_purchase_order_tenant_number"),
    )
