from fastapi import APIRouter, Depends, Query, Path, status
from sqlalchemy.orm import Session
from typing import Optional
from uuid import UUID

from app.core.config import settings
from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.forecast.schemas import ForecastLinkRequest
from app.modules.purchase_orders.models import PurchaseOrderStatus
from app.modules.purchase_orders.schemas import (
    PurchaseOrderCreate, PurchaseOrderUpdate, PurchaseOrderStatusChange,
    PurchaseOrderOut, PurchaseOrderList
)
from app.modules.purchase_orders.service import PurchaseOrderService

router = APIRouter(
    prefix="/purchase-orders",
    tags=["Purchase Orders"],
    responses={404: {"description": "Not found"}}
)


@router.get("/", response_model=PurchaseOrderList)
async def list_purchase_orders(
    status_filter: Optional[PurchaseOrderStatus] = Query(None, alias="status"),
    vendor: Optional[str] = Query(None),
    unlinked_only: bool = Query(False),
    search: Optional[str] = Query(None),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role())
):
    return PurchaseOrderService(db).get_purchase_orders(
        tenant_id=auth_context.tenant_id,
        status=status_filter,
        vendor=vendor,
        unlinked_only=unlinked_only,
        search=search,
        limit=limit,
        offset=offset
    )


@router.post("/", response_model=PurchaseOrderOut, status_code=status.HTTP_201_CREATED)
async def create_purchase_order(
    order_data: PurchaseOrderCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    """Crear una orden de compra en estado DRAFT"""
    return PurchaseOrderService(db).create_purchase_order(order_data, auth_context)


@router.get("/{order_id}", response_model=PurchaseOrderOut)
async def get_purchase_order(
    order_id: UUID = Path(...),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role())
):
    return PurchaseOrderService(db).get_purchase_order_by_id(order_id, auth_context.tenant_id)


@router.put("/{order_id}", response_model=PurchaseOrderOut)
async def update_purchase_order(
    order_data: PurchaseOrderUpdate,
    order_id: UUID = Path(...),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    return PurchaseOrderService(db).update_purchase_order(order_id, order_data, auth_context)


@router.post("/{order_id}/status", response_model=PurchaseOrderOut)
async def change_purchase_order_status(
    payload: PurchaseOrderStatusChange,
    order_id: UUID = Path(...),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    """
    Avanzar en el flujo DRAFT → SENT → CONFIRMED → DELIVERED → INVOICED
    o anular (CANCELLED). Los estados terminales no admiten cambios (409).
    """
    return PurchaseOrderService(db).transition_status(order_id, payload.status, auth_context)


@router.delete("/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_purchase_order(
    order_id: UUID = Path(...),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    PurchaseOrderService(db).delete_purchase_order(order_id, auth_context)


@router.put("/{order_id}/link-forecast", response_model=PurchaseOrderOut)
async def link_purchase_order_forecast(
    payload: ForecastLinkRequest,
    order_id: UUID = Path(...),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    return PurchaseOrderService(db).link_forecast(order_id, payload.forecast_expense_id, auth_context)
