"""
Router para el módulo de Facturas

Incluye el vínculo PIVOT (`/invoices/{id}/link-forecast`) y la importación por lotes.
"""

from fastapi import APIRouter, Depends, Query, Path, status
from sqlalchemy.orm import Session
from typing import List, Optional
from uuid import UUID

from app.core.config import settings
from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.budget.schemas import NatureEnum
from app.modules.contracts.schemas import ImportResult
from app.modules.forecast.schemas import ForecastLinkRequest
from app.modules.invoices.schemas import InvoiceCreate, InvoiceUpdate, InvoiceOut, InvoiceList, InvoiceStatusEnum
from app.modules.invoices.service import InvoiceService

router = APIRouter(
    prefix="/invoices",
    tags=["Invoices"],
    responses={404: {"description": "Not found"}}
)


@router.get("/", response_model=InvoiceList)
async def list_invoices(
    year: Optional[int] = Query(None, description="Año de factura"),
    nature: Optional[NatureEnum] = Query(None),
    status_filter: Optional[InvoiceStatusEnum] = Query(None, alias="status"),
    is_credit: Optional[bool] = Query(None, description="True = solo avoirs"),
    budget_line_id: Optional[UUID] = Query(None),
    contract_id: Optional[UUID] = Query(None),
    vendor: Optional[str] = Query(None),
    unpointed_only: bool = Query(False),
    without_contract: bool = Query(False),
    unlinked_only: bool = Query(False, description="Solo facturas sin gasto previsto"),
    search: Optional[str] = Query(None),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role())
):
    return InvoiceService(db).get_invoices(
        tenant_id=auth_context.tenant_id,
        year=year,
        nature=nature.value if nature else None,
        status=status_filter.value if status_filter else None,
        is_credit=is_credit,
        budget_line_id=budget_line_id,
        contract_id=contract_id,
        vendor=vendor,
        unpointed_only=unpointed_only,
        without_contract=without_contract,
        unlinked_only=unlinked_only,
        search=search,
        limit=limit,
        offset=offset
    )


@router.post("/", response_model=InvoiceOut, status_code=status.HTTP_201_CREATED)
async def create_invoice(
    invoice_data: InvoiceCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    """
    Crear una factura o un avoir

    - **amount**: siempre positivo
    - **is_credit**: true para un avoir (resta del facturado de la línea)
    - **budget_line_id**: línea a la que se imputa (opcional)
    """
    return InvoiceService(db).create_invoice(invoice_data, auth_context)


@router.post("/import", response_model=ImportResult)
async def import_invoices(
    rows: List[InvoiceCreate],
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    return InvoiceService(db).import_invoices(rows, auth_context)


@router.get("/{invoice_id}", response_model=InvoiceOut)
async def get_invoice(
    invoice_id: UUID = Path(...),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role())
):
    return InvoiceService(db).get_invoice_by_id(invoice_id, auth_context.tenant_id)


@router.put("/{invoice_id}", response_model=InvoiceOut)
async def update_invoice(
    invoice_data: InvoiceUpdate,
    invoice_id: UUID = Path(...),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    return InvoiceService(db).update_invoice(invoice_id, invoice_data, auth_context)


@router.delete("/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_invoice(
    invoice_id: UUID = Path(...),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    InvoiceService(db).delete_invoice(invoice_id, auth_context)


@router.put("/{invoice_id}/link-forecast", response_model=InvoiceOut)
async def link_invoice_forecast(
    payload: ForecastLinkRequest,
    invoice_id: UUID = Path(...),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_writer())
):
    """Vincular la factura a un gasto previsto (null para desvincular)"""
    return InvoiceService(db).link_forecast(invoice_id, payload.forecast_expense_id, auth_context)
