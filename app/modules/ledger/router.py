from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.ledger.reconcile import LedgerReconciler
from app.modules.ledger.schemas import LedgerCheckResult, LedgerRebuildResult

router = APIRouter(prefix="/admin/ledger", tags=["Ledger"])


@router.get("/check", response_model=LedgerCheckResult)
async def check_ledger(
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_admin())
):
    """Compara `engaged` / `invoiced` almacenados con la suma de los documentos"""
    discrepancies = LedgerReconciler(db, auth_context).check()
    return LedgerCheckResult(consistent=not discrepancies, discrepancies=discrepancies)


@router.post("/recalculate", response_model=LedgerRebuildResult)
async def recalculate_ledger(
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_admin())
):
    """
    Reconstruye los agregados desde los documentos.

    Cada línea corregida queda registrada en la bitácora de auditoría.
    """
    discrepancies = LedgerReconciler(db, auth_context).rebuild()
    return LedgerRebuildResult(corrected=len(discrepancies), discrepancies=discrepancies)
