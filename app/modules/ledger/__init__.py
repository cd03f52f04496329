"""
Módulo Ledger: mantenimiento de los agregados `engaged` / `invoiced`.

- LedgerRepository: incrementos atómicos (única vía de escritura)
- LedgerMutator: deltas por creación / modificación / borrado de documentos
- LedgerReconciler: comprobación y reconstrucción desde los documentos
"""

from app.modules.ledger.mutator import LedgerMutator
from app.modules.ledger.reconcile import LedgerReconciler
from app.modules.ledger.repository import LedgerRepository

__all__ = ["LedgerMutator", "LedgerReconciler", "LedgerRepository"]
