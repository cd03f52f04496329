"""
Recalcula los agregados engaged / invoiced de una organización a partir de
sus contratos y facturas.

Sin --apply solo informa de las diferencias. Con --apply las corrige y deja
una entrada de auditoría por línea corregida.

    python scripts/recalculate_ledger.py --tenant-id <uuid>
    python scripts/recalculate_ledger.py --tenant-id <uuid> --apply --user-id <uuid>
"""

# Add project root to sys.path so `app.*` imports work even if CWD changes
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import argparse
import logging
from uuid import UUID, uuid4

from app.database.database import SessionLocal
from app.modules.auth.schemas import AuthContext, UserRole
from app.modules.ledger.reconcile import LedgerReconciler

# Registrar todos los modelos antes de configurar los mappers
import app.modules.budget.models  # noqa: F401
import app.modules.contracts.models  # noqa: F401
import app.modules.invoices.models  # noqa: F401
import app.modules.purchase_orders.models  # noqa: F401
import app.modules.forecast.models  # noqa: F401
import app.modules.audit.models  # noqa: F401


def print_discrepancies(discrepancies):
    for d in discrepancies:
        scope = f"año {d.year}" if d.year is not None else "total"
        print(f"  {d.budget_line_id} [{scope}] {d.field}: {d.stored} -> {d.expected} ({d.difference:+})")


def main():
    parser = argparse.ArgumentParser(description="Verificar o recalcular el ledger presupuestario")
    parser.add_argument("--tenant-id", type=UUID, required=True)
    parser.add_argument("--user-id", type=UUID, default=None, help="Actor registrado en la auditoría")
    parser.add_argument("--apply", action="store_true", help="Corregir los agregados")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    auth = AuthContext(
        user_id=args.user_id or uuid4(),
        tenant_id=args.tenant_id,
        user_role=UserRole.ADMIN.value
    )

    db = SessionLocal()
    try:
        reconciler = LedgerReconciler(db, auth)
        discrepancies = reconciler.rebuild() if args.apply else reconciler.check()

        if not discrepancies:
            print("Ledger consistente.")
            return 0

        print(f"{'Corregidas' if args.apply else 'Detectadas'} {len(discrepancies)} diferencias:")
        print_discrepancies(discrepancies)
        return 0 if args.apply else 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
