"""
Protección de los campos contables de Contratos y Facturas.

Los campos que determinan `engaged` / `invoiced` solo pueden cambiar dentro
de `ledger_mutation(session)`, que abre el LedgerMutator. Cualquier otro
flush que los modifique se rechaza con LedgerFieldError.
"""

from contextlib import contextmanager
from typing import Iterable

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session, object_session

LEDGER_MUTATION_KEY = "ledger_mutation"


class LedgerFieldError(Exception):
    """Escritura de un campo contable fuera del LedgerMutator"""


@contextmanager
def ledger_mutation(session: Session):
    previous = session.info.get(LEDGER_MUTATION_KEY, False)
    session.info[LEDGER_MUTATION_KEY] = True
    try:
        yield session
    finally:
        session.info[LEDGER_MUTATION_KEY] = previous


def in_ledger_mutation(target) -> bool:
    session = object_session(target)
    return session is not None and session.info.get(LEDGER_MUTATION_KEY, False)


def guard_ledger_fields(model, fields: Iterable[str]) -> None:
    """Registra before_update / before_delete para los campos indicados del modelo"""
    fields = tuple(fields)

    @event.listens_for(model, "before_update")
    def _reject_ledger_update(mapper, connection, target):
        if in_ledger_mutation(target):
            return
        state = inspect(target)
        changed = [name for name in fields if state.attrs[name].history.has_changes()]
        if changed:
            raise LedgerFieldError(
                f"{model.__name__} {target.id}: {', '.join(changed)} solo se modifican desde el LedgerMutator"
            )

    @event.listens_for(model, "before_delete")
    def _reject_ledger_delete(mapper, connection, target):
        if not in_ledger_mutation(target):
            raise LedgerFieldError(f"{model.__name__} {target.id} solo se elimina desde el LedgerMutator")


def guard_ledger_rows(model) -> None:
    """Filas que forman parte de la posición contable: ninguna escritura fuera del mutator"""

    def _reject(mapper, connection, target):
        if not in_ledger_mutation(target):
            raise LedgerFieldError(f"{model.__name__} solo se escribe desde el LedgerMutator")

    for name in ("before_insert", "before_update", "before_delete"):
        event.listen(model, name, _reject)
