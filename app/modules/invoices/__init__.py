"""
Módulo de Facturas (Invoices)

Facturas de proveedores y avoirs (notas de crédito):

- Cada factura asignada a una línea presupuestaria suma su importe firmado
  a `invoiced` (los avoirs restan), por línea y por año de factura
- Las escrituras con efecto contable pasan por el LedgerMutator
- Vínculo opcional a un gasto previsto (PIVOT) para el seguimiento previsto / realizado

Roles:
- admin/manager/user: CRUD completo
- viewer: Solo lectura
"""
