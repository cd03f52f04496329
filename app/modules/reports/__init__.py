"""
Reports Module

Budget reporting over the ledger aggregates. This module does NOT create
tables: it groups the engaged / invoiced columns maintained on BudgetLine
and YearlyBudget.

- Global summary, optionally for one year
- Totals by year, by nature and by domain
- Dashboard alerts (expiring contracts, late invoices, over-budget lines)

Architecture Pattern: Service Layer
- router.py -> FastAPI endpoints
- service.py -> Query building
- schemas.py -> Pydantic responses
"""
