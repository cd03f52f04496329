from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
import logging

# Import database components
from app.database.database import engine, Base

# Import middleware
from app.common.middleware import SecurityHeadersMiddleware

# Import routers
from app.modules.budget.router import router as budget_lines_router, types_router, domains_router
from app.modules.contracts.router import router as contracts_router
from app.modules.invoices.router import router as invoices_router
from app.modules.purchase_orders.router import router as purchase_orders_router
from app.modules.forecast.router import lines_router as forecast_lines_router, expenses_router as forecast_expenses_router
from app.modules.reports.router import router as reports_router
from app.modules.audit.router import router as audit_router
from app.modules.ledger.router import router as ledger_router

# Import models for table creation
import app.modules.budget.models
import app.modules.contracts.models
import app.modules.invoices.models
import app.modules.purchase_orders.models
import app.modules.forecast.models
import app.modules.audit.models

from app.core.config import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.ENVIRONMENT == "production" else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(
    title="Budget Ledger API",
    description="Multi-tenant budget tracking: budget lines, contracts, invoices, forecast and purchase orders",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None
)

# Add middleware (order matters!)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(SecurityHeadersMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Add your frontend URLs
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(types_router)
app.include_router(domains_router)
app.include_router(budget_lines_router)
app.include_router(contracts_router)
app.include_router(invoices_router)
app.include_router(purchase_orders_router)
app.include_router(forecast_lines_router)
app.include_router(forecast_expenses_router)
app.include_router(reports_router)
app.include_router(audit_router)
app.include_router(ledger_router)

# Create database tables (only for development - use migrations in production)
if settings.ENVIRONMENT == "development":
    Base.metadata.create_all(bind=engine)


@app.get("/")
async def read_root():
    return {
        "message": "Budget Ledger API is running",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy", "environment": settings.ENVIRONMENT}


@app.on_event("startup")
async def startup_event():
    logger.info("Budget Ledger API starting up...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug mode: {settings.DEBUG}")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Budget Ledger API shutting down...")
