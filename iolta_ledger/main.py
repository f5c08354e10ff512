"""
IOLTA Trust Ledger: FastAPI application.

This is the entry point for the application.
Logging, exception handlers and all routers are registered here.
"""

import logging

from fastapi import FastAPI

from iolta_ledger.config import get_settings
from iolta_ledger.api.errors import register_exception_handlers
from iolta_ledger.api.health import router as health_router
from iolta_ledger.api.trust_accounts import router as trust_accounts_router
from iolta_ledger.api.ledgers import router as ledgers_router
from iolta_ledger.api.transactions import router as transactions_router
from iolta_ledger.api.reconciliation import router as reconciliation_router

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Client trust accounting: postings, statements and reconciliation",
    debug=settings.DEBUG,
)

register_exception_handlers(app)

# Register routers
app.include_router(health_router)
app.include_router(trust_accounts_router)
app.include_router(ledgers_router)
app.include_router(transactions_router)
app.include_router(reconciliation_router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("iolta_ledger.main:app", host=settings.HOST, port=settings.PORT)
