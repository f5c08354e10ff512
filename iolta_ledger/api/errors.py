"""
Exception handlers.

Every IoltaError is rendered in one envelope:

    {"error_code": ..., "message": ..., "details": {...}}

Concurrency and storage failures show a generic "try again"
message; their internal message and details go to the log only.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from iolta_ledger.exceptions import IoltaError

logger = logging.getLogger(__name__)


async def iolta_error_handler(request: Request, exc: IoltaError) -> JSONResponse:
    if exc.public_message:
        logger.error(
            "%s on %s %s: %s", exc.error_code, request.method, request.url.path, exc.message
        )
        details = {}
    else:
        details = exc.details
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.user_message,
            "details": jsonable_encoder(details),
        },
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request-shape errors from pydantic, in the same envelope."""
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {"errors": errors},
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(IoltaError, iolta_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
