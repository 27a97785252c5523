"""
Gestionnaires d’exceptions.
- HTTPException -> {"error": detail} (forme d'erreur commune à tous les handlers)
- RequestValidationError -> 400 (entrée invalide = erreur client)
- LedgerError non rattrapée -> 500, journalisée
"""
import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from herd.bookings.repository import LedgerError

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request body", "details": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(LedgerError)
    async def ledger_error(request: Request, exc: LedgerError):
        logger.error("app.ledger_error path=%s error=%s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"error": "Booking store unavailable"})
