"""Map ledger exceptions to safe JSON responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from services.errors import (
    AccountNotFoundError,
    InsufficientFundsError,
    LedgerError,
    LedgerValidationError,
    NotFoundError,
    PricingUnavailableError,
    StorageError,
)
from services.payments import WebhookSignatureError

logger = logging.getLogger(__name__)


async def insufficient_funds_handler(request: Request, exc: InsufficientFundsError) -> JSONResponse:
    return JSONResponse(
        status_code=402,
        content={
            "detail": exc.public_message,
            "code": "insufficient_credits",
            "required": exc.required,
            "available": exc.available,
            "operation_id": exc.operation_id,
        },
    )


async def account_not_found_handler(request: Request, exc: AccountNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": exc.public_message, "code": "account_not_found"})


async def pricing_unavailable_handler(request: Request, exc: PricingUnavailableError) -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": exc.public_message, "code": "pricing_unavailable"})


async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": exc.public_message, "code": "not_found"})


async def validation_error_handler(request: Request, exc: LedgerValidationError) -> JSONResponse:
    logger.error("ledger_validation_error path=%s error=%s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": exc.public_message, "code": "ledger_integrity"})


async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error("ledger_storage_error path=%s error=%s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": exc.public_message, "code": "storage_unavailable"})


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    logger.error("ledger_error path=%s error=%s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": exc.public_message, "code": "ledger_error"})


async def webhook_signature_handler(request: Request, exc: WebhookSignatureError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc), "code": "invalid_webhook"})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(InsufficientFundsError, insufficient_funds_handler)
    app.add_exception_handler(AccountNotFoundError, account_not_found_handler)
    app.add_exception_handler(PricingUnavailableError, pricing_unavailable_handler)
    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(LedgerValidationError, validation_error_handler)
    app.add_exception_handler(StorageError, storage_error_handler)
    app.add_exception_handler(LedgerError, ledger_error_handler)
    app.add_exception_handler(WebhookSignatureError, webhook_signature_handler)
