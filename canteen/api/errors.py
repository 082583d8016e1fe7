"""
Exception handlers - map the error taxonomy to HTTP responses
"""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from canteen.core.errors import (
    CanteenError,
    ErrorKind,
    NotFoundError,
    PayloadTooLargeError,
    SettingsValidationError,
)

logger = logging.getLogger(__name__)


def status_code_for(exc: CanteenError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, PayloadTooLargeError):
        return 413
    if isinstance(exc, SettingsValidationError):
        return 422
    if exc.kind is ErrorKind.NOT_READY:
        return 503
    return 500


async def canteen_error_handler(request: Request, exc: CanteenError):
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({status_code}): {exc}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(CanteenError, canteen_error_handler)
