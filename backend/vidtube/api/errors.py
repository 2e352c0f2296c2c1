"""Exception handlers rendering every failure as `{code, data, message}`."""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from vidtube.core.errors import ApiError

logger = logging.getLogger(__name__)


def error_envelope(status_code: int, message: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"code": status_code, "data": None, "message": message},
        headers=headers,
    )


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message, exc_info=exc.__cause__)
    else:
        logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == status.HTTP_401_UNAUTHORIZED else None
    return error_envelope(exc.status_code, exc.message, headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return error_envelope(exc.status_code, str(exc.detail), getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [" -> ".join(str(x) for x in error["loc"]) for error in exc.errors()]
    logger.warning("Validation error on %s: %s", request.url.path, fields)
    return error_envelope(status.HTTP_400_BAD_REQUEST, f"Invalid request: {', '.join(fields)}")


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("Database error on %s: %s", request.url.path, exc)
    return error_envelope(status.HTTP_500_INTERNAL_SERVER_ERROR, "Database error occurred")


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled exception on %s: %s", request.url.path, exc, exc_info=True)
    return error_envelope(status.HTTP_500_INTERNAL_SERVER_ERROR, "Something went wrong")


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
