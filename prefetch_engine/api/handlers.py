"""Turns every exception into the JSON error envelope."""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from prefetch_engine.errors import EngineError, InternalError, NotFound, ValidationError

logger = logging.getLogger(__name__)


async def engine_error_handler(request: Request, exc: EngineError):
    if exc.status_code >= 500:
        logger.warning("Request failed | %s %s | %s | %s", request.method, request.url.path, exc.code, exc.message[:200])
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        where = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        problems.append(f"{where}: {err.get('msg')}" if where else str(err.get("msg")))
    error = ValidationError("; ".join(problems)[:500] or "Invalid request")
    return JSONResponse(status_code=400, content=error.to_dict())


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        error = NotFound("Route not found")
    else:
        error = EngineError(str(exc.detail), code="HTTP_ERROR")
        error.status_code = exc.status_code
        error.kind = "HttpError"
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error | %s %s | %s", request.method, request.url.path, str(exc)[:300])
    return JSONResponse(status_code=500, content=InternalError("Internal error").to_dict())


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(EngineError, engine_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
