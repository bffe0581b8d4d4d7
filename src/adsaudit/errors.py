from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from adsaudit.log import get_logger


class AuditError(RuntimeError):
    status_code = 500


class BadRequestError(AuditError):
    status_code = 400


class UnauthorizedError(AuditError):
    status_code = 401


class ForbiddenError(AuditError):
    status_code = 403


class NotFoundError(AuditError):
    status_code = 404


class ConflictError(AuditError):
    status_code = 409


def _format_loc(loc: object) -> str:
    if not isinstance(loc, (list, tuple)):
        return str(loc)
    parts = [str(p) for p in loc if p != "body"]
    return ".".join(parts) if parts else "body"


def register_exception_handlers(app: FastAPI, *, logger_name: str) -> None:
    logger = get_logger(logger_name)

    @app.exception_handler(AuditError)
    async def audit_error_handler(request: Request, exc: AuditError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse({"ok": False, "error": str(exc)}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        messages = []
        for err in exc.errors():
            loc = _format_loc(err.get("loc"))
            messages.append(f"{loc}: {err.get('msg') or 'Invalid value'}")
        message = "; ".join(messages) if messages else "Invalid request payload"
        return JSONResponse({"ok": False, "error": message}, status_code=400)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse({"ok": False, "error": "Internal Server Error"}, status_code=500)
