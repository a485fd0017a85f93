"""
Response envelope

Every endpoint answers with ``{"success": bool, "message": str, "data": ...}``
(some add ``stats``, ``pagination`` or ``count``). Services build envelopes
with ``ok``/``fail``; routes hand them to ``respond`` which picks the HTTP
status. Exceptions are turned into the same envelope by the handlers
registered in ``register_exception_handlers``.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from database import serialize

logger = logging.getLogger(__name__)


class NotFoundError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def ok(message: str, data=None, **extra) -> dict:
    return {"success": True, "message": message, "data": data, **extra}


def fail(message: str, data=None) -> dict:
    return {"success": False, "message": message, "data": data}


def status_for_message(message: str) -> int:
    text = (message or "").lower()
    if "not found" in text:
        return 404
    if "unauthorized" in text or "invalid credentials" in text:
        return 401
    if "already exists" in text or "duplicate" in text:
        return 409
    if "forbidden" in text:
        return 403
    return 400


def envelope_response(status_code: int, content: dict) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=jsonable_encoder(serialize(content)))


def respond(result: dict, status_code: int = 200) -> JSONResponse:
    if not result.get("success"):
        message = result.get("message") or "An error occurred"
        return envelope_response(status_for_message(message), {**result, "message": message})
    return envelope_response(status_code, result)


def first_validation_message(errors) -> str:
    if not errors:
        return "Validation failed"
    err = errors[0]
    loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path", "form", "header")]
    msg = err.get("msg", "Invalid value")
    return f"{'.'.join(loc)}: {msg}" if loc else msg


def register_exception_handlers(app: FastAPI):

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        return envelope_response(exc.status_code, fail(message))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return envelope_response(400, fail(first_validation_message(exc.errors())))

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return envelope_response(404, fail(exc.message))

    @app.exception_handler(DuplicateKeyError)
    async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
        key_pattern = (exc.details or {}).get("keyPattern") or {}
        if key_pattern:
            field = next(iter(key_pattern))
            message = f"{field[:1].upper()}{field[1:]} already exists"
        else:
            message = "Duplicate key: record already exists"
        return envelope_response(409, fail(message))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return envelope_response(500, fail(str(exc) or "Internal server error"))
