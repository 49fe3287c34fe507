"""
Exception handlers for Tessera applications.

Maps engine errors to their HTTP status and ``{message, errors?, index?}``
body, and reshapes FastAPI's own request validation errors (malformed JSON
bodies) into the same shape.
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from tessera.runtime.errors import EngineError


def _loc_key(loc: tuple[Any, ...] | list[Any]) -> str:
    # ("body", "operations", 0) -> "operations.0"
    parts = [str(p) for p in loc if p not in ("body", "query", "path")]
    return ".".join(parts) or "body"


def _error_map(errors: list[dict[str, Any]]) -> dict[str, list[str]]:
    grouped: dict[str, list[str]] = {}
    for err in errors:
        grouped.setdefault(_loc_key(err.get("loc", ())), []).append(str(err.get("msg", "")))
    return grouped


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register standard exception handlers on a FastAPI application.

    Handles:
    - EngineError: status and body from the error itself
    - RequestValidationError: malformed request bodies (422)
    - ValidationError: pydantic errors escaping a handler (422)

    Args:
        app: FastAPI application instance
    """

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError) -> Response:
        """Convert engine errors to their HTTP status."""
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> Response:
        """Convert unparseable requests to 422 with field details."""
        return JSONResponse(
            status_code=422,
            content={"message": "Invalid structure.", "errors": _error_map(list(exc.errors()))},
        )

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> Response:
        """Convert pydantic validation errors to 422."""
        errors = [{"loc": e["loc"], "msg": e["msg"]} for e in exc.errors()]
        return JSONResponse(
            status_code=422,
            content={"message": "Validation failed.", "errors": _error_map(errors)},
        )
