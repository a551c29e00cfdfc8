from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from exceptions import ControlError, UnauthorizedError

log = logging.getLogger(__name__)


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ControlError)
    async def _control_error(_request: Request, exc: ControlError):
        if exc.status_code >= 500:
            log.error("[api] %s: %s", exc.error, exc.error_description)
        headers = {"WWW-Authenticate": 'Bearer realm="GroveMC Admin API"'} if isinstance(exc, UnauthorizedError) else None
        return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def _bad_request(_request: Request, exc: RequestValidationError):
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}"
            for err in exc.errors()
        )
        return JSONResponse(
            {"error": "validation_error", "error_description": problems or "Invalid request body"},
            status_code=400,
        )
