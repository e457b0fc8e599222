"""
Base error type and the FastAPI handlers that render it.

Every domain error carries a stable machine-readable ``code`` and the HTTP
status the API layer should answer with. Handlers render them as::

    {"status": "fail", "code": "insufficient_funds", "message": "..."}
"""
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from typing import Any, Dict, Optional
import logging

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for errors that are reported to API callers"""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "bad_request"

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    @property
    def status(self) -> str:
        return "fail" if 400 <= self.status_code < 500 else "error"

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "code": self.code, "message": self.message}


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    logger.warning(
        f"{exc.status_code} {exc.code} - {exc.message} - {request.method} {request.url.path}"
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"status": "error", "code": "internal_error", "message": "Something went wrong"}
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Attach the domain error handlers to the application"""
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
