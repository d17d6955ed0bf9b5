"""
Error taxonomy shared by every router.

Helpers raise these; the handlers registered in ``register_exception_handlers``
turn them into ``{"detail": ...}`` responses. Anything else is logged and
reported as a generic internal error.
"""
import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ClinicError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(ClinicError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class NotFound(ClinicError):
    status_code = status.HTTP_404_NOT_FOUND


class PermissionDenied(ClinicError):
    status_code = status.HTTP_403_FORBIDDEN


class Unauthenticated(ClinicError):
    status_code = status.HTTP_401_UNAUTHORIZED


class Conflict(ClinicError):
    status_code = status.HTTP_409_CONFLICT


async def clinic_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, ClinicError):
        return await global_exception_handler(request, exc)

    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.message}")

    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthenticated) else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message},
        headers=headers,
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log the full traceback and hide internals from the caller."""
    logger.error(
        f"Unhandled exception on {request.method} {request.url.path}: {exc!s}",
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ClinicError, clinic_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)
