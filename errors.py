"""
Error taxonomy shared by every component.

Domain code raises these; the HTTP layer renders them through
`register_exception_handlers`.
"""

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = structlog.get_logger(component="errors")


class ServiceError(Exception):
    status_code = 500
    code = "service_error"
    retryable = False

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.code)
        self.detail = detail or self.code


class ValidationError(ServiceError):
    status_code = 400
    code = "validation_error"


class Unauthenticated(ServiceError):
    status_code = 401
    code = "unauthenticated"


class Forbidden(ServiceError):
    status_code = 403
    code = "forbidden"


class NotFound(ServiceError):
    status_code = 404
    code = "not_found"


class Conflict(ServiceError):
    status_code = 409
    code = "conflict"


class InvalidCoupon(ServiceError):
    status_code = 400
    code = "invalid_coupon"


class UpstreamFailure(ServiceError):
    status_code = 502
    code = "upstream_failure"
    retryable = True


class StoreFailure(ServiceError):
    status_code = 503
    code = "store_failure"
    retryable = True


async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error(exc.code, path=request.url.path, detail=exc.detail)
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthenticated) else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "detail": exc.detail, "retryable": exc.retryable},
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, service_error_handler)
