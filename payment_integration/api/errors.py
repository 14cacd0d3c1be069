"""
Domain error -> HTTP response translation.

Every PaymentIntegrationError carries its own status code, so one handler
covers the whole taxonomy:

    {"error": "<code>", "detail": "<message>"}

4xx tells the caller the request itself is wrong (do not retry); 502 tells
them a provider failed (safe to retry later).
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from payment_integration.errors import LimitExceededError, PaymentIntegrationError, RateLimitError

logger = logging.getLogger("payment_integration.api")


async def payment_error_handler(request: Request, exc: PaymentIntegrationError) -> JSONResponse:
    content = {"error": exc.code, "detail": exc.message}
    headers = None

    if isinstance(exc, LimitExceededError):
        content["limit"] = exc.limit_name
        content["limit_value"] = exc.limit_value
    elif isinstance(exc, RateLimitError) and exc.retry_after:
        headers = {"Retry-After": str(int(exc.retry_after))}

    if exc.http_status >= 500:
        logger.error("%s %s -> %d %s", request.method, request.url.path, exc.http_status, exc.message)

    return JSONResponse(status_code=exc.http_status, content=content, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PaymentIntegrationError, payment_error_handler)  # type: ignore[arg-type]
