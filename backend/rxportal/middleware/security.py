"""
Security middleware for request validation and response headers.

- Rejects request bodies over 1 MB
- Requires application/json on mutation requests that carry a body
- Adds hardening headers to every response
"""

import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)

MAX_BODY_SIZE = 1_048_576

MUTATION_METHODS = {"POST", "PUT", "PATCH"}

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Cache-Control": "no-store",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next):
        method = request.method
        content_length = request.headers.get("content-length")

        if content_length is not None:
            try:
                too_large = int(content_length) > MAX_BODY_SIZE
            except ValueError:
                return JSONResponse(status_code=400, content={"detail": "Invalid Content-Length header"})
            if too_large:
                logger.warning("Request body too large: %s bytes on %s %s", content_length, method, request.url.path)
                return JSONResponse(
                    status_code=413,
                    content={"detail": "Request body too large. Maximum size is 1 MB."},
                )

        if method in MUTATION_METHODS and content_length not in (None, "0"):
            content_type = request.headers.get("content-type", "")
            if "application/json" not in content_type:
                return JSONResponse(
                    status_code=415,
                    content={"detail": "Unsupported Media Type. Content-Type must be application/json."},
                )

        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers[header] = value
        return response
