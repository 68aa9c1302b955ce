"""
Security headers middleware.

Adds standard security headers to every response. The session cookie
carries the backend token, so framing and sniffing are locked down.
"""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Cache-Control": "no-store",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response
