"""
Shared-secret authentication middleware for the OmniSpark API.

Every non-public endpoint requires a valid X-Omnispark-Secret header matching
the OMNISPARK_SHARED_SECRET environment variable. The front end attaches this
header when forwarding requests to the service.
"""

import os
import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

SECRET_HEADER = "X-Omnispark-Secret"


class SharedSecretMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to API endpoints."""

    # Paths that are always public (health checks, docs, cached media)
    PUBLIC_PATHS = {"/health", "/docs", "/openapi.json", "/redoc"}
    PUBLIC_PREFIXES = ("/media/",)

    def __init__(self, app, secret: str | None = None):
        super().__init__(app)
        self.secret = secret if secret is not None else os.environ.get("OMNISPARK_SHARED_SECRET", "")

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if path in self.PUBLIC_PATHS or path.startswith(self.PUBLIC_PREFIXES):
            return await call_next(request)

        if not self.secret:
            # In development without the secret set, allow all traffic
            if os.environ.get("ENVIRONMENT", "development") == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "OMNISPARK_SHARED_SECRET not configured"})

        # Constant-time compare
        provided = request.headers.get(SECRET_HEADER, "")
        if not secrets.compare_digest(provided, self.secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing shared secret"})

        return await call_next(request)
