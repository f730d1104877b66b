"""
Shared-secret authentication middleware for the order worker.

All /webhook/* endpoints require a valid X-Worker-Secret header matching
WORKER_SHARED_SECRET.  The Supabase database webhook is configured to send
this header with every order change notification.
"""

import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from luxlife_worker.config import get_settings

SECRET_HEADER = "X-Worker-Secret"


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to /webhook/* endpoints."""

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith("/webhook"):
            return await call_next(request)

        settings = get_settings()
        expected = settings.worker_shared_secret

        if not expected:
            # In development without the secret set, allow all traffic
            if settings.environment == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})

        # Constant-time compare
        provided = request.headers.get(SECRET_HEADER, "")
        if not secrets.compare_digest(provided, expected):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)
