"""Caller identity middleware.

Identity is asserted by the gateway in front of this service through
``x-actor-*`` headers; authorization itself is the ledger's decision.
"""

import logging

from fastapi import Request, status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from touristid_api.credentials.results import Actor

logger = logging.getLogger(__name__)

PUBLIC_PATHS = {"/", "/health", "/ready", "/docs", "/redoc", "/openapi.json"}


class ActorMiddleware(BaseHTTPMiddleware):
    """Extract the calling actor from request headers."""

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path in PUBLIC_PATHS or path.startswith("/metrics"):
            return await call_next(request)

        actor_id = request.headers.get("x-actor-id")
        role = request.headers.get("x-actor-role")
        if not actor_id or not role:
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={
                    "detail": "Missing caller identity. Provide x-actor-id and x-actor-role headers.",
                    "error_code": "UNAUTHENTICATED",
                    "retryable": False,
                },
            )

        request.state.actor = Actor(
            actor_id=actor_id,
            role=role.strip().lower(),
            wallet=request.headers.get("x-actor-wallet"),
        )
        logger.info(
            "Identified caller",
            extra={
                "actor_id": actor_id,
                "actor_role": request.state.actor.role,
                "correlation_id": getattr(request.state, "correlation_id", None),
                "path": path,
            },
        )
        return await call_next(request)
