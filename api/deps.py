from __future__ import annotations

import hmac

from fastapi import Header, Request

from exceptions import UnauthorizedError
from services.orchestrator import LifecycleOrchestrator
from services.whitelist import WhitelistService
from utils.config import settings


def _check_bearer(authorization: str | None, secret: str, what: str) -> None:
    if not secret:
        raise UnauthorizedError(f"{what} authentication is not configured")
    if not authorization or not authorization.startswith("Bearer "):
        raise UnauthorizedError("Missing or invalid Authorization header")
    token = authorization.split(" ", 1)[1]
    if not hmac.compare_digest(token.encode(), secret.encode()):
        raise UnauthorizedError(f"Invalid {what.lower()} token")


async def require_admin(authorization: str | None = Header(default=None)) -> str:
    _check_bearer(authorization, settings.ADMIN_AUTH_SECRET, "Admin")
    return "admin"


async def require_webhook(authorization: str | None = Header(default=None)) -> None:
    _check_bearer(authorization, settings.WEBHOOK_SECRET, "Webhook")


def get_orchestrator(request: Request) -> LifecycleOrchestrator:
    return request.app.state.orchestrator


def get_whitelist(request: Request) -> WhitelistService:
    return request.app.state.whitelist
