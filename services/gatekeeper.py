"""Request gatekeeper.

:func:`evaluate` decides what to do with a request from its path and session
token alone; the before-request hook in ``app.py`` turns the decision into a
response.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from models import TENANT_ACTIVE
from services.sessions import AuthUser, validate_session

logger = logging.getLogger(__name__)

PUBLIC_PATHS = {
    "/login",
    "/signup",
    "/unauthorized",
    "/tenant-suspended",
    "/health",
    "/api/auth/login",
    "/api/auth/logout",
    "/api/auth/validate-access",
}
PUBLIC_PREFIXES = ("/static/", "/api/products/sso/")
ADMIN_PREFIXES = ("/admin", "/api/admin")


@dataclass(frozen=True)
class RequestContext:
    """Identity attached to an authenticated request."""
    user_id: int
    role: str
    tenant_id: Optional[int]
    tenant_slug: Optional[str]


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    status_code: int = 200
    error: Optional[str] = None
    redirect_to: Optional[str] = None
    clear_cookie: bool = False
    audit_denial: bool = False
    context: Optional[RequestContext] = None
    user: Optional[AuthUser] = None


def is_public_path(path: str) -> bool:
    return path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES)


def is_api_path(path: str) -> bool:
    return path.startswith("/api/")


def _is_admin_path(path: str) -> bool:
    return any(path == prefix or path.startswith(prefix + "/") for prefix in ADMIN_PREFIXES)


def _deny(path: str, status_code: int, error: str, redirect_to: str, **kwargs) -> GateDecision:
    if is_api_path(path):
        return GateDecision(False, status_code=status_code, error=error, **kwargs)
    return GateDecision(False, status_code=302, error=error, redirect_to=redirect_to, **kwargs)


def evaluate(path: str, token: Optional[str]) -> GateDecision:
    """Gate a request for *path* carrying session *token* (may be None)."""
    if is_public_path(path):
        return GateDecision(True)

    if not token:
        return _deny(path, 401, "Not authenticated", "/login")

    session_data = validate_session(token)
    if session_data is None:
        return _deny(path, 401, "Invalid session", "/login", clear_cookie=True)

    user = session_data.user
    if _is_admin_path(path) and not user.is_super_admin:
        logger.warning("User %s denied access to admin path %s", user.id, path)
        return _deny(
            path, 403, "Access denied", "/unauthorized", audit_denial=True, user=user
        )

    if (
        not user.is_super_admin
        and user.tenant is not None
        and user.tenant.status != TENANT_ACTIVE
    ):
        return _deny(path, 403, "Clinic suspended", "/tenant-suspended", user=user)

    return GateDecision(
        True,
        context=RequestContext(
            user_id=user.id,
            role=user.role,
            tenant_id=user.tenant_id,
            tenant_slug=user.tenant.slug if user.tenant else None,
        ),
        user=user,
    )
