"""Server-side session store backing the ``session`` cookie.

A session row is created at login with an absolute expiry (no sliding
renewal, no refresh tokens). Every validation re-reads the user and tenant,
so role changes, deactivation and tenant suspension are observed on the next
request without re-login.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from flask import current_app, has_app_context

from extensions import db
from models import ROLE_SUPER_ADMIN, User, UserSession
from utils import as_utc, is_expired, utc_now

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL_DAYS = 7


@dataclass(frozen=True)
class TenantSummary:
    id: int
    name: str
    slug: str
    status: str

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "slug": self.slug, "status": self.status}


@dataclass(frozen=True)
class AuthUser:
    """Snapshot of the authenticated user taken when the session is validated."""
    id: int
    email: str
    name: str
    role: str
    tenant_id: Optional[int]
    tenant: Optional[TenantSummary]

    @property
    def is_super_admin(self) -> bool:
        return self.role == ROLE_SUPER_ADMIN

    @classmethod
    def from_model(cls, user: User) -> "AuthUser":
        tenant = user.tenant
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            tenant_id=user.tenant_id,
            tenant=TenantSummary(tenant.id, tenant.name, tenant.slug, tenant.status)
            if tenant
            else None,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "tenantId": self.tenant_id,
            "tenant": self.tenant.to_dict() if self.tenant else None,
        }


@dataclass(frozen=True)
class SessionData:
    user: AuthUser
    token: str
    expires_at: datetime


def session_ttl() -> timedelta:
    days = DEFAULT_SESSION_TTL_DAYS
    if has_app_context():
        auth_cfg = current_app.config.get("AUTH_CONFIG")
        if auth_cfg is not None:
            days = auth_cfg.session_ttl_days
    return timedelta(days=days)


def generate_session_token() -> str:
    """256 bits from the OS CSPRNG, hex encoded."""
    return secrets.token_hex(32)


def create_session(user_id: int) -> str:
    """Persist a new session for *user_id* and return its token."""
    token = generate_session_token()
    db.session.add(
        UserSession(token=token, user_id=user_id, expires_at=utc_now() + session_ttl())
    )
    db.session.commit()
    return token


def validate_session(token: Optional[str]) -> Optional[SessionData]:
    """Return the live session for *token*, or None.

    Expired rows are deleted when they are found. Sessions of deactivated
    users are treated as invalid.
    """
    if not token:
        return None
    row = UserSession.query.filter_by(token=token).first()
    if row is None:
        return None
    if is_expired(row.expires_at):
        user_id = row.user_id
        db.session.delete(row)
        db.session.commit()
        logger.info("Purged expired session for user %s", user_id)
        return None
    user = db.session.get(User, row.user_id)
    if user is None or not user.is_active:
        return None
    return SessionData(
        user=AuthUser.from_model(user),
        token=row.token,
        expires_at=as_utc(row.expires_at),
    )


def revoke_session(token: Optional[str]) -> None:
    """Delete the session for *token*; unknown tokens are ignored."""
    if not token:
        return
    UserSession.query.filter_by(token=token).delete(synchronize_session=False)
    db.session.commit()


def revoke_user_sessions(user_id: int) -> int:
    """Delete every session of *user_id*. The caller commits."""
    return UserSession.query.filter_by(user_id=user_id).delete(synchronize_session=False)


def cleanup_expired_sessions() -> int:
    """Bulk-delete sessions whose expiry has passed."""
    removed = UserSession.query.filter(
        UserSession.expires_at <= utc_now()
    ).delete(synchronize_session=False)
    db.session.commit()
    if removed:
        logger.info("Removed %s expired sessions", removed)
    return removed
