"""Authentication and authorization services."""

from __future__ import annotations

import logging
import secrets
from functools import wraps
from typing import Optional

from flask import current_app, g, request
from werkzeug.security import check_password_hash, generate_password_hash

from extensions import db
from models import ROLE_PERMISSIONS, ROLE_SUPER_ADMIN, User
from services import audit
from services.errors import AuthenticationError, AuthorizationError
from services.sessions import AuthUser, create_session, validate_session
from utils import utc_now

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"


# ---------------------------------------------------------------------------
# Credential verifier
# ---------------------------------------------------------------------------

def hash_password(plaintext: str) -> str:
    """Salted, deliberately slow one-way hash (werkzeug scrypt)."""
    if not isinstance(plaintext, str):
        raise TypeError("password must be a string")
    return generate_password_hash(plaintext)


def verify_password(plaintext: str, hashed: str) -> bool:
    """Return True when *plaintext* matches *hashed*.

    Mismatches and malformed hashes give False; only non-string input raises.
    """
    if not isinstance(plaintext, str) or not isinstance(hashed, str):
        raise TypeError("password and hash must be strings")
    try:
        return check_password_hash(hashed, plaintext)
    except ValueError:
        logger.warning("Stored password hash has an unsupported format")
        return False


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------

def authenticate_user(
    email: str, password: str, tenant_slug: Optional[str] = None
) -> tuple[AuthUser, str]:
    """Check credentials and open a session.

    Every failure raises the same :class:`AuthenticationError` so callers
    cannot tell an unknown e-mail from a wrong password. The concrete reason
    only goes to the audit log.
    """
    email = (email or "").strip().lower()
    user = User.query.filter_by(email=email).first()
    reason = None
    if user is None:
        reason = "unknown_email"
    elif not user.is_active:
        reason = "inactive_user"
    elif not verify_password(password, user.password_hash):
        reason = "wrong_password"
    elif tenant_slug and (user.tenant is None or user.tenant.slug != tenant_slug):
        reason = "tenant_mismatch"
    elif user.tenant is not None and not user.tenant.is_active and not user.is_super_admin:
        reason = "tenant_not_active"

    if reason:
        audit.log_event(
            audit.LOGIN_FAILED,
            resource=f"user:{user.id}" if user else None,
            details={"email": email, "reason": reason, "tenantSlug": tenant_slug},
            user_id=user.id if user else None,
            tenant_id=user.tenant_id if user else None,
        )
        logger.info("Login failed for %s (%s)", email, reason)
        raise AuthenticationError(INVALID_CREDENTIALS)

    user.last_login = utc_now()
    db.session.commit()
    token = create_session(user.id)
    audit.log_event(
        audit.LOGIN_SUCCESS,
        resource=f"user:{user.id}",
        user_id=user.id,
        tenant_id=user.tenant_id,
    )
    return AuthUser.from_model(user), token


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------

def session_cookie_name() -> str:
    auth_cfg = current_app.config.get("AUTH_CONFIG")
    return auth_cfg.cookie_name if auth_cfg else "session"


def read_session_token() -> Optional[str]:
    return request.cookies.get(session_cookie_name())


def get_current_user() -> Optional[AuthUser]:
    """Return the authenticated user placed on ``flask.g`` for this request."""
    return getattr(g, "current_user", None)


def require_user() -> AuthUser:
    """Re-validate the session cookie and return its user.

    The gatekeeper already resolved the identity; handlers call this again so
    they never trust request context alone.
    """
    session_data = validate_session(read_session_token())
    if session_data is None:
        raise AuthenticationError("Not authenticated")
    g.current_user = session_data.user
    return session_data.user


def has_permission(user: AuthUser, permission: str) -> bool:
    permissions = ROLE_PERMISSIONS.get(user.role, set())
    return permission in permissions or "manage_all" in permissions


def login_required(f):
    """Decorator that rejects requests without a valid session."""

    @wraps(f)
    def decorated(*args, **kwargs):
        require_user()
        return f(*args, **kwargs)

    return decorated


def role_required(permission: str):
    """Decorator that checks the user has *permission* (or ``manage_all``)."""

    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            user = require_user()
            if not has_permission(user, permission):
                audit.log_security_event(
                    audit.PERMISSION_DENIED,
                    user_id=user.id,
                    tenant_id=user.tenant_id,
                    details={"path": request.path, "permission": permission},
                )
                raise AuthorizationError("Access denied")
            return f(*args, **kwargs)

        return decorated

    return decorator


def super_admin_required(f):
    return role_required("manage_all")(f)


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------

def ensure_super_admin(bootstrap_cfg) -> Optional[User]:
    """Create the first super admin when none exists."""
    if User.query.filter_by(role=ROLE_SUPER_ADMIN).count() > 0:
        return None
    password = bootstrap_cfg.super_admin_password
    generated = not password
    if generated:
        password = secrets.token_urlsafe(12)
    admin = User(
        email=bootstrap_cfg.super_admin_email,
        name=bootstrap_cfg.super_admin_name,
        password_hash=hash_password(password),
        role=ROLE_SUPER_ADMIN,
        is_active=True,
    )
    db.session.add(admin)
    db.session.commit()
    if generated:
        # stdout only, credentials never go to log files
        print(
            f"Created super admin {admin.email}. Initial password: {password} "
            "(change immediately after first login)"
        )
    else:
        logger.info("Created super admin %s", admin.email)
    return admin


def set_session_cookie(response, token: str) -> None:
    auth_cfg = current_app.config["AUTH_CONFIG"]
    app_cfg = current_app.config["APP_CONFIG"]
    response.set_cookie(
        auth_cfg.cookie_name,
        token,
        max_age=auth_cfg.session_ttl_days * 24 * 60 * 60,
        httponly=True,
        secure=app_cfg.is_production,
        samesite="Lax",
        path="/",
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(session_cookie_name(), path="/")
