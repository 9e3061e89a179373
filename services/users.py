"""User administration within and across clinics."""

from __future__ import annotations

import logging
from typing import Optional

from extensions import db
from models import ROLE_SUPER_ADMIN, ROLE_USER, Tenant, User
from services.auth import hash_password
from services.errors import AuthorizationError, NotFoundError, ValidationError
from services.permissions import Capabilities, can_assign_role, resolve_capabilities
from services.sessions import AuthUser, revoke_user_sessions
from services.sso import revoke_user_tokens
from utils import parse_bool, safe_int

logger = logging.getLogger(__name__)


def capabilities_for(actor: AuthUser, target: User) -> Capabilities:
    return resolve_capabilities(
        actor.role,
        actor.tenant_id,
        target.tenant_id,
        is_self=actor.id == target.id,
        target_role=target.role,
    )


def get_user_or_404(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def visible_users(actor: AuthUser, tenant_id: Optional[int] = None, include_inactive: bool = False):
    query = User.query
    if actor.is_super_admin:
        if tenant_id:
            query = query.filter(User.tenant_id == tenant_id)
    else:
        query = query.filter(User.tenant_id == actor.tenant_id)
    if not include_inactive:
        query = query.filter(User.is_active.is_(True))
    return query.order_by(User.role, User.name).all()


def _check_capacity(tenant: Tenant) -> None:
    if len(tenant.users) >= tenant.max_users:
        raise ValidationError(
            f"User limit reached for this clinic ({tenant.max_users} maximum)",
            maxUsers=tenant.max_users,
        )


def _check_email_free(email: str, current: Optional[User] = None) -> None:
    clash = User.query.filter_by(email=email).first()
    if clash is not None and clash is not current:
        raise ValidationError("A user with this email already exists")


def create_user(actor: AuthUser, data: dict) -> User:
    email = (data.get("email") or "").strip().lower()
    name = (data.get("name") or "").strip()
    password = data.get("password") or ""
    if not email or not name or not password:
        raise ValidationError("Email, name and password are required")

    role = data.get("role") or ROLE_USER
    if not can_assign_role(actor.role, role):
        raise AuthorizationError("You may not create users with this role")

    if actor.is_super_admin:
        tenant_id = safe_int(data.get("tenantId")) or None
    else:
        tenant_id = actor.tenant_id
    tenant = None
    if tenant_id:
        tenant = db.session.get(Tenant, tenant_id)
        if tenant is None:
            raise ValidationError("Clinic not found")
        _check_capacity(tenant)
    elif role != ROLE_SUPER_ADMIN:
        raise ValidationError("tenantId is required for clinic users")

    _check_email_free(email)
    user = User(
        email=email,
        name=name,
        password_hash=hash_password(password),
        role=role,
        tenant_id=tenant.id if tenant else None,
        is_active=parse_bool(data.get("isActive"), True),
    )
    db.session.add(user)
    db.session.commit()
    logger.info("User %s created by %s", user.email, actor.id)
    return user


def update_user(actor: AuthUser, user: User, data: dict) -> list[str]:
    """Apply *data* within the actor's capabilities; returns the changed fields."""
    caps = capabilities_for(actor, user)
    if not caps.can_edit:
        raise AuthorizationError("Access denied")
    is_self = actor.id == user.id
    # a plain user may only change their own name and password
    manager = actor.is_super_admin or not is_self
    changed: list[str] = []

    if data.get("name"):
        user.name = data["name"].strip()
        changed.append("name")
    if data.get("email"):
        email = data["email"].strip().lower()
        if email != user.email:
            if is_self and actor.role == ROLE_USER:
                raise AuthorizationError("You may not change your own email")
            _check_email_free(email, current=user)
            user.email = email
            changed.append("email")
    if data.get("password"):
        user.password_hash = hash_password(data["password"])
        changed.append("password")

    if data.get("role") and data["role"] != user.role:
        if is_self or not can_assign_role(actor.role, data["role"]) or not manager:
            raise AuthorizationError("You may not assign this role")
        user.role = data["role"]
        changed.append("role")

    if "tenantId" in data and actor.is_super_admin:
        tenant_id = safe_int(data.get("tenantId")) or None
        if tenant_id and tenant_id != user.tenant_id:
            tenant = db.session.get(Tenant, tenant_id)
            if tenant is None:
                raise ValidationError("Clinic not found")
            _check_capacity(tenant)
            user.tenant_id = tenant.id
            changed.append("tenantId")

    if "isActive" in data:
        active = parse_bool(data["isActive"], user.is_active)
        if active != user.is_active:
            if is_self:
                raise ValidationError("You cannot deactivate your own account")
            if not manager:
                raise AuthorizationError("Access denied")
            user.is_active = active
            changed.append("isActive")
            if not active:
                revoke_user_sessions(user.id)
                revoke_user_tokens(user.id)

    db.session.commit()
    return changed


def delete_user(actor: AuthUser, user: User) -> None:
    if actor.id == user.id:
        raise ValidationError("You cannot delete your own account")
    if user.role == ROLE_SUPER_ADMIN and not actor.is_super_admin:
        raise AuthorizationError("Only super admins can delete other super admins")
    if not capabilities_for(actor, user).can_delete:
        raise AuthorizationError("Access denied")
    user_id = user.id
    revoke_user_sessions(user_id)
    db.session.delete(user)
    db.session.commit()
    logger.info("User %s deleted by %s", user_id, actor.id)
