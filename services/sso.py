"""SSO handoff tokens for downstream products.

Tokens are HS256-signed (python-jose) and persisted as ``ProductToken`` rows.
The row is authoritative: validation looks it up first, so revocation takes
effect immediately. The signature is still re-checked and a token whose
claims disagree with its row is rejected.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import Optional

from flask import current_app
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import TENANT_ACTIVE, ProductToken, Tenant, User
from services import audit
from services.access import check_user_access, get_active_product, record_access
from services.errors import AuthenticationError, AuthorizationError, NotFoundError
from services.sessions import AuthUser
from utils import is_expired, utc_now

logger = logging.getLogger(__name__)

INVALID_TOKEN = "Invalid or expired token"
WRONG_PRODUCT = "Token is not valid for this product"
CLINIC_NOT_ACTIVE = "Clinic is not active"


def _sso_config():
    return current_app.config["SSO_CONFIG"]


def issue_token(session_user: AuthUser, product_slug: str) -> dict:
    """Mint a token that lets *session_user* enter the product *product_slug*."""
    product = get_active_product(product_slug)
    if product is None:
        raise NotFoundError("Product not found")

    tenant = session_user.tenant
    if not session_user.is_super_admin and tenant and tenant.status != TENANT_ACTIVE:
        audit.log_security_event(
            audit.PERMISSION_DENIED,
            user_id=session_user.id,
            tenant_id=session_user.tenant_id,
            details={"productSlug": product.slug, "reason": "tenant_not_active"},
        )
        raise AuthorizationError(CLINIC_NOT_ACTIVE)

    decision = check_user_access(session_user, product)
    if not decision.has_access:
        audit.log_security_event(
            audit.PERMISSION_DENIED,
            user_id=session_user.id,
            tenant_id=session_user.tenant_id,
            details={"productSlug": product.slug, "reason": decision.error},
        )
        raise AuthorizationError("User does not have access to this product")

    cfg = _sso_config()
    now = utc_now()
    expires_at = now + timedelta(seconds=cfg.token_ttl_seconds)
    payload = {
        "userId": session_user.id,
        "userEmail": session_user.email,
        "userName": session_user.name,
        "userRole": session_user.role,
        "tenantId": session_user.tenant_id,
        "tenantSlug": session_user.tenant.slug if session_user.tenant else None,
        "productId": product.id,
        "productSlug": product.slug,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
        "jti": secrets.token_hex(16),
    }
    token = jwt.encode(payload, cfg.secret, algorithm=cfg.algorithm)

    db.session.add(
        ProductToken(
            token=token,
            user_id=session_user.id,
            product_id=product.id,
            expires_at=expires_at,
            is_revoked=False,
        )
    )
    db.session.commit()

    if decision.tenant_product is not None:
        record_access(decision.tenant_product)

    audit.log_event(
        audit.SSO_TOKEN_ISSUED,
        resource=f"product:{product.slug}",
        details={"productId": product.id},
        user_id=session_user.id,
        tenant_id=session_user.tenant_id,
    )
    logger.info("Issued SSO token for user %s to %s", session_user.id, product.slug)

    if product.base_url:
        redirect_url = f"{product.base_url}?token={token}"
    else:
        redirect_url = f"/products/{product.slug}?token={token}"
    return {
        "token": token,
        "redirectUrl": redirect_url,
        "expiresIn": cfg.token_ttl_seconds,
    }


def _reject(message: str, product_slug: str, record: Optional[ProductToken], reason: str):
    audit.log_event(
        audit.SSO_TOKEN_REJECTED,
        resource=f"product:{product_slug}",
        details={"reason": reason},
        user_id=record.user_id if record else None,
    )
    raise AuthenticationError(message)


def _claims_match(token: str, record: ProductToken) -> bool:
    cfg = _sso_config()
    try:
        claims = jwt.decode(token, cfg.secret, algorithms=[cfg.algorithm])
    except JWTError:
        return False
    return (
        claims.get("userId") == record.user_id
        and claims.get("productId") == record.product_id
    )


def validate_token(product_slug: str, token: Optional[str]) -> dict:
    """Check a handoff token presented by a product and return the user it names.

    Entitlement is not re-evaluated here; revocation is how access is withdrawn
    from outstanding tokens.
    """
    if not token:
        raise AuthenticationError(INVALID_TOKEN)

    record = ProductToken.query.filter_by(token=token).first()
    if record is None:
        _reject(INVALID_TOKEN, product_slug, None, "unknown")
    if record.is_revoked:
        _reject(INVALID_TOKEN, product_slug, record, "revoked")
    if is_expired(record.expires_at):
        _reject(INVALID_TOKEN, product_slug, record, "expired")
    if record.product is None or record.product.slug != product_slug:
        _reject(WRONG_PRODUCT, product_slug, record, "product_mismatch")
    if not _claims_match(token, record):
        _reject(INVALID_TOKEN, product_slug, record, "bad_signature")

    user = db.session.get(User, record.user_id)
    if user is None or not user.is_active:
        _reject(INVALID_TOKEN, product_slug, record, "inactive_user")
    tenant = db.session.get(Tenant, user.tenant_id) if user.tenant_id else None
    user_data = {
        "userId": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "tenant": {"id": tenant.id, "name": tenant.name, "slug": tenant.slug}
        if tenant
        else None,
    }

    try:
        record.last_used = utc_now()
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.warning("Could not record last use of SSO token %s", record.id)

    return {"valid": True, "user": user_data}


def _revoke_where(user_ids_query, product_id: Optional[int] = None) -> int:
    query = ProductToken.query.filter(
        ProductToken.user_id.in_(user_ids_query),
        ProductToken.is_revoked.is_(False),
    )
    if product_id is not None:
        query = query.filter(ProductToken.product_id == product_id)
    return query.update({ProductToken.is_revoked: True}, synchronize_session=False)


def revoke_tokens_for_tenant_product(tenant_id: int, product_id: int) -> int:
    """Revoke outstanding tokens of the tenant's users for one product. The caller commits."""
    user_ids = select(User.id).where(User.tenant_id == tenant_id)
    revoked = _revoke_where(user_ids, product_id)
    if revoked:
        logger.info(
            "Revoked %s SSO tokens for tenant %s product %s", revoked, tenant_id, product_id
        )
    return revoked


def revoke_user_tokens(user_id: int) -> int:
    """Revoke every outstanding token of one user. The caller commits."""
    revoked = _revoke_where(select(User.id).where(User.id == user_id))
    if revoked:
        logger.info("Revoked %s SSO tokens for user %s", revoked, user_id)
    return revoked


def revoke_tokens_for_tenant(tenant_id: int) -> int:
    """Revoke every outstanding token of the tenant's users. The caller commits."""
    user_ids = select(User.id).where(User.tenant_id == tenant_id)
    revoked = _revoke_where(user_ids)
    if revoked:
        logger.info("Revoked %s SSO tokens for tenant %s", revoked, tenant_id)
    return revoked
