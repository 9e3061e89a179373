"""Product access resolution.

A tenant may use a product only when both gates hold:

* its plan includes the product (an active ``PlanProduct``), and
* the product is switched on for the tenant (an active ``TenantProduct``).

SUPER_ADMIN users bypass both gates. The bypass lives in
:func:`check_user_access` only; validate-access and SSO issuance both go
through it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import ROLE_SUPER_ADMIN, PlanProduct, Product, Tenant, TenantProduct, User
from services.errors import ValidationError
from utils import utc_now

logger = logging.getLogger(__name__)

PRODUCT_UNAVAILABLE = "Product not found or inactive"
USER_UNAVAILABLE = "User not found or inactive"
TENANT_NOT_FOUND = "Clinic not found"
NO_TENANT = "User does not belong to any clinic"
SUPER_ADMIN_REASON = "Super Admin - full access"


@dataclass
class AccessDecision:
    """Outcome of an access check; ``status_code`` is the HTTP status to use."""
    has_access: bool
    reason: Optional[str] = None
    error: Optional[str] = None
    status_code: int = 200
    product: Optional[Product] = None
    tenant: Optional[Tenant] = None
    user: Optional[object] = None
    plan_product: Optional[PlanProduct] = None
    tenant_product: Optional[TenantProduct] = None

    @classmethod
    def denied(cls, error: str, status_code: int = 200, **kwargs) -> "AccessDecision":
        return cls(has_access=False, error=error, status_code=status_code, **kwargs)

    @property
    def config_layers(self) -> dict:
        return {
            "plan": self.plan_product.config if self.plan_product else None,
            "tenant": self.tenant_product.config if self.tenant_product else None,
        }

    def to_dict(self) -> dict:
        data: dict = {"hasAccess": self.has_access}
        if self.reason:
            data["reason"] = self.reason
        if self.error:
            data["error"] = self.error
        if not self.has_access:
            if self.tenant is not None:
                data["tenant"] = {
                    "name": self.tenant.name,
                    "slug": self.tenant.slug,
                    "plan": self.tenant.plan.name if self.tenant.plan else None,
                }
            return data

        if self.tenant_product is not None:
            data["product"] = self.product.summary()
            data["tenant"] = {
                "id": self.tenant.id,
                "name": self.tenant.name,
                "slug": self.tenant.slug,
                "cnpj": self.tenant.cnpj,
                "plan": self.tenant.plan.summary() if self.tenant.plan else None,
            }
            data["config"] = {
                **self.config_layers,
                "effective": effective_config(
                    self.product, self.plan_product, self.tenant_product
                ),
            }
        if self.user is not None:
            data["user"] = {
                "id": self.user.id,
                "email": self.user.email,
                "name": self.user.name,
                "role": self.user.role,
            }
        return data


def effective_config(
    product: Product,
    plan_product: Optional[PlanProduct] = None,
    tenant_product: Optional[TenantProduct] = None,
) -> dict:
    """Merge config layers, later layers winning: product default, plan, tenant."""
    merged: dict = {}
    for layer in (
        product.default_config if product else None,
        plan_product.config if plan_product else None,
        tenant_product.config if tenant_product else None,
    ):
        if isinstance(layer, dict):
            merged.update(layer)
    return merged


def get_active_product(slug: str) -> Optional[Product]:
    product = Product.query.filter_by(slug=slug).first()
    if product is None or not product.is_active:
        return None
    return product


def check_tenant_access(tenant: Tenant, product: Product) -> AccessDecision:
    """Apply the plan gate and then the activation gate for *tenant*."""
    plan_product = PlanProduct.query.filter_by(
        plan_id=tenant.plan_id, product_id=product.id, is_active=True
    ).first()
    if plan_product is None:
        plan_name = tenant.plan.name if tenant.plan else "?"
        return AccessDecision.denied(
            f'Plan "{plan_name}" of clinic "{tenant.name}" does not include '
            f"the {product.name} module",
            product=product,
            tenant=tenant,
        )

    tenant_product = TenantProduct.query.filter_by(
        tenant_id=tenant.id, product_id=product.id, is_active=True
    ).first()
    if tenant_product is None:
        return AccessDecision.denied(
            f'Product {product.name} is not active for clinic "{tenant.name}"',
            product=product,
            tenant=tenant,
        )

    return AccessDecision(
        has_access=True,
        product=product,
        tenant=tenant,
        plan_product=plan_product,
        tenant_product=tenant_product,
    )


def check_user_access(user, product: Product) -> AccessDecision:
    """Access check for a user (model row or session snapshot)."""
    if user.role == ROLE_SUPER_ADMIN:
        return AccessDecision(
            has_access=True, reason=SUPER_ADMIN_REASON, product=product, user=user
        )

    tenant = db.session.get(Tenant, user.tenant_id) if user.tenant_id else None
    if tenant is None:
        return AccessDecision.denied(NO_TENANT, product=product, user=user)

    decision = check_tenant_access(tenant, product)
    decision.user = user
    return decision


def record_access(tenant_product: TenantProduct) -> None:
    """Bump usage counters. Lost updates under concurrency are tolerated."""
    try:
        TenantProduct.query.filter_by(id=tenant_product.id).update(
            {
                TenantProduct.access_count: TenantProduct.access_count + 1,
                TenantProduct.last_accessed: utc_now(),
            },
            synchronize_session=False,
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.warning(
            "Could not update access statistics for tenant product %s",
            tenant_product.id,
        )


def resolve_access(
    product_slug: Optional[str],
    user_email: Optional[str] = None,
    tenant_slug: Optional[str] = None,
) -> AccessDecision:
    """Decide whether a user (by e-mail) or a clinic (by slug) may use a product."""
    if not product_slug or not (user_email or tenant_slug):
        raise ValidationError(
            "Required parameters: productSlug and (userEmail or tenantSlug)",
            hasAccess=False,
        )

    product = get_active_product(product_slug)
    if product is None:
        return AccessDecision.denied(PRODUCT_UNAVAILABLE, status_code=404)

    if user_email:
        user = User.query.filter_by(email=user_email.strip().lower()).first()
        if user is None or not user.is_active:
            return AccessDecision.denied(USER_UNAVAILABLE, product=product)
        decision = check_user_access(user, product)
    else:
        tenant = Tenant.query.filter_by(slug=tenant_slug).first()
        if tenant is None:
            return AccessDecision.denied(TENANT_NOT_FOUND, product=product)
        decision = check_tenant_access(tenant, product)

    if decision.has_access and decision.tenant_product is not None:
        record_access(decision.tenant_product)
        logger.info(
            "Access granted to %s for tenant %s", product.slug, decision.tenant.slug
        )
    return decision
