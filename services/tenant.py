"""Clinic (tenant) administration and plan entitlement synchronisation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError

from extensions import db
from models import (
    ROLE_ADMIN,
    TENANT_ACTIVE,
    VALID_TENANT_STATUSES,
    Plan,
    PlanProduct,
    Tenant,
    TenantProduct,
    User,
)
from services.auth import hash_password
from services.errors import InvariantError, NotFoundError, ValidationError
from services.sso import revoke_tokens_for_tenant, revoke_tokens_for_tenant_product
from utils import is_valid_slug, isoformat, safe_int

logger = logging.getLogger(__name__)

# JSON key -> Tenant attribute for plain profile fields.
PROFILE_FIELDS = {
    "domain": "domain",
    "cnpj": "cnpj",
    "legalName": "legal_name",
    "postalCode": "postal_code",
    "address": "address",
    "city": "city",
    "state": "state",
}


@dataclass
class SyncResult:
    activated: int = 0
    deactivated: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.activated or self.deactivated)


def get_tenant_or_404(tenant_id: int) -> Tenant:
    tenant = db.session.get(Tenant, tenant_id)
    if tenant is None:
        raise NotFoundError("Clinic not found")
    return tenant


def get_plan_or_error(plan_id, error_cls=ValidationError) -> Plan:
    plan = db.session.get(Plan, safe_int(plan_id)) if plan_id else None
    if plan is None:
        raise error_cls("Plan not found")
    return plan


# ---------------------------------------------------------------------------
# Entitlement sync
# ---------------------------------------------------------------------------

def sync_tenant_products(tenant: Tenant) -> SyncResult:
    """Bring the tenant's activations in line with its plan. Does not commit.

    Products of the plan get an active TenantProduct (created or re-enabled);
    active TenantProducts outside the plan are switched off and their SSO
    tokens revoked. Rows already in the right state are left untouched, so
    repeated runs change nothing.
    """
    result = SyncResult()
    plan_products = PlanProduct.query.filter_by(plan_id=tenant.plan_id, is_active=True).all()
    entitled = {pp.product_id: pp for pp in plan_products}
    existing = {
        tp.product_id: tp
        for tp in TenantProduct.query.filter_by(tenant_id=tenant.id).all()
    }

    for product_id, plan_product in entitled.items():
        row = existing.get(product_id)
        if row is None:
            db.session.add(
                TenantProduct(
                    tenant_id=tenant.id,
                    product_id=product_id,
                    config=dict(plan_product.config or {}),
                    is_active=True,
                )
            )
            result.activated += 1
        elif not row.is_active:
            row.is_active = True
            result.activated += 1

    for product_id, row in existing.items():
        if row.is_active and product_id not in entitled:
            row.is_active = False
            revoke_tokens_for_tenant_product(tenant.id, product_id)
            result.deactivated += 1

    db.session.flush()
    if result.changed:
        logger.info(
            "Synced products for tenant %s: %s activated, %s deactivated",
            tenant.slug,
            result.activated,
            result.deactivated,
        )
    return result


def reconcile_tenant(tenant_id: int) -> SyncResult:
    """Sync one tenant and commit; a racing insert is retried as an update."""
    for attempt in range(2):
        tenant = get_tenant_or_404(tenant_id)
        try:
            result = sync_tenant_products(tenant)
            db.session.commit()
            return result
        except IntegrityError:
            db.session.rollback()
            if attempt:
                raise
            logger.warning("Concurrent product sync for tenant %s, retrying", tenant_id)
    return SyncResult()


def sync_all_tenants() -> dict:
    """Reconcile every ACTIVE tenant with its plan."""
    tenant_ids = [t.id for t in Tenant.query.filter_by(status=TENANT_ACTIVE).all()]
    tenants_updated = activated = deactivated = 0
    for tenant_id in tenant_ids:
        result = reconcile_tenant(tenant_id)
        if result.changed:
            tenants_updated += 1
        activated += result.activated
        deactivated += result.deactivated
    return {
        "totalTenants": len(tenant_ids),
        "tenantsUpdated": tenants_updated,
        "productsActivated": activated,
        "productsDeactivated": deactivated,
    }


# ---------------------------------------------------------------------------
# Tenant CRUD
# ---------------------------------------------------------------------------

def tenant_stats(tenant: Tenant) -> dict:
    users = tenant.users
    active = [u for u in users if u.is_active]
    logins = [u.last_login for u in active if u.last_login]
    return {
        "totalUsers": len(users),
        "activeUsers": len(active),
        "adminCount": sum(1 for u in active if u.role == ROLE_ADMIN),
        "userCount": sum(1 for u in active if u.role != ROLE_ADMIN),
        "lastActivity": isoformat(max(logins)) if logins else None,
    }


def _check_slug(slug: str, current: Optional[Tenant] = None) -> None:
    if not is_valid_slug(slug):
        raise ValidationError("Slug may contain only lowercase letters, digits and hyphens")
    clash = Tenant.query.filter_by(slug=slug).first()
    if clash is not None and clash is not current:
        raise ValidationError("Slug already exists")


def create_tenant_with_admin(data: dict) -> tuple[Tenant, User]:
    """Create a clinic together with its first ADMIN user in one transaction."""
    required = ("name", "slug", "planId", "adminEmail", "adminName", "adminPassword")
    missing = [key for key in required if not data.get(key)]
    if missing:
        raise ValidationError(f"Required fields: {', '.join(required)}", missing=missing)

    slug = data["slug"].strip()
    _check_slug(slug)
    email = data["adminEmail"].strip().lower()
    if User.query.filter_by(email=email).first() is not None:
        raise ValidationError("Email already in use")
    plan = get_plan_or_error(data["planId"])

    tenant = Tenant(
        name=data["name"].strip(),
        slug=slug,
        plan_id=plan.id,
        status=TENANT_ACTIVE,
        max_users=safe_int(data.get("maxUsers"), plan.max_users),
    )
    for key, attr in PROFILE_FIELDS.items():
        if data.get(key):
            setattr(tenant, attr, data[key])
    admin = User(
        email=email,
        name=data["adminName"].strip(),
        password_hash=hash_password(data["adminPassword"]),
        role=ROLE_ADMIN,
        tenant=tenant,
        is_active=True,
    )
    try:
        db.session.add_all([tenant, admin])
        db.session.flush()
        sync_tenant_products(tenant)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Created tenant %s with admin %s", tenant.slug, admin.email)
    return tenant, admin


def _apply_tenant_fields(tenant: Tenant, data: dict) -> list[str]:
    changed: list[str] = []
    if data.get("name"):
        tenant.name = data["name"].strip()
        changed.append("name")
    if data.get("slug") and data["slug"] != tenant.slug:
        _check_slug(data["slug"], current=tenant)
        tenant.slug = data["slug"]
        changed.append("slug")
    if data.get("maxUsers"):
        max_users = safe_int(data["maxUsers"], tenant.max_users)
        if max_users < 1:
            raise ValidationError("maxUsers must be at least 1")
        tenant.max_users = max_users
        changed.append("maxUsers")
    for key, attr in PROFILE_FIELDS.items():
        if key in data:
            setattr(tenant, attr, data[key])
            changed.append(key)

    status = data.get("status")
    if status and status != tenant.status:
        if status not in VALID_TENANT_STATUSES:
            raise ValidationError(f"Invalid status: {status}")
        tenant.status = status
        changed.append("status")
        if status != TENANT_ACTIVE:
            revoke_tokens_for_tenant(tenant.id)

    plan_id = data.get("planId")
    if plan_id and safe_int(plan_id) != tenant.plan_id:
        plan = get_plan_or_error(plan_id, NotFoundError)
        if not plan.is_active:
            raise ValidationError("Plan is not active")
        tenant.plan = plan
        changed.append("planId")
        db.session.flush()
        sync_tenant_products(tenant)
    return changed


def update_tenant(tenant: Tenant, data: dict) -> list[str]:
    """Apply *data* to *tenant* and commit. Returns the changed field names.

    A plan change and the product re-sync it triggers commit together. Leaving
    ACTIVE status revokes every outstanding SSO token of the clinic.
    """
    try:
        changed = _apply_tenant_fields(tenant, data)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return changed


def delete_tenant(tenant: Tenant) -> None:
    """Delete a clinic that has no regular users left.

    Its admins, their sessions and tokens, and its product activations go with it.
    """
    non_admins = [u for u in tenant.users if u.role != ROLE_ADMIN]
    if non_admins:
        raise InvariantError(
            f"Cannot delete a clinic that still has {len(non_admins)} regular "
            "user(s). Remove all non-admin users first.",
            count=len(non_admins),
        )
    slug = tenant.slug
    db.session.delete(tenant)
    db.session.commit()
    logger.info("Deleted tenant %s", slug)
