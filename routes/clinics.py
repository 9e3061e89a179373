"""Clinic (tenant) administration routes and per-clinic product activations."""

from flask import Blueprint, jsonify, request

from extensions import db
from models import TENANT_ACTIVE, PlanProduct, Tenant, TenantProduct
from services import audit
from services.auth import get_current_user, role_required, super_admin_required
from services.errors import AuthorizationError, NotFoundError
from services.permissions import resolve_capabilities
from services.sso import revoke_tokens_for_tenant_product
from services.tenant import (
    create_tenant_with_admin,
    delete_tenant,
    get_tenant_or_404,
    sync_all_tenants,
    tenant_stats,
    update_tenant,
)
from utils import isoformat, parse_bool

clinics_bp = Blueprint("clinics", __name__)

# Fields only a super admin may change on an existing clinic.
RESTRICTED_FIELDS = {
    "slug": "slug",
    "status": "status",
    "planId": "plan_id",
    "maxUsers": "max_users",
}


def _restricted_changes(tenant: Tenant, data: dict) -> list[str]:
    return [
        key
        for key, attr in RESTRICTED_FIELDS.items()
        if data.get(key) not in (None, "") and str(data[key]) != str(getattr(tenant, attr))
    ]


def _clinic_payload(tenant: Tenant, include_users: bool = False) -> dict:
    data = {**tenant.to_dict(), "stats": tenant_stats(tenant)}
    if include_users:
        data["users"] = [
            {
                "id": u.id,
                "name": u.name,
                "email": u.email,
                "role": u.role,
                "isActive": u.is_active,
                "lastLogin": isoformat(u.last_login),
            }
            for u in tenant.users
        ]
    return data


def _visible_tenant(tenant_id: int, edit: bool = False) -> Tenant:
    user = get_current_user()
    tenant = get_tenant_or_404(tenant_id)
    caps = resolve_capabilities(user.role, user.tenant_id, tenant.id)
    if not (caps.can_edit if edit else caps.can_view):
        raise AuthorizationError("Access denied")
    return tenant


@clinics_bp.route("/api/clinics")
@role_required("view_clinic")
def list_clinics():
    user = get_current_user()
    query = Tenant.query.order_by(Tenant.created_at.desc())
    if not user.is_super_admin:
        query = query.filter(Tenant.id == user.tenant_id)
    tenants = query.all()
    return jsonify({"tenants": [_clinic_payload(t) for t in tenants], "total": len(tenants)})


@clinics_bp.route("/api/clinics", methods=["POST"])
@super_admin_required
def create_clinic():
    data = request.get_json(silent=True) or {}
    tenant, admin = create_tenant_with_admin(data)
    audit.log_event(
        audit.CREATE_TENANT,
        resource=f"tenant:{tenant.id}",
        details={"slug": tenant.slug, "planId": tenant.plan_id, "adminEmail": admin.email},
        user_id=get_current_user().id,
        tenant_id=tenant.id,
    )
    return (
        jsonify(
            {
                "message": "Clinic created",
                "tenant": tenant.to_dict(),
                "admin": admin.to_dict(),
            }
        ),
        201,
    )


@clinics_bp.route("/api/clinics/<int:tenant_id>")
@role_required("view_clinic")
def get_clinic(tenant_id: int):
    tenant = _visible_tenant(tenant_id)
    return jsonify(_clinic_payload(tenant, include_users=True))


@clinics_bp.route("/api/clinics/<int:tenant_id>", methods=["PUT"])
@role_required("view_clinic")
def update_clinic(tenant_id: int):
    tenant = _visible_tenant(tenant_id, edit=True)
    user = get_current_user()
    data = request.get_json(silent=True) or {}
    if not user.is_super_admin and _restricted_changes(tenant, data):
        raise AuthorizationError("Only a super admin may change slug, status, plan or user limit")

    previous_status = tenant.status
    changed = update_tenant(tenant, data)
    audit.log_event(
        audit.UPDATE_TENANT,
        resource=f"tenant:{tenant.id}",
        details={"fields": changed},
        user_id=user.id,
        tenant_id=tenant.id,
    )
    if "status" in changed and tenant.status != TENANT_ACTIVE:
        audit.log_event(
            audit.SUSPEND_TENANT,
            resource=f"tenant:{tenant.id}",
            details={"from": previous_status, "to": tenant.status},
            user_id=user.id,
            tenant_id=tenant.id,
        )
    return jsonify({"message": "Clinic updated", "tenant": _clinic_payload(tenant)})


@clinics_bp.route("/api/clinics/<int:tenant_id>", methods=["DELETE"])
@super_admin_required
def delete_clinic(tenant_id: int):
    tenant = get_tenant_or_404(tenant_id)
    slug = tenant.slug
    delete_tenant(tenant)
    audit.log_event(
        audit.DELETE_TENANT,
        resource=f"tenant:{tenant_id}",
        details={"slug": slug},
        user_id=get_current_user().id,
        tenant_id=tenant_id,
    )
    return jsonify({"message": "Clinic deleted"})


@clinics_bp.route("/api/admin/sync-products", methods=["POST"])
@clinics_bp.route("/api/clinics/sync-products", methods=["POST"])
@super_admin_required
def sync_products():
    stats = sync_all_tenants()
    audit.log_event(
        audit.SYNC_TENANT_PRODUCTS,
        resource="tenants",
        details=stats,
        user_id=get_current_user().id,
    )
    return jsonify({"message": "Synchronisation finished", "stats": stats})


# ---------------------------------------------------------------------------
# Per-clinic products
# ---------------------------------------------------------------------------

@clinics_bp.route("/api/tenants/<int:tenant_id>/products")
@role_required("use_products")
def tenant_products(tenant_id: int):
    user = get_current_user()
    if not user.is_super_admin and user.tenant_id != tenant_id:
        raise AuthorizationError("Access denied")
    tenant = get_tenant_or_404(tenant_id)
    activations = {tp.product_id: tp for tp in tenant.tenant_products}
    products = []
    for plan_product in PlanProduct.query.filter_by(plan_id=tenant.plan_id).all():
        tenant_product = activations.get(plan_product.product_id)
        products.append(
            {
                **plan_product.product.to_dict(),
                "hasAccess": bool(
                    tenant_product and tenant_product.is_active and plan_product.is_active
                ),
                "planConfig": plan_product.config,
                "tenantConfig": tenant_product.config if tenant_product else None,
                "tenantProduct": tenant_product.to_dict() if tenant_product else None,
            }
        )
    return jsonify(
        {
            "tenant": {**tenant.summary(), "plan": tenant.plan.summary()},
            "products": products,
        }
    )


def _get_tenant_product_or_404(tenant_id: int, product_id: int) -> TenantProduct:
    tenant_product = TenantProduct.query.filter_by(
        tenant_id=tenant_id, product_id=product_id
    ).first()
    if tenant_product is None:
        raise NotFoundError("Product is not activated for this clinic")
    return tenant_product


@clinics_bp.route("/api/tenants/<int:tenant_id>/products/<int:product_id>", methods=["PUT"])
@super_admin_required
def update_tenant_product(tenant_id: int, product_id: int):
    tenant_product = _get_tenant_product_or_404(tenant_id, product_id)
    data = request.get_json(silent=True) or {}
    if "config" in data:
        tenant_product.config = data["config"]
    if "isActive" in data:
        was_active = tenant_product.is_active
        tenant_product.is_active = parse_bool(data["isActive"], was_active)
        if was_active and not tenant_product.is_active:
            revoke_tokens_for_tenant_product(tenant_id, product_id)
    db.session.commit()
    return jsonify({"tenantProduct": tenant_product.to_dict()})


@clinics_bp.route(
    "/api/tenants/<int:tenant_id>/products/<int:product_id>", methods=["DELETE"]
)
@super_admin_required
def remove_tenant_product(tenant_id: int, product_id: int):
    tenant_product = _get_tenant_product_or_404(tenant_id, product_id)
    revoked = revoke_tokens_for_tenant_product(tenant_id, product_id)
    db.session.delete(tenant_product)
    db.session.commit()
    audit.log_event(
        audit.REMOVE_TENANT_PRODUCT,
        resource=f"tenant:{tenant_id}",
        details={"productId": product_id, "revokedTokens": revoked},
        user_id=get_current_user().id,
        tenant_id=tenant_id,
    )
    return jsonify({"message": "Product removed from clinic", "revokedTokens": revoked})
