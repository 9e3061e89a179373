"""Subscription plan routes, including the plan's product entitlements."""

from flask import Blueprint, jsonify, request
from sqlalchemy import func

from extensions import db
from models import Plan, PlanProduct, Product, Tenant, TenantProduct
from services import audit
from services.auth import get_current_user, login_required, super_admin_required
from services.errors import InvariantError, NotFoundError, ValidationError
from utils import is_valid_slug, parse_bool, safe_int

plans_bp = Blueprint("plans", __name__)


def _get_plan_or_404(plan_id: int) -> Plan:
    plan = db.session.get(Plan, plan_id)
    if plan is None:
        raise NotFoundError("Plan not found")
    return plan


def _tenant_count(plan_id: int) -> int:
    return Tenant.query.filter_by(plan_id=plan_id).count()


def _apply_plan_fields(plan: Plan, data: dict) -> None:
    if data.get("name"):
        plan.name = data["name"].strip()
    slug = data.get("slug")
    if slug and slug != plan.slug:
        if not is_valid_slug(slug):
            raise ValidationError("Slug may contain only lowercase letters, digits and hyphens")
        clash = Plan.query.filter_by(slug=slug).first()
        if clash is not None and clash is not plan:
            raise ValidationError("A plan with this slug already exists")
        plan.slug = slug
    if "description" in data:
        plan.description = data["description"]
    if data.get("maxUsers") is not None:
        max_users = safe_int(data["maxUsers"], plan.max_users or 0)
        if max_users < 1:
            raise ValidationError("maxUsers must be at least 1")
        plan.max_users = max_users
    if "features" in data:
        features = data["features"] or []
        if not isinstance(features, list):
            raise ValidationError("features must be a list")
        plan.features = features
    if "price" in data:
        plan.price = data["price"]
    if "isActive" in data:
        plan.is_active = parse_bool(data["isActive"], plan.is_active)


@plans_bp.route("/api/plans")
@login_required
def list_plans():
    counts = dict(
        db.session.query(Tenant.plan_id, func.count(Tenant.id)).group_by(Tenant.plan_id).all()
    )
    plans = Plan.query.filter_by(is_active=True).order_by(Plan.price.asc()).all()
    return jsonify(
        {
            "plans": [
                {**p.to_dict(), "stats": {"totalTenants": counts.get(p.id, 0)}}
                for p in plans
            ]
        }
    )


@plans_bp.route("/api/plans", methods=["POST"])
@super_admin_required
def create_plan():
    data = request.get_json(silent=True) or {}
    if not data.get("name") or not data.get("slug"):
        raise ValidationError("Name and slug are required")

    plan = Plan(name="", slug="", max_users=10, features=[], is_active=True)
    _apply_plan_fields(plan, data)
    db.session.add(plan)
    db.session.commit()

    audit.log_event(
        audit.CREATE_PLAN,
        resource=f"plan:{plan.id}",
        details={"slug": plan.slug},
        user_id=get_current_user().id,
    )
    return jsonify({"plan": plan.to_dict()}), 201


@plans_bp.route("/api/plans/<int:plan_id>")
@login_required
def get_plan(plan_id: int):
    plan = _get_plan_or_404(plan_id)
    return jsonify(
        {
            "plan": {
                **plan.to_dict(),
                "tenants": [t.summary() for t in plan.tenants],
                "stats": {"totalTenants": len(plan.tenants)},
            }
        }
    )


@plans_bp.route("/api/plans/<int:plan_id>", methods=["PUT"])
@super_admin_required
def update_plan(plan_id: int):
    plan = _get_plan_or_404(plan_id)
    data = request.get_json(silent=True) or {}
    _apply_plan_fields(plan, data)
    db.session.commit()

    audit.log_event(
        audit.UPDATE_PLAN,
        resource=f"plan:{plan.id}",
        details={"fields": sorted(data)},
        user_id=get_current_user().id,
    )
    return jsonify({"plan": {**plan.to_dict(), "stats": {"totalTenants": _tenant_count(plan.id)}}})


@plans_bp.route("/api/plans/<int:plan_id>", methods=["DELETE"])
@super_admin_required
def delete_plan(plan_id: int):
    plan = _get_plan_or_404(plan_id)
    count = _tenant_count(plan.id)
    if count:
        raise InvariantError(
            f"Cannot delete this plan, {count} clinic(s) are using it", tenantsCount=count
        )
    slug = plan.slug
    # PlanProduct rows go with the plan in the same commit
    db.session.delete(plan)
    db.session.commit()

    audit.log_event(
        audit.DELETE_PLAN,
        resource=f"plan:{plan_id}",
        details={"slug": slug},
        user_id=get_current_user().id,
    )
    return jsonify({"message": "Plan deleted"})


# ---------------------------------------------------------------------------
# Plan products
# ---------------------------------------------------------------------------

def _get_plan_product_or_404(plan_id: int, product_id: int) -> PlanProduct:
    plan_product = PlanProduct.query.filter_by(plan_id=plan_id, product_id=product_id).first()
    if plan_product is None:
        raise NotFoundError("Plan-product association not found")
    return plan_product


@plans_bp.route("/api/plans/<int:plan_id>/products")
@super_admin_required
def list_plan_products(plan_id: int):
    _get_plan_or_404(plan_id)
    rows = (
        PlanProduct.query.filter_by(plan_id=plan_id)
        .order_by(PlanProduct.created_at.desc())
        .all()
    )
    return jsonify({"planProducts": [pp.to_dict() for pp in rows]})


@plans_bp.route("/api/plans/<int:plan_id>/products", methods=["POST"])
@super_admin_required
def attach_product(plan_id: int):
    plan = _get_plan_or_404(plan_id)
    data = request.get_json(silent=True) or {}
    product_id = safe_int(data.get("productId"))
    if not product_id:
        raise ValidationError("productId is required")
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found")
    if PlanProduct.query.filter_by(plan_id=plan.id, product_id=product.id).first():
        raise ValidationError("Product is already associated with this plan")

    plan_product = PlanProduct(
        plan_id=plan.id,
        product_id=product.id,
        config=data.get("config"),
        is_active=parse_bool(data.get("isActive"), True),
    )
    db.session.add(plan_product)
    db.session.commit()
    audit.log_event(
        audit.UPDATE_PLAN,
        resource=f"plan:{plan.id}",
        details={"attachedProduct": product.slug},
        user_id=get_current_user().id,
    )
    return jsonify({"planProduct": plan_product.to_dict()}), 201


@plans_bp.route("/api/plans/<int:plan_id>/products/<int:product_id>", methods=["PUT"])
@super_admin_required
def update_plan_product(plan_id: int, product_id: int):
    plan_product = _get_plan_product_or_404(plan_id, product_id)
    data = request.get_json(silent=True) or {}
    if "config" in data:
        plan_product.config = data["config"]
    if "isActive" in data:
        plan_product.is_active = parse_bool(data["isActive"], plan_product.is_active)
    db.session.commit()
    return jsonify({"planProduct": plan_product.to_dict()})


@plans_bp.route("/api/plans/<int:plan_id>/products/<int:product_id>", methods=["DELETE"])
@super_admin_required
def detach_product(plan_id: int, product_id: int):
    plan_product = _get_plan_product_or_404(plan_id, product_id)
    in_use = (
        Tenant.query.join(TenantProduct, TenantProduct.tenant_id == Tenant.id)
        .filter(
            Tenant.plan_id == plan_id,
            TenantProduct.product_id == product_id,
            TenantProduct.is_active.is_(True),
        )
        .count()
    )
    if in_use:
        raise InvariantError(
            "Cannot remove this product from the plan while clinics are using it",
            tenantsCount=in_use,
        )
    db.session.delete(plan_product)
    db.session.commit()
    audit.log_event(
        audit.UPDATE_PLAN,
        resource=f"plan:{plan_id}",
        details={"detachedProductId": product_id},
        user_id=get_current_user().id,
    )
    return jsonify({"message": "Association removed"})
