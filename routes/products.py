"""Product catalogue routes and the SSO handoff endpoints."""

from flask import Blueprint, jsonify, request
from sqlalchemy import func

from extensions import db
from models import PlanProduct, Product, Tenant, TenantProduct
from services import audit
from services.auth import (
    get_current_user,
    login_required,
    require_user,
    super_admin_required,
)
from services.errors import NotFoundError, ValidationError
from services.sso import issue_token, validate_token
from utils import is_valid_slug, parse_bool, safe_int

products_bp = Blueprint("products", __name__)

EDITABLE_FIELDS = {
    "name": "name",
    "description": "description",
    "icon": "icon",
    "color": "color",
    "baseUrl": "base_url",
    "defaultConfig": "default_config",
}


def _get_product_or_404(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found")
    return product


def _check_slug(slug: str, current: Product = None) -> None:
    if not is_valid_slug(slug):
        raise ValidationError("Slug may contain only lowercase letters, digits and hyphens")
    clash = Product.query.filter_by(slug=slug).first()
    if clash is not None and clash is not current:
        raise ValidationError("Slug already exists")


def _product_detail(product: Product) -> dict:
    return {
        **product.to_dict(),
        "plans": [
            {**pp.plan.summary(), "isActive": pp.is_active} for pp in product.plan_products
        ],
        "tenants": [
            {**tp.tenant.summary(), "isActive": tp.is_active}
            for tp in product.tenant_products
        ],
    }


@products_bp.route("/api/products")
@login_required
def list_products():
    plan_counts = dict(
        db.session.query(PlanProduct.product_id, func.count(PlanProduct.id))
        .group_by(PlanProduct.product_id)
        .all()
    )
    tenant_counts = dict(
        db.session.query(TenantProduct.product_id, func.count(TenantProduct.id))
        .group_by(TenantProduct.product_id)
        .all()
    )
    products = Product.query.filter_by(is_active=True).order_by(Product.name).all()
    return jsonify(
        {
            "products": [
                {
                    **p.to_dict(),
                    "counts": {
                        "planProducts": plan_counts.get(p.id, 0),
                        "tenantProducts": tenant_counts.get(p.id, 0),
                    },
                }
                for p in products
            ]
        }
    )


@products_bp.route("/api/products", methods=["POST"])
@super_admin_required
def create_product():
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    slug = (data.get("slug") or "").strip()
    if not name or not slug:
        raise ValidationError("Name and slug are required")
    _check_slug(slug)

    product = Product(slug=slug, is_active=True)
    for key, attr in EDITABLE_FIELDS.items():
        if key in data:
            setattr(product, attr, data[key])
    product.name = name
    db.session.add(product)
    db.session.commit()

    user = get_current_user()
    audit.log_event(
        audit.CREATE_PRODUCT,
        resource=f"product:{product.id}",
        details={"slug": product.slug},
        user_id=user.id,
    )
    return jsonify({"product": product.to_dict()}), 201


@products_bp.route("/api/products/<int:product_id>")
@login_required
def get_product(product_id: int):
    return jsonify({"product": _product_detail(_get_product_or_404(product_id))})


@products_bp.route("/api/products/<int:product_id>", methods=["PUT"])
@super_admin_required
def update_product(product_id: int):
    product = _get_product_or_404(product_id)
    data = request.get_json(silent=True) or {}

    slug = data.get("slug")
    if slug and slug != product.slug:
        _check_slug(slug, current=product)
        product.slug = slug
    for key, attr in EDITABLE_FIELDS.items():
        if key in data and (key != "name" or data[key]):
            setattr(product, attr, data[key])
    if "isActive" in data:
        product.is_active = parse_bool(data["isActive"], product.is_active)
    db.session.commit()

    user = get_current_user()
    audit.log_event(
        audit.UPDATE_PRODUCT,
        resource=f"product:{product.id}",
        details={"fields": sorted(data)},
        user_id=user.id,
    )
    return jsonify({"product": product.to_dict()})


@products_bp.route("/api/products/<int:product_id>", methods=["DELETE"])
@super_admin_required
def delete_product(product_id: int):
    # Products are never removed; plan and tenant links keep pointing at them
    product = _get_product_or_404(product_id)
    product.is_active = False
    db.session.commit()

    user = get_current_user()
    audit.log_event(
        audit.DEACTIVATE_PRODUCT, resource=f"product:{product.id}", user_id=user.id
    )
    return jsonify({"message": "Product deactivated"})


@products_bp.route("/api/products/<int:product_id>/tenants")
@login_required
def list_product_tenants(product_id: int):
    _get_product_or_404(product_id)
    rows = (
        TenantProduct.query.filter_by(product_id=product_id)
        .order_by(TenantProduct.created_at.desc())
        .all()
    )
    return jsonify(
        {
            "tenantProducts": [
                {**tp.to_dict(), "tenant": tp.tenant.to_dict()} for tp in rows
            ]
        }
    )


@products_bp.route("/api/products/<int:product_id>/tenants", methods=["POST"])
@super_admin_required
def activate_for_tenant(product_id: int):
    """Switch a product on for a clinic whose plan already includes it."""
    product = _get_product_or_404(product_id)
    data = request.get_json(silent=True) or {}
    tenant_id = safe_int(data.get("tenantId"))
    if not tenant_id:
        raise ValidationError("tenantId is required")
    tenant = db.session.get(Tenant, tenant_id)
    if tenant is None:
        raise NotFoundError("Clinic not found")

    in_plan = PlanProduct.query.filter_by(
        plan_id=tenant.plan_id, product_id=product.id, is_active=True
    ).first()
    if in_plan is None:
        raise ValidationError("The clinic's plan does not include this product")
    tenant_product = TenantProduct.query.filter_by(
        tenant_id=tenant.id, product_id=product.id
    ).first()
    status = 201
    if tenant_product is not None:
        if tenant_product.is_active:
            raise ValidationError("Product is already activated for this clinic")
        # re-enable the existing association
        tenant_product.is_active = True
        if data.get("config") is not None:
            tenant_product.config = data["config"]
        status = 200
    else:
        tenant_product = TenantProduct(
            tenant_id=tenant.id,
            product_id=product.id,
            config=data.get("config") or product.default_config,
            is_active=True,
        )
        db.session.add(tenant_product)
    db.session.commit()
    return (
        jsonify(
            {
                "tenantProduct": {
                    **tenant_product.to_dict(),
                    "tenant": tenant.summary(),
                    "product": product.summary(),
                }
            }
        ),
        status,
    )


# ---------------------------------------------------------------------------
# SSO handoff
# ---------------------------------------------------------------------------

@products_bp.route("/api/products/sso/<product_slug>", methods=["POST"])
def sso_issue(product_slug: str):
    user = require_user()
    return jsonify(issue_token(user, product_slug))


@products_bp.route("/api/products/sso/<product_slug>", methods=["GET"])
def sso_validate(product_slug: str):
    token = request.args.get("token")
    if not token:
        raise ValidationError("Token not provided")
    return jsonify(validate_token(product_slug, token))
