"""SQLAlchemy models and role-permission mapping."""

from __future__ import annotations

from extensions import db
from utils import isoformat, utc_now

# ---------------------------------------------------------------------------
# Role / Permission mapping
# ---------------------------------------------------------------------------

ROLE_SUPER_ADMIN = "SUPER_ADMIN"
ROLE_ADMIN = "ADMIN"
ROLE_USER = "USER"

ROLE_PERMISSIONS: dict[str, set[str]] = {
    ROLE_SUPER_ADMIN: {"manage_all"},
    ROLE_ADMIN: {"manage_users", "view_clinic", "view_audit_logs", "use_products"},
    ROLE_USER: {"use_products"},
}

VALID_ROLES = list(ROLE_PERMISSIONS.keys())

# Roles each actor role may hand out when creating or editing users.
ASSIGNABLE_ROLES: dict[str, list[str]] = {
    ROLE_SUPER_ADMIN: [ROLE_SUPER_ADMIN, ROLE_ADMIN, ROLE_USER],
    ROLE_ADMIN: [ROLE_USER],
}

TENANT_ACTIVE = "ACTIVE"
TENANT_SUSPENDED = "SUSPENDED"
TENANT_INACTIVE = "INACTIVE"
VALID_TENANT_STATUSES = {TENANT_ACTIVE, TENANT_SUSPENDED, TENANT_INACTIVE}


# ---------------------------------------------------------------------------
# Plans & products
# ---------------------------------------------------------------------------

class Plan(db.Model):
    """A subscription tier; its PlanProduct rows are the entitlement template."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    slug = db.Column(db.String(60), unique=True, nullable=False)
    description = db.Column(db.Text)
    max_users = db.Column(db.Integer, nullable=False, default=10)
    features = db.Column(db.JSON, default=list)
    price = db.Column(db.Numeric(10, 2, asdecimal=False))  # NULL = free
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    plan_products = db.relationship(
        "PlanProduct", backref="plan", cascade="all, delete-orphan"
    )
    tenants = db.relationship("Tenant", back_populates="plan")

    def summary(self) -> dict:
        return {"id": self.id, "name": self.name, "slug": self.slug}

    def to_dict(self) -> dict:
        return {
            **self.summary(),
            "description": self.description,
            "maxUsers": self.max_users,
            "features": self.features or [],
            "price": self.price,
            "isActive": self.is_active,
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }


class Product(db.Model):
    """An ecosystem application reachable through an SSO handoff.

    Products are deactivated rather than deleted so historical plan/tenant
    associations and issued tokens keep their references.
    """
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    slug = db.Column(db.String(60), unique=True, nullable=False)
    description = db.Column(db.Text)
    icon = db.Column(db.String(60))
    color = db.Column(db.String(20))
    base_url = db.Column(db.String(255))
    default_config = db.Column(db.JSON)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    plan_products = db.relationship("PlanProduct", backref="product")
    tenant_products = db.relationship("TenantProduct", backref="product")

    def summary(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "description": self.description,
        }

    def to_dict(self) -> dict:
        return {
            **self.summary(),
            "icon": self.icon,
            "color": self.color,
            "baseUrl": self.base_url,
            "defaultConfig": self.default_config,
            "isActive": self.is_active,
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }


class PlanProduct(db.Model):
    """Records that a plan entitles its tenants to a product."""
    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(db.Integer, db.ForeignKey("plan.id"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("product.id"), nullable=False)
    config = db.Column(db.JSON)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now)

    # plan = backref from Plan.plan_products
    # product = backref from Product.plan_products

    __table_args__ = (
        db.UniqueConstraint("plan_id", "product_id", name="uq_plan_product"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "planId": self.plan_id,
            "productId": self.product_id,
            "config": self.config,
            "isActive": self.is_active,
            "createdAt": isoformat(self.created_at),
            "plan": self.plan.summary() if self.plan else None,
            "product": self.product.summary() if self.product else None,
        }


# ---------------------------------------------------------------------------
# Tenant
# ---------------------------------------------------------------------------

class Tenant(db.Model):
    """A clinic; its staff may only work while the tenant is ACTIVE."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    slug = db.Column(db.String(60), unique=True, nullable=False)
    domain = db.Column(db.String(120))
    status = db.Column(db.String(20), nullable=False, default=TENANT_ACTIVE)
    plan_id = db.Column(db.Integer, db.ForeignKey("plan.id"), nullable=False)
    max_users = db.Column(db.Integer, nullable=False, default=10)
    cnpj = db.Column(db.String(20))
    legal_name = db.Column(db.String(160))
    postal_code = db.Column(db.String(20))
    address = db.Column(db.String(255))
    city = db.Column(db.String(120))
    state = db.Column(db.String(60))
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    plan = db.relationship("Plan", back_populates="tenants")
    users = db.relationship("User", backref="tenant", cascade="all")
    tenant_products = db.relationship(
        "TenantProduct", backref="tenant", cascade="all, delete-orphan"
    )

    @property
    def is_active(self) -> bool:
        return self.status == TENANT_ACTIVE

    def summary(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "status": self.status,
        }

    def to_dict(self) -> dict:
        return {
            **self.summary(),
            "domain": self.domain,
            "planId": self.plan_id,
            "plan": self.plan.summary() if self.plan else None,
            "maxUsers": self.max_users,
            "cnpj": self.cnpj,
            "legalName": self.legal_name,
            "postalCode": self.postal_code,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }


class TenantProduct(db.Model):
    """Activation record switching a product on/off for one tenant."""
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("product.id"), nullable=False)
    config = db.Column(db.JSON)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    last_accessed = db.Column(db.DateTime)
    access_count = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now)

    # tenant = backref from Tenant.tenant_products
    # product = backref from Product.tenant_products

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "product_id", name="uq_tenant_product"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenantId": self.tenant_id,
            "productId": self.product_id,
            "config": self.config,
            "isActive": self.is_active,
            "lastAccessed": isoformat(self.last_accessed),
            "accessCount": self.access_count,
            "createdAt": isoformat(self.created_at),
        }


# ---------------------------------------------------------------------------
# User & credentials
# ---------------------------------------------------------------------------

class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(160), unique=True, nullable=False)
    name = db.Column(db.String(120), nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default=ROLE_USER)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), index=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    last_login = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    # tenant = backref from Tenant.users
    sessions = db.relationship(
        "UserSession", backref="user", cascade="all, delete-orphan"
    )
    product_tokens = db.relationship(
        "ProductToken", backref="user", cascade="all, delete-orphan"
    )

    @property
    def is_super_admin(self) -> bool:
        return self.role == ROLE_SUPER_ADMIN

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "isActive": self.is_active,
            "tenantId": self.tenant_id,
            "tenant": self.tenant.summary() if self.tenant else None,
            "lastLogin": isoformat(self.last_login),
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }


class UserSession(db.Model):
    """Server-side record behind the ``session`` cookie."""
    __tablename__ = "session"

    id = db.Column(db.Integer, primary_key=True)
    token = db.Column(db.String(128), unique=True, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    expires_at = db.Column(db.DateTime, nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now)

    # user = backref from User.sessions


class ProductToken(db.Model):
    """An issued SSO handoff credential; the row, not the signature, is authoritative."""
    id = db.Column(db.Integer, primary_key=True)
    token = db.Column(db.Text, unique=True, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("product.id"), nullable=False, index=True)
    expires_at = db.Column(db.DateTime, nullable=False)
    is_revoked = db.Column(db.Boolean, default=False, nullable=False)
    last_used = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)

    # user = backref from User.product_tokens
    product = db.relationship("Product")


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog(db.Model):
    """Append-only event record.

    ``user_id`` / ``tenant_id`` are plain columns (no FK) so entries outlive
    the users and tenants they mention.
    """
    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(80), nullable=False)
    resource = db.Column(db.String(120))
    details = db.Column(db.JSON)
    user_id = db.Column(db.Integer, index=True)
    tenant_id = db.Column(db.Integer, index=True)
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.Index("ix_audit_log_created_at", "created_at"),
        db.Index("ix_audit_log_action", "action"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "action": self.action,
            "resource": self.resource,
            "details": self.details,
            "userId": self.user_id,
            "tenantId": self.tenant_id,
            "createdAt": isoformat(self.created_at),
        }
