"""Dashboard, status pages and the health probe."""

from flask import Blueprint, jsonify, render_template

from models import (
    ROLE_ADMIN,
    TENANT_ACTIVE,
    AuditLog,
    Plan,
    Product,
    Tenant,
    TenantProduct,
    User,
)
from services.auth import get_current_user, login_required
from utils import utc_now

dashboard_bp = Blueprint("dashboard", __name__)


def _collect_stats(user) -> dict:
    """Headline counts, scoped to the user's clinic unless super admin."""
    if user.is_super_admin:
        return {
            "tenants": Tenant.query.count(),
            "activeTenants": Tenant.query.filter_by(status=TENANT_ACTIVE).count(),
            "users": User.query.count(),
            "activeUsers": User.query.filter_by(is_active=True).count(),
            "plans": Plan.query.filter_by(is_active=True).count(),
            "products": Product.query.filter_by(is_active=True).count(),
            "auditLogs": AuditLog.query.count(),
        }
    return {
        "users": User.query.filter_by(tenant_id=user.tenant_id).count(),
        "activeUsers": User.query.filter_by(tenant_id=user.tenant_id, is_active=True).count(),
        "activeProducts": TenantProduct.query.filter_by(
            tenant_id=user.tenant_id, is_active=True
        ).count(),
    }


@dashboard_bp.route("/")
@login_required
def index():
    user = get_current_user()
    recent = []
    if user.is_super_admin or user.role == ROLE_ADMIN:
        query = AuditLog.query
        if not user.is_super_admin:
            query = query.filter(AuditLog.tenant_id == user.tenant_id)
        recent = query.order_by(AuditLog.created_at.desc()).limit(5).all()
    return render_template(
        "dashboard.html",
        user=user,
        stats=_collect_stats(user),
        recent_activity=recent,
    )


@dashboard_bp.route("/api/dashboard/stats")
@login_required
def stats():
    return jsonify({"stats": _collect_stats(get_current_user())})


@dashboard_bp.route("/unauthorized")
def unauthorized():
    return (
        render_template(
            "error.html", code=403, message="You do not have access to this page."
        ),
        403,
    )


@dashboard_bp.route("/tenant-suspended")
def tenant_suspended():
    return (
        render_template(
            "error.html",
            code=403,
            message="Your clinic is not active. Contact support to restore access.",
        ),
        403,
    )


@dashboard_bp.route("/health")
def health():
    return jsonify({"status": "ok", "timestamp": utc_now().isoformat()})
