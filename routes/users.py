"""User administration routes."""

from flask import Blueprint, jsonify, request

from services import audit
from services.auth import get_current_user, login_required, role_required
from services.errors import AuthorizationError
from services.users import (
    capabilities_for,
    create_user,
    delete_user,
    get_user_or_404,
    update_user,
    visible_users,
)
from utils import parse_bool, safe_int

users_bp = Blueprint("users", __name__)


@users_bp.route("/api/users")
@role_required("manage_users")
def list_users():
    actor = get_current_user()
    users = visible_users(
        actor,
        tenant_id=safe_int(request.args.get("tenantId")) or None,
        include_inactive=parse_bool(request.args.get("includeInactive")),
    )
    return jsonify(
        {
            "users": [
                {**u.to_dict(), "capabilities": capabilities_for(actor, u).to_dict()}
                for u in users
            ],
            "total": len(users),
        }
    )


@users_bp.route("/api/users", methods=["POST"])
@role_required("manage_users")
def create():
    actor = get_current_user()
    user = create_user(actor, request.get_json(silent=True) or {})
    audit.log_event(
        audit.CREATE_USER,
        resource=f"user:{user.id}",
        details={"email": user.email, "role": user.role},
        user_id=actor.id,
        tenant_id=user.tenant_id,
    )
    return jsonify({"message": "User created", "user": user.to_dict()}), 201


@users_bp.route("/api/users/<int:user_id>")
@login_required
def get_user(user_id: int):
    actor = get_current_user()
    user = get_user_or_404(user_id)
    caps = capabilities_for(actor, user)
    if not caps.can_view:
        raise AuthorizationError("Access denied")
    return jsonify({"user": {**user.to_dict(), "capabilities": caps.to_dict()}})


@users_bp.route("/api/users/<int:user_id>", methods=["PUT"])
@login_required
def update(user_id: int):
    actor = get_current_user()
    user = get_user_or_404(user_id)
    changed = update_user(actor, user, request.get_json(silent=True) or {})
    audit.log_event(
        audit.UPDATE_USER,
        resource=f"user:{user.id}",
        details={"fields": changed},
        user_id=actor.id,
        tenant_id=user.tenant_id,
    )
    return jsonify({"message": "User updated", "user": user.to_dict()})


@users_bp.route("/api/users/<int:user_id>", methods=["DELETE"])
@role_required("manage_users")
def delete(user_id: int):
    actor = get_current_user()
    user = get_user_or_404(user_id)
    details = {"email": user.email, "role": user.role}
    tenant_id = user.tenant_id
    delete_user(actor, user)
    audit.log_event(
        audit.DELETE_USER,
        resource=f"user:{user_id}",
        details=details,
        user_id=actor.id,
        tenant_id=tenant_id,
    )
    return jsonify({"message": "User deleted"})
