"""Audit log browsing and statistics."""

from datetime import datetime, time, timedelta, timezone

from flask import Blueprint, jsonify, request
from sqlalchemy import func, or_

from extensions import db
from models import AuditLog, Tenant, User
from services import audit
from services.auth import get_current_user, login_required, role_required, super_admin_required
from services.errors import ValidationError
from utils import parse_date, safe_int, utc_now

audit_logs_bp = Blueprint("audit_logs", __name__)

MAX_PAGE_SIZE = 100
MAX_STATS_DAYS = 90
SECURITY_ACTIONS = (
    audit.LOGIN_FAILED,
    audit.PERMISSION_DENIED,
    audit.SSO_TOKEN_REJECTED,
    audit.SUSPICIOUS_ACTIVITY,
)


def _filtered_query(actor):
    query = AuditLog.query
    tenant_filter = request.args.get("tenantId")
    if not actor.is_super_admin:
        query = query.filter(
            or_(AuditLog.tenant_id == actor.tenant_id, AuditLog.tenant_id.is_(None))
        )
    elif tenant_filter == "global":
        query = query.filter(AuditLog.tenant_id.is_(None))
    elif tenant_filter:
        query = query.filter(AuditLog.tenant_id == safe_int(tenant_filter))

    if request.args.get("action"):
        query = query.filter(AuditLog.action == request.args["action"])
    if request.args.get("userId"):
        query = query.filter(AuditLog.user_id == safe_int(request.args["userId"]))
    if request.args.get("resource"):
        query = query.filter(AuditLog.resource.ilike(f"%{request.args['resource']}%"))
    start = parse_date(request.args.get("startDate"))
    if start:
        query = query.filter(AuditLog.created_at >= start)
    end = parse_date(request.args.get("endDate"))
    if end:
        query = query.filter(AuditLog.created_at <= end)
    search = request.args.get("search")
    if search:
        query = query.filter(
            or_(AuditLog.action.ilike(f"%{search}%"), AuditLog.resource.ilike(f"%{search}%"))
        )
    return query


@audit_logs_bp.route("/api/audit-logs")
@role_required("view_audit_logs")
def list_logs():
    actor = get_current_user()
    page = max(safe_int(request.args.get("page"), 1), 1)
    limit = min(max(safe_int(request.args.get("limit"), 50), 1), MAX_PAGE_SIZE)

    query = _filtered_query(actor)
    total = query.count()
    logs = (
        query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    user_ids = {log.user_id for log in logs if log.user_id}
    tenant_ids = {log.tenant_id for log in logs if log.tenant_id}
    users = {u.id: u for u in User.query.filter(User.id.in_(user_ids)).all()} if user_ids else {}
    tenants = (
        {t.id: t for t in Tenant.query.filter(Tenant.id.in_(tenant_ids)).all()}
        if tenant_ids
        else {}
    )

    def enrich(log: AuditLog) -> dict:
        user = users.get(log.user_id)
        tenant = tenants.get(log.tenant_id)
        return {
            **log.to_dict(),
            "user": {"id": user.id, "name": user.name, "email": user.email, "role": user.role}
            if user
            else None,
            "tenant": tenant.summary() if tenant else None,
        }

    return jsonify(
        {
            "logs": [enrich(log) for log in logs],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }
    )


@audit_logs_bp.route("/api/audit-logs", methods=["POST"])
@login_required
def create_log():
    actor = get_current_user()
    data = request.get_json(silent=True) or {}
    action = (data.get("action") or "").strip()
    if not action:
        raise ValidationError("action is required")
    tenant_id = actor.tenant_id
    if actor.is_super_admin and data.get("tenantId"):
        tenant_id = safe_int(data["tenantId"]) or None
    entry = audit.log_event(
        action,
        resource=data.get("resource"),
        details=data.get("details") if isinstance(data.get("details"), dict) else None,
        user_id=actor.id,
        tenant_id=tenant_id,
    )
    if entry is None:
        return jsonify({"error": "Could not record audit entry"}), 500
    return jsonify({"log": entry.to_dict()}), 201


def _count_between(start: datetime, end: datetime = None) -> int:
    query = AuditLog.query.filter(AuditLog.created_at >= start)
    if end is not None:
        query = query.filter(AuditLog.created_at < end)
    return query.count()


@audit_logs_bp.route("/api/audit-logs/stats")
@super_admin_required
def stats():
    days = min(max(safe_int(request.args.get("days"), 7), 1), MAX_STATS_DAYS)
    today = datetime.combine(utc_now().date(), time.min, tzinfo=timezone.utc)
    yesterday = today - timedelta(days=1)
    start = today - timedelta(days=days - 1)

    top_actions = (
        db.session.query(AuditLog.action, func.count(AuditLog.id).label("total"))
        .filter(AuditLog.created_at >= start)
        .group_by(AuditLog.action)
        .order_by(func.count(AuditLog.id).desc())
        .limit(10)
        .all()
    )
    top_user_rows = (
        db.session.query(AuditLog.user_id, func.count(AuditLog.id))
        .filter(AuditLog.created_at >= start, AuditLog.user_id.isnot(None))
        .group_by(AuditLog.user_id)
        .order_by(func.count(AuditLog.id).desc())
        .limit(5)
        .all()
    )
    users = {
        u.id: u
        for u in User.query.filter(User.id.in_([row[0] for row in top_user_rows])).all()
    } if top_user_rows else {}

    daily = []
    for offset in range(days):
        day = start + timedelta(days=offset)
        daily.append(
            {"date": day.date().isoformat(), "count": _count_between(day, day + timedelta(days=1))}
        )

    security_events = (
        AuditLog.query.filter(
            AuditLog.created_at >= start, AuditLog.action.in_(SECURITY_ACTIONS)
        ).count()
    )

    return jsonify(
        {
            "period": {"days": days, "startDate": start.isoformat()},
            "totals": {
                "total": _count_between(start),
                "today": _count_between(today),
                "yesterday": _count_between(yesterday, today),
                "securityEvents": security_events,
            },
            "topActions": [{"action": action, "count": total} for action, total in top_actions],
            "topUsers": [
                {
                    "userId": user_id,
                    "count": total,
                    "user": users[user_id].to_dict() if user_id in users else None,
                }
                for user_id, total in top_user_rows
            ],
            "dailyActivity": daily,
        }
    )
