"""Audit logging service.

Entries are written best-effort: a failing insert is logged and rolled back
but never propagates into the operation that triggered it. Call
:func:`log_event` *after* committing the primary change, since it commits
its own row.
"""

from __future__ import annotations

import logging
from typing import Optional

from flask import has_request_context, request
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import AuditLog
from utils import utc_now

logger = logging.getLogger(__name__)

# Authentication
LOGIN_SUCCESS = "LOGIN_SUCCESS"
LOGIN_FAILED = "LOGIN_FAILED"
LOGOUT = "LOGOUT"

# Users
CREATE_USER = "CREATE_USER"
UPDATE_USER = "UPDATE_USER"
DELETE_USER = "DELETE_USER"

# Tenants
CREATE_TENANT = "CREATE_TENANT"
UPDATE_TENANT = "UPDATE_TENANT"
DELETE_TENANT = "DELETE_TENANT"
SUSPEND_TENANT = "SUSPEND_TENANT"
SYNC_TENANT_PRODUCTS = "SYNC_TENANT_PRODUCTS"

# Plans / products
CREATE_PLAN = "CREATE_PLAN"
UPDATE_PLAN = "UPDATE_PLAN"
DELETE_PLAN = "DELETE_PLAN"
CREATE_PRODUCT = "CREATE_PRODUCT"
UPDATE_PRODUCT = "UPDATE_PRODUCT"
DEACTIVATE_PRODUCT = "DEACTIVATE_PRODUCT"
REMOVE_TENANT_PRODUCT = "REMOVE_TENANT_PRODUCT"

# SSO
SSO_TOKEN_ISSUED = "SSO_TOKEN_ISSUED"
SSO_TOKEN_REJECTED = "SSO_TOKEN_REJECTED"

# Security
PERMISSION_DENIED = "PERMISSION_DENIED"
SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"


def request_info() -> dict:
    """Client address and user agent of the current request, if any."""
    if not has_request_context():
        return {"ipAddress": None, "userAgent": None}
    forwarded = request.headers.get("X-Forwarded-For", "")
    ip_address = (
        forwarded.split(",")[0].strip()
        or request.headers.get("X-Real-IP")
        or request.remote_addr
        or "unknown"
    )
    return {"ipAddress": ip_address, "userAgent": request.headers.get("User-Agent", "")}


def log_event(
    action: str,
    resource: Optional[str] = None,
    details: Optional[dict] = None,
    user_id: Optional[int] = None,
    tenant_id: Optional[int] = None,
) -> Optional[AuditLog]:
    """Record an audit log entry and commit it."""
    payload = dict(details or {})
    payload.update(request_info())
    payload["timestamp"] = utc_now().isoformat()
    entry = AuditLog(
        action=action,
        resource=resource,
        details=payload,
        user_id=user_id,
        tenant_id=tenant_id,
    )
    try:
        db.session.add(entry)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Failed to write audit log entry %s", action)
        return None
    return entry


def log_security_event(
    action: str,
    user_id: Optional[int] = None,
    details: Optional[dict] = None,
    tenant_id: Optional[int] = None,
) -> Optional[AuditLog]:
    """Security events are flagged for attention in the log viewer."""
    return log_event(
        action,
        resource=f"user:{user_id}" if user_id else "system",
        details={**(details or {}), "severity": "HIGH", "requiresAttention": True},
        user_id=user_id,
        tenant_id=tenant_id,
    )
