"""Authentication routes: login page, JSON auth API and product access checks."""

from flask import (
    Blueprint,
    flash,
    jsonify,
    make_response,
    redirect,
    render_template,
    request,
    url_for,
)

from extensions import csrf, limiter
from services import audit
from services.access import resolve_access
from services.auth import (
    authenticate_user,
    clear_session_cookie,
    read_session_token,
    require_user,
    set_session_cookie,
)
from services.errors import AuthenticationError
from services.sessions import revoke_session, validate_session

auth_bp = Blueprint("auth", __name__)


@auth_bp.route("/login", methods=["GET", "POST"])
@limiter.limit("5 per minute", methods=["POST"])
def login():
    if request.method == "POST":
        email = request.form.get("email", "").strip()
        password = request.form.get("password", "")
        tenant_slug = request.form.get("tenantSlug", "").strip() or None
        if email and password:
            try:
                _user, token = authenticate_user(email, password, tenant_slug)
            except AuthenticationError as exc:
                flash(exc.message, "danger")
            else:
                response = redirect(url_for("dashboard.index"))
                set_session_cookie(response, token)
                return response
        else:
            flash("Email and password are required.", "danger")
    return render_template("login.html")


@auth_bp.route("/api/auth/login", methods=["POST"])
@csrf.exempt
@limiter.limit("5 per minute")
def api_login():
    data = request.get_json(silent=True) or {}
    email = data.get("email")
    password = data.get("password")
    if not email or not password:
        return jsonify({"error": "Email and password are required"}), 400

    user, token = authenticate_user(email, password, data.get("tenantSlug") or None)
    response = jsonify({"success": True, "user": user.to_dict(), "token": token})
    set_session_cookie(response, token)
    return response


def _end_session() -> None:
    token = read_session_token()
    session_data = validate_session(token)
    revoke_session(token)
    if session_data is not None:
        audit.log_event(
            audit.LOGOUT,
            resource=f"user:{session_data.user.id}",
            user_id=session_data.user.id,
            tenant_id=session_data.user.tenant_id,
        )


@auth_bp.route("/api/auth/logout", methods=["POST"])
@csrf.exempt
def api_logout():
    _end_session()
    response = jsonify({"success": True})
    clear_session_cookie(response)
    return response


@auth_bp.route("/logout", methods=["POST"])
def logout():
    _end_session()
    response = redirect(url_for("auth.login"))
    clear_session_cookie(response)
    return response


@auth_bp.route("/api/auth/me")
def me():
    try:
        user = require_user()
    except AuthenticationError as exc:
        response = make_response(jsonify(exc.to_dict()), exc.status_code)
        clear_session_cookie(response)
        return response
    return jsonify({"user": user.to_dict()})


@auth_bp.route("/api/auth/validate-access", methods=["POST"])
@csrf.exempt
def validate_access():
    """Called by downstream products to ask whether a user or clinic may use them."""
    data = request.get_json(silent=True) or {}
    decision = resolve_access(
        data.get("productSlug"),
        user_email=data.get("userEmail"),
        tenant_slug=data.get("tenantSlug"),
    )
    return jsonify(decision.to_dict()), decision.status_code


@auth_bp.route("/api/auth/validate-access", methods=["GET"])
def validate_access_query():
    product_slug = request.args.get("product")
    if not product_slug:
        return (
            jsonify(
                {
                    "error": "Usage: GET /api/auth/validate-access"
                    "?product=educational&email=user@example.com"
                }
            ),
            400,
        )
    decision = resolve_access(
        product_slug,
        user_email=request.args.get("email"),
        tenant_slug=request.args.get("tenant"),
    )
    return jsonify(decision.to_dict()), decision.status_code
