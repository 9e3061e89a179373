"""Application factory: clean entry point for the Flask application."""

from __future__ import annotations

import logging
import os

import click
from dotenv import load_dotenv
from flask import Flask, g, jsonify, redirect, render_template, request
from sqlalchemy import event

from config import enable_sqlite_fks, load_config
from extensions import cors, csrf, db, limiter
from models import Plan, PlanProduct, Product
from routes import register_blueprints
from services import audit
from services.auth import clear_session_cookie, ensure_super_admin, read_session_token
from services.errors import ServiceError
from services.gatekeeper import evaluate, is_api_path
from services.sessions import cleanup_expired_sessions
from services.tenant import sync_all_tenants

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------

DEFAULT_PRODUCTS = [
    {
        "name": "Caleidoscópio Educacional",
        "slug": "educational",
        "description": "Plataforma educacional para terapeutas e famílias",
        "icon": "graduation-cap",
        "color": "#4f46e5",
        "base_url": "http://localhost:3001",
        "default_config": {"maxStudents": 50, "reports": False},
    },
    {
        "name": "Caleidoscópio Loja",
        "slug": "ecommerce",
        "description": "Loja de materiais terapêuticos",
        "icon": "shopping-cart",
        "color": "#059669",
        "base_url": "http://localhost:3002",
        "default_config": {"catalog": "standard"},
    },
    {
        "name": "Caleidoscópio Telemedicina",
        "slug": "telemedicine",
        "description": "Atendimento remoto por vídeo",
        "icon": "video",
        "color": "#dc2626",
        "base_url": "http://localhost:3003",
        "default_config": {"maxSessionMinutes": 50, "recording": False},
    },
]

DEFAULT_PLANS = [
    {
        "name": "Plano Básico",
        "slug": "basic",
        "description": "Plano básico para clínicas pequenas",
        "max_users": 10,
        "features": ["gestao_pacientes", "agenda_basica", "prontuario"],
        "price": 199.99,
        "products": ["educational"],
    },
    {
        "name": "Plano Premium",
        "slug": "premium",
        "description": "Plano completo para clínicas em crescimento",
        "max_users": 50,
        "features": [
            "gestao_pacientes",
            "agenda_avancada",
            "prontuario",
            "relatorios",
            "integracao_caleidoscopio",
        ],
        "price": 499.99,
        "products": ["educational", "ecommerce"],
    },
    {
        "name": "Plano Enterprise",
        "slug": "enterprise",
        "description": "Solução completa para redes de clínicas",
        "max_users": 200,
        "features": [
            "gestao_pacientes",
            "agenda_avancada",
            "prontuario",
            "relatorios",
            "integracao_caleidoscopio",
            "api_acesso",
            "suporte_prioritario",
        ],
        "price": 999.99,
        "products": ["educational", "ecommerce", "telemedicine"],
    },
]


def _seed_catalog():
    """Create the default products and plans if their tables are empty."""
    if Product.query.count() == 0:
        for fields in DEFAULT_PRODUCTS:
            db.session.add(Product(is_active=True, **fields))
        db.session.flush()
        logger.info("Seeded default products")

    if Plan.query.count() > 0:
        db.session.commit()
        return

    products = {p.slug: p for p in Product.query.all()}
    for fields in DEFAULT_PLANS:
        fields = dict(fields)
        product_slugs = fields.pop("products")
        plan = Plan(is_active=True, **fields)
        db.session.add(plan)
        db.session.flush()
        for slug in product_slugs:
            product = products.get(slug)
            if product is not None:
                db.session.add(
                    PlanProduct(
                        plan_id=plan.id,
                        product_id=product.id,
                        config=dict(product.default_config or {}),
                        is_active=True,
                    )
                )
    db.session.commit()
    logger.info("Seeded default subscription plans")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(overrides: dict | None = None):
    """Create and configure the Flask application.

    *overrides* are applied to ``app.config`` before the extensions are
    initialised (tests use it to disable CSRF and rate limiting).
    """
    app_cfg, auth_cfg, sso_cfg, bootstrap_cfg, db_uri = load_config()

    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = db_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.secret_key = app_cfg.secret_key
    app.config["APP_CONFIG"] = app_cfg
    app.config["AUTH_CONFIG"] = auth_cfg
    app.config["SSO_CONFIG"] = sso_cfg
    app.config["BOOTSTRAP_CONFIG"] = bootstrap_cfg

    # Flask's signed cookie only carries flash messages; the opaque
    # auth token owns the "session" cookie name.
    app.config["SESSION_COOKIE_NAME"] = "console_flask"
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    app.config["SESSION_COOKIE_SECURE"] = app_cfg.is_production

    if overrides:
        app.config.update(overrides)

    # Initialize extensions
    csrf.init_app(app)
    limiter.init_app(app)
    db.init_app(app)
    cors.init_app(
        app,
        resources={r"/api/auth/*": {}, r"/api/products/sso/*": {}},
        origins=app_cfg.allowed_origins,
        supports_credentials=True,
    )

    # SQLite foreign key enforcement
    if "sqlite" in db_uri:
        with app.app_context():
            event.listen(db.engine, "connect", enable_sqlite_fks)

    with app.app_context():
        db.create_all()
        _seed_catalog()
        ensure_super_admin(bootstrap_cfg)

    register_blueprints(app)
    _register_cli(app)

    # ------------------------------------------------------------------
    # Request hooks
    # ------------------------------------------------------------------

    @app.before_request
    def gatekeeper():
        """Authenticate every non-public request before it reaches a route."""
        decision = evaluate(request.path, read_session_token())
        if decision.allowed:
            g.auth = decision.context
            g.current_user = decision.user
            return None

        if decision.audit_denial and decision.user is not None:
            audit.log_security_event(
                audit.PERMISSION_DENIED,
                user_id=decision.user.id,
                tenant_id=decision.user.tenant_id,
                details={"path": request.path, "reason": decision.error},
            )
        if decision.redirect_to:
            response = redirect(decision.redirect_to)
        else:
            response = jsonify({"error": decision.error})
            response.status_code = decision.status_code
        if decision.clear_cookie:
            clear_session_cookie(response)
        return response

    # ------------------------------------------------------------------
    # Security headers
    # ------------------------------------------------------------------

    @app.after_request
    def set_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        # X-XSS-Protection "0" is recommended; the filter is deprecated
        # and can introduce vulnerabilities in older browsers
        response.headers["X-XSS-Protection"] = "0"
        response.headers["Referrer-Policy"] = (
            "strict-origin-when-cross-origin"
        )
        response.headers["Permissions-Policy"] = (
            "geolocation=(), camera=(), microphone=()"
        )
        response.headers["Content-Security-Policy"] = (
            "default-src 'self'; "
            "script-src 'self' 'unsafe-inline'; "
            "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com; "
            "font-src 'self' https://fonts.gstatic.com; "
            "img-src 'self' data:; "
            "connect-src 'self'; "
            "frame-ancestors 'none'"
        )
        if app_cfg.is_production:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # ------------------------------------------------------------------
    # Error handlers
    # ------------------------------------------------------------------

    def _error_response(code: int, message: str):
        if is_api_path(request.path):
            return jsonify({"error": message}), code
        return render_template("error.html", code=code, message=message), code

    @app.errorhandler(ServiceError)
    def service_error(error):
        if is_api_path(request.path):
            return jsonify(error.to_dict()), error.status_code
        return _error_response(error.status_code, error.message)

    @app.errorhandler(404)
    def not_found(_error):
        return _error_response(404, "Page not found.")

    @app.errorhandler(405)
    def method_not_allowed(_error):
        return _error_response(405, "Method not allowed.")

    @app.errorhandler(500)
    def server_error(error):
        logger.exception("Unhandled error on %s: %s", request.path, error)
        return _error_response(500, "Internal server error.")

    @app.errorhandler(429)
    def ratelimit_handler(_error):
        return _error_response(429, "Too many attempts. Try again later.")

    return app


# ---------------------------------------------------------------------------
# CLI commands
# ---------------------------------------------------------------------------


def _register_cli(app):
    @app.cli.command("cleanup-sessions")
    def cleanup_sessions_command():
        """Delete expired login sessions."""
        removed = cleanup_expired_sessions()
        click.echo(f"Removed {removed} expired session(s)")

    @app.cli.command("sync-products")
    def sync_products_command():
        """Reconcile every clinic's products with its plan."""
        stats = sync_all_tenants()
        audit.log_event(audit.SYNC_TENANT_PRODUCTS, resource="tenants", details=stats)
        click.echo(
            "Synchronised {totalTenants} clinic(s): {tenantsUpdated} updated, "
            "{productsActivated} activated, {productsDeactivated} deactivated".format(**stats)
        )

    @app.cli.command("create-super-admin")
    def create_super_admin_command():
        """Create the first super admin if none exists."""
        admin = ensure_super_admin(app.config["BOOTSTRAP_CONFIG"])
        if admin is None:
            click.echo("A super admin already exists")


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app = create_app()
    debug_mode = os.environ.get("FLASK_DEBUG", "false").lower() in (
        "true",
        "1",
        "yes",
    )
    host = os.environ.get("FLASK_HOST", "127.0.0.1")
    port = int(os.environ.get("FLASK_PORT", 5000))
    logger.info("Starting application on %s:%s (debug=%s)", host, port, debug_mode)
    app.run(host=host, port=port, debug=debug_mode)
