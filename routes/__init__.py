"""Blueprint registration."""

from routes.audit_logs import audit_logs_bp
from routes.auth import auth_bp
from routes.clinics import clinics_bp
from routes.dashboard import dashboard_bp
from routes.plans import plans_bp
from routes.products import products_bp
from routes.users import users_bp

ALL_BLUEPRINTS = [
    auth_bp,
    dashboard_bp,
    clinics_bp,
    plans_bp,
    products_bp,
    users_bp,
    audit_logs_bp,
]


def register_blueprints(app):
    """Register all application blueprints on *app*."""
    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)
