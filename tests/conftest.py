"""Shared fixtures: in-memory database, test client and sample clinics."""

import os

import pytest

os.environ["DATABASE_URI"] = "sqlite://"  # In-memory database for tests
os.environ["APP_SECRET_KEY"] = "test-secret-key"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["FLASK_ENV"] = "testing"
os.environ["CONFIG_PATH"] = "config.test-missing.yaml"
os.environ["SUPER_ADMIN_EMAIL"] = "root@caleidoscopio.test"
os.environ["SUPER_ADMIN_PASSWORD"] = "root-password"

from app import create_app  # noqa: E402
from extensions import db  # noqa: E402
from models import ROLE_USER, Plan, Product, User  # noqa: E402
from services.auth import hash_password  # noqa: E402
from services.tenant import create_tenant_with_admin  # noqa: E402

SUPER_ADMIN_EMAIL = "root@caleidoscopio.test"
SUPER_ADMIN_PASSWORD = "root-password"
TEST_PASSWORD = "testpassword"


@pytest.fixture
def app():
    """Create application for testing."""
    application = create_app(
        {
            "TESTING": True,
            "WTF_CSRF_ENABLED": False,
            "RATELIMIT_ENABLED": False,
        }
    )
    yield application


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def sample_data(app):
    """Two clinics with their staff. Returns a dict of IDs to avoid detached instances.

    * clinica-a is on the basic plan (educational only)
    * clinica-b is on the premium plan (educational and ecommerce)
    """
    with app.app_context():
        plans = {p.slug: p for p in Plan.query.all()}
        products = {p.slug: p for p in Product.query.all()}

        tenant_a, admin_a = create_tenant_with_admin(
            {
                "name": "Clínica A",
                "slug": "clinica-a",
                "planId": plans["basic"].id,
                "adminEmail": "admin@clinica-a.test",
                "adminName": "Admin A",
                "adminPassword": TEST_PASSWORD,
                "cnpj": "12.345.678/0001-90",
            }
        )
        tenant_b, admin_b = create_tenant_with_admin(
            {
                "name": "Clínica B",
                "slug": "clinica-b",
                "planId": plans["premium"].id,
                "adminEmail": "admin@clinica-b.test",
                "adminName": "Admin B",
                "adminPassword": TEST_PASSWORD,
            }
        )
        user_a = User(
            email="user@clinica-a.test",
            name="Terapeuta A",
            password_hash=hash_password(TEST_PASSWORD),
            role=ROLE_USER,
            tenant_id=tenant_a.id,
            is_active=True,
        )
        db.session.add(user_a)
        db.session.commit()

        super_admin = User.query.filter_by(email=SUPER_ADMIN_EMAIL).first()
        return {
            "tenant_a": tenant_a.id,
            "tenant_b": tenant_b.id,
            "admin_a": admin_a.id,
            "admin_b": admin_b.id,
            "user_a": user_a.id,
            "super_admin": super_admin.id,
            "basic": plans["basic"].id,
            "premium": plans["premium"].id,
            "enterprise": plans["enterprise"].id,
            "educational": products["educational"].id,
            "ecommerce": products["ecommerce"].id,
            "telemedicine": products["telemedicine"].id,
        }


def login(client, email, password=TEST_PASSWORD, tenant_slug=None):
    """Log in through the JSON API; the test client keeps the session cookie."""
    body = {"email": email, "password": password}
    if tenant_slug:
        body["tenantSlug"] = tenant_slug
    return client.post("/api/auth/login", json=body)


@pytest.fixture
def super_client(client, sample_data):
    resp = login(client, SUPER_ADMIN_EMAIL, SUPER_ADMIN_PASSWORD)
    assert resp.status_code == 200
    return client


@pytest.fixture
def admin_client(client, sample_data):
    resp = login(client, "admin@clinica-a.test")
    assert resp.status_code == 200
    return client


@pytest.fixture
def user_client(client, sample_data):
    resp = login(client, "user@clinica-a.test")
    assert resp.status_code == 200
    return client
