"""Configuration loading: YAML file plus environment-variable overrides."""

from __future__ import annotations

import logging
import os
import secrets

import yaml

from config_models import AppConfig, AuthConfig, BootstrapConfig, SsoConfig

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:3001",  # educational
    "http://localhost:3002",  # ecommerce
    "http://localhost:3003",  # telemedicine
]


def _load_secret(env_name: str, configured: str, purpose: str) -> str:
    value = os.environ.get(env_name, configured or "")
    if not value or value == "change-me":
        value = secrets.token_hex(32)
        logger.warning(
            "Using auto-generated %s. Set %s env var or config.yaml for "
            "values that survive restarts.",
            purpose,
            env_name,
        )
    return value


def _split_origins(raw) -> list[str]:
    if isinstance(raw, list):
        return [str(o).strip() for o in raw if str(o).strip()]
    return [o.strip() for o in str(raw).split(",") if o.strip()]


def load_config():
    """Load configuration from *config.yaml* with env-var overrides.

    Environment variables take precedence over config.yaml values.
    Returns (AppConfig, AuthConfig, SsoConfig, BootstrapConfig, database_uri).
    """
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

    app_cfg = raw.get("app", {})
    auth_cfg = raw.get("auth", {})
    sso_cfg = raw.get("sso", {})
    bootstrap_cfg = raw.get("bootstrap", {})
    db_cfg = raw.get("database", {})

    origins = os.environ.get("ALLOWED_ORIGINS")
    if origins is None:
        origins = app_cfg.get("allowed_origins", DEFAULT_ALLOWED_ORIGINS)

    return (
        AppConfig(
            name=app_cfg.get("name", "Caleidoscópio Manager"),
            secret_key=_load_secret(
                "APP_SECRET_KEY", app_cfg.get("secret_key", ""), "secret key"
            ),
            environment=os.environ.get(
                "FLASK_ENV", app_cfg.get("environment", "production")
            ),
            allowed_origins=_split_origins(origins),
        ),
        AuthConfig(
            session_ttl_days=int(
                os.environ.get("SESSION_TTL_DAYS", auth_cfg.get("session_ttl_days", 7))
            ),
            cookie_name=auth_cfg.get("cookie_name", "session"),
        ),
        SsoConfig(
            secret=_load_secret(
                "JWT_SECRET", sso_cfg.get("secret", ""), "SSO signing secret"
            ),
            token_ttl_seconds=int(
                os.environ.get(
                    "SSO_TOKEN_TTL_SECONDS", sso_cfg.get("token_ttl_seconds", 3600)
                )
            ),
            algorithm=sso_cfg.get("algorithm", "HS256"),
        ),
        BootstrapConfig(
            super_admin_email=os.environ.get(
                "SUPER_ADMIN_EMAIL",
                bootstrap_cfg.get("super_admin_email", "admin@caleidoscopio.com"),
            ),
            super_admin_password=os.environ.get(
                "SUPER_ADMIN_PASSWORD", bootstrap_cfg.get("super_admin_password", "")
            ),
        ),
        os.environ.get("DATABASE_URI", db_cfg.get("uri", "sqlite:///caleidoscopio.db")),
    )


def enable_sqlite_fks(dbapi_conn, _connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
