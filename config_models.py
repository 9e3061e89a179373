from dataclasses import dataclass, field


@dataclass
class AppConfig:
    name: str
    secret_key: str
    environment: str
    allowed_origins: list[str] = field(default_factory=list)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@dataclass
class AuthConfig:
    session_ttl_days: int = 7
    cookie_name: str = "session"


@dataclass
class SsoConfig:
    secret: str
    token_ttl_seconds: int = 3600
    algorithm: str = "HS256"


@dataclass
class BootstrapConfig:
    super_admin_email: str
    super_admin_password: str
    super_admin_name: str = "Super Administrador"
