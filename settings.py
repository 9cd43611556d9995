# settings.py
import os

DEV_MASTER_KEY = "default-dev-key-change-in-production"


def _getenv(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _getenv_bool(name: str, default: bool = False) -> bool:
    raw = _getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "y", "on"}


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if raw is None:
        return default
    return int(raw)


class Settings:
    def __init__(self) -> None:
        self.environment = (_getenv("ENVIRONMENT", "development") or "development").lower()
        self.database_url = _getenv("DATABASE_URL", "sqlite:///./premium_codes.db") or "sqlite:///./premium_codes.db"
        self.log_level = (_getenv("LOG_LEVEL", "INFO") or "INFO").upper()

        self.master_key = _getenv("CARMASTER_MASTER_KEY", DEV_MASTER_KEY) or DEV_MASTER_KEY
        self.code_prefix = (_getenv("CODE_PREFIX", "CARMASTER") or "CARMASTER").upper()

        self.rate_limit_threshold = _getenv_int("RATE_LIMIT_THRESHOLD", 5)
        self.rate_limit_window_seconds = _getenv_int("RATE_LIMIT_WINDOW_SECONDS", 10)
        self.rate_limit_backend = (_getenv("RATE_LIMIT_BACKEND", "memory") or "memory").lower()

        self.audit_retention_days = _getenv_int("AUDIT_RETENTION_DAYS", 365)
        self.grandfather_expired = _getenv_bool("GRANDFATHER_EXPIRED", default=True)

        self.admin_token = _getenv("PREMIUM_ADMIN_TOKEN")
        self.cors_allow_origins = _getenv("CORS_ALLOW_ORIGINS")

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def validate(self) -> None:
        if self.is_production and self.master_key == DEV_MASTER_KEY:
            raise RuntimeError("CARMASTER_MASTER_KEY must be set in production")
        if self.rate_limit_backend not in {"memory", "sql"}:
            raise RuntimeError(f"Unknown RATE_LIMIT_BACKEND: {self.rate_limit_backend}")

    def resolved_cors_origins(self) -> list[str]:
        raw = self.cors_allow_origins
        if raw is None or raw.strip() == "*":
            return ["*"]
        return [o.strip() for o in raw.split(",") if o.strip()]


settings = Settings()
