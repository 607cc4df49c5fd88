import os
from dataclasses import dataclass, field
from typing import Literal

from dotenv import load_dotenv

load_dotenv()

StoreBackend = Literal["memory", "redis", "database"]


def _env_bool(name: str, default: bool = False) -> bool:
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw_value = os.getenv(name)
    if raw_value is None or not raw_value.strip():
        return default
    return int(raw_value)


def _env_list(name: str, default: str) -> list[str]:
    raw_value = os.getenv(name, default)
    return [part.strip() for part in raw_value.split(",") if part.strip()]


def _database_url() -> str:
    raw_url = os.getenv("DATABASE_URL", "").strip()
    if not raw_url:
        return "sqlite:///./qwiksale_auth.db"
    if raw_url.startswith("postgres://"):
        return "postgresql+psycopg://" + raw_url[len("postgres://") :]
    if raw_url.startswith("postgresql://"):
        return raw_url.replace("postgresql://", "postgresql+psycopg://", 1)
    return raw_url


@dataclass(frozen=True)
class StoreConfig:
    backend: StoreBackend
    redis_url: str = ""
    database_url: str = ""


@dataclass(frozen=True)
class Settings:
    app_env: str = os.getenv("APP_ENV", "development").strip().lower()
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    brand: str = os.getenv("BRAND_NAME", "QwikSale")
    cors_allow_origins: list[str] = field(
        default_factory=lambda: _env_list(
            "CORS_ALLOW_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000"
        )
    )

    database_url: str = field(default_factory=_database_url)
    redis_url: str = os.getenv("REDIS_URL", "").strip()
    redis_timeout_seconds: float = float(os.getenv("REDIS_TIMEOUT_SECONDS", "2"))

    # memory | redis | database | auto
    otp_backend: str = os.getenv("OTP_BACKEND", "auto").strip().lower()
    otp_length: int = _env_int("OTP_LENGTH", 6)
    otp_ttl_seconds: int = _env_int("OTP_TTL_SECONDS", 600)
    otp_ttl_floor_seconds: int = _env_int("OTP_TTL_FLOOR_SECONDS", 60)
    otp_expired_retention_seconds: int = _env_int("OTP_EXPIRED_RETENTION_SECONDS", 600)
    otp_hash_codes: bool = _env_bool("OTP_HASH_CODES", True)
    otp_pepper: str = os.getenv("OTP_PEPPER", "") or os.getenv("JWT_SECRET", "")
    otp_debug: bool = _env_bool("OTP_DEBUG", False)

    otp_ip_limit: int = _env_int("OTP_IP_LIMIT", 10)
    otp_ip_window_seconds: int = _env_int("OTP_IP_WINDOW_SECONDS", 600)
    otp_identifier_limit: int = _env_int("OTP_IDENTIFIER_LIMIT", 5)
    otp_identifier_window_seconds: int = _env_int("OTP_IDENTIFIER_WINDOW_SECONDS", 600)
    otp_block_seconds: int = _env_int("OTP_BLOCK_SECONDS", 900)
    otp_verify_limit: int = _env_int("OTP_VERIFY_LIMIT", 10)
    otp_verify_window_seconds: int = _env_int("OTP_VERIFY_WINDOW_SECONDS", 600)

    notify_timeout_seconds: float = float(os.getenv("NOTIFY_TIMEOUT_SECONDS", "10"))
    email_from: str = os.getenv("EMAIL_FROM", "QwikSale <no-reply@qwiksale.sale>")
    resend_api_key: str = os.getenv("RESEND_API_KEY", "").strip()
    at_username: str = os.getenv("AT_USERNAME", "").strip()
    at_api_key: str = os.getenv("AT_API_KEY", "").strip()
    at_sender_id: str = (
        os.getenv("AT_SENDER_ID") or os.getenv("AS_SENDER_ID") or ""
    ).strip()
    at_env: str = os.getenv("AT_ENV", "production").strip().lower()

    jwt_secret: str = os.getenv("JWT_SECRET", "")
    jwt_algorithm: str = os.getenv("ALGORITHM", "HS256")
    access_token_expire_minutes: int = _env_int("ACCESS_TOKEN_EXPIRE_MINUTES", 15)
    seed_email: str = os.getenv("SEED_EMAIL", "").strip().lower()

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def show_dev_code(self) -> bool:
        return self.otp_debug and not self.is_production

    def store_config(self) -> StoreConfig:
        backend = self.otp_backend
        if backend == "auto":
            backend = "redis" if self.redis_url else "memory"
        if backend not in ("memory", "redis", "database"):
            raise ValueError(f"Unknown OTP_BACKEND: {self.otp_backend}")
        return StoreConfig(
            backend=backend,
            redis_url=self.redis_url,
            database_url=self.database_url,
        )


settings = Settings()
