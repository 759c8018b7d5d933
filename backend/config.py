import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import FrozenSet, Optional, Tuple

from dotenv import load_dotenv


class ConfigurationError(RuntimeError):
    pass


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}.")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str) -> Tuple[str, ...]:
    return tuple(item.strip() for item in _env_str(name).split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    mongo_uri: str = "mongodb://localhost:27017/store"

    access_token_secret: str = ""
    access_token_ttl: timedelta = timedelta(minutes=10)
    refresh_token_secret: str = ""
    refresh_token_ttl: timedelta = timedelta(days=7)

    access_cookie_name: str = "accessToken"
    refresh_cookie_name: str = "refreshToken"
    cookie_secure: bool = True
    cookie_samesite: str = "Strict"
    refresh_cookie_fallback: bool = True

    max_basket_items: int = 50

    upload_folder: str = "uploads"
    max_upload_mb: int = 5
    allowed_upload_types: FrozenSet[str] = frozenset(
        {"image/png", "image/jpg", "image/jpeg", "image/gif", "image/svg+xml"}
    )
    allowed_upload_extensions: FrozenSet[str] = frozenset(
        {"png", "jpg", "jpeg", "gif", "svg"}
    )

    cors_origins: Tuple[str, ...] = ("http://localhost:5173",)
    trusted_proxy_hops: int = 1
    admin_emails: FrozenSet[str] = field(default_factory=frozenset)
    log_level: str = "INFO"

    password_time_cost: int = 3
    password_memory_cost: int = 65536
    password_parallelism: int = 4

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        load_dotenv(env_file)

        cors_origins = _env_list("CORS_ALLOWED_ORIGINS") or cls.cors_origins
        admin_emails = frozenset(
            email.lower() for email in _env_list("ADMIN_EMAILS")
        )

        settings = cls(
            mongo_uri=_env_str("MONGO_URI", cls.mongo_uri),
            access_token_secret=_env_str("ACCESS_TOKEN_SECRET"),
            access_token_ttl=timedelta(
                minutes=_env_int("ACCESS_TOKEN_EXPIRY_MINUTES", 10)
            ),
            refresh_token_secret=_env_str("REFRESH_TOKEN_SECRET"),
            refresh_token_ttl=timedelta(days=_env_int("REFRESH_TOKEN_EXPIRY_DAYS", 7)),
            access_cookie_name=_env_str("ACCESS_TOKEN_COOKIE", cls.access_cookie_name),
            refresh_cookie_name=_env_str(
                "REFRESH_TOKEN_COOKIE", cls.refresh_cookie_name
            ),
            cookie_secure=_env_bool("COOKIE_SECURE", cls.cookie_secure),
            cookie_samesite=_env_str("COOKIE_SAMESITE", cls.cookie_samesite),
            refresh_cookie_fallback=_env_bool(
                "REFRESH_COOKIE_FALLBACK", cls.refresh_cookie_fallback
            ),
            max_basket_items=_env_int("MAX_BASKET_ITEMS", cls.max_basket_items),
            upload_folder=_env_str("UPLOAD_FOLDER", cls.upload_folder),
            max_upload_mb=_env_int("MAX_UPLOAD_SIZE_MB", cls.max_upload_mb),
            cors_origins=cors_origins,
            trusted_proxy_hops=max(0, _env_int("TRUSTED_PROXY_HOPS", 1)),
            admin_emails=admin_emails,
            log_level=_env_str("LOG_LEVEL", cls.log_level).upper(),
            password_time_cost=_env_int("PASSWORD_TIME_COST", cls.password_time_cost),
            password_memory_cost=_env_int(
                "PASSWORD_MEMORY_COST", cls.password_memory_cost
            ),
            password_parallelism=_env_int(
                "PASSWORD_PARALLELISM", cls.password_parallelism
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if not self.access_token_secret or not self.refresh_token_secret:
            raise ConfigurationError(
                "ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must both be set."
            )
        if self.access_token_secret == self.refresh_token_secret:
            raise ConfigurationError(
                "Access and refresh tokens must be signed with different secrets."
            )
        if self.access_token_ttl <= timedelta(0) or self.refresh_token_ttl <= timedelta(0):
            raise ConfigurationError("Token lifetimes must be positive.")
        if self.max_basket_items < 1:
            raise ConfigurationError("MAX_BASKET_ITEMS must be at least 1.")
        if self.cookie_samesite not in {"Strict", "Lax", "None"}:
            raise ConfigurationError("COOKIE_SAMESITE must be Strict, Lax or None.")
