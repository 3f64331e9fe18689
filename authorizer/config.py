from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional

DEFAULT_GOOGLE_SCOPES = "https://www.googleapis.com/auth/userinfo.email https://www.googleapis.com/auth/userinfo.profile"


@dataclass(frozen=True)
class AuthConfig:
    # Public URL of this service (e.g. http://localhost:8080 in dev, https://auth.example.com in prod).
    public_base_url: str

    # Where a finished flow may land. The first entry doubles as the fallback for
    # callbacks whose state is malformed or expired.
    allowed_redirect_urls: List[str]

    # Google OAuth client
    google_client_id: Optional[str]
    google_client_secret: Optional[str]
    google_scopes: str

    # Flow + provider tuning
    state_ttl_seconds: int
    http_timeout_seconds: float
    jwks_refresh_seconds: int

    # Optional CORS (empty -> middleware not installed)
    cors_origins: List[str]

    # Postgres connection for login history (either dsn or parts)
    postgres_dsn: Optional[str]
    postgres_host: Optional[str]
    postgres_port: int
    postgres_db: Optional[str]
    postgres_user: Optional[str]
    postgres_password: Optional[str]

    @property
    def cookie_secure(self) -> bool:
        """Session cookies are Secure only when the service itself is served over https."""
        return self.public_base_url.startswith("https://")

    @property
    def google_enabled(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)

    @property
    def google_callback_url(self) -> str:
        return f"{self.public_base_url}/api/auth/google/callback"

    @property
    def fallback_redirect_url(self) -> Optional[str]:
        return self.allowed_redirect_urls[0] if self.allowed_redirect_urls else None


def _parse_csv(value: str) -> List[str]:
    # URLs are case-sensitive in their path; only trim.
    items = [x.strip() for x in (value or "").split(",")]
    return [x for x in items if x]


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(float(raw))
    except ValueError:
        return default
    return max(minimum, value)


def _env_str(name: str) -> Optional[str]:
    return (os.getenv(name, "") or "").strip() or None


@lru_cache(maxsize=1)
def load_auth_config() -> AuthConfig:
    """
    Load broker configuration from environment variables.

    Google is registered only if GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET are set.
    The repository is Postgres-backed only if POSTGRES_DSN (or all POSTGRES_* parts) are set.
    """
    base = (_env_str("AUTH_PUBLIC_BASE_URL") or "http://localhost:8080").rstrip("/")

    return AuthConfig(
        public_base_url=base,
        allowed_redirect_urls=_parse_csv(os.getenv("AUTH_ALLOWED_REDIRECT_URLS", "")),
        google_client_id=_env_str("GOOGLE_CLIENT_ID"),
        google_client_secret=_env_str("GOOGLE_CLIENT_SECRET"),
        google_scopes=_env_str("GOOGLE_SCOPES") or DEFAULT_GOOGLE_SCOPES,
        state_ttl_seconds=_env_int("AUTH_STATE_TTL_SECONDS", 60),
        http_timeout_seconds=float(_env_int("AUTH_HTTP_TIMEOUT_SECONDS", 10)),
        jwks_refresh_seconds=_env_int("AUTH_JWKS_REFRESH_SECONDS", 3600, minimum=60),
        cors_origins=_parse_csv(os.getenv("AUTH_CORS_ORIGINS", "")),
        postgres_dsn=_env_str("POSTGRES_DSN"),
        postgres_host=_env_str("POSTGRES_HOST"),
        postgres_port=_env_int("POSTGRES_PORT", 5432),
        postgres_db=_env_str("POSTGRES_DB"),
        postgres_user=_env_str("POSTGRES_USER"),
        postgres_password=_env_str("POSTGRES_PASSWORD"),
    )


def build_postgres_dsn(cfg: AuthConfig) -> Optional[str]:
    if cfg.postgres_dsn:
        return cfg.postgres_dsn
    if not (cfg.postgres_host and cfg.postgres_db and cfg.postgres_user and cfg.postgres_password):
        return None
    # psycopg's conninfo builder quotes/escapes special characters in passwords.
    from psycopg.conninfo import make_conninfo

    return make_conninfo(
        host=cfg.postgres_host,
        port=cfg.postgres_port,
        dbname=cfg.postgres_db,
        user=cfg.postgres_user,
        password=cfg.postgres_password,
    )
