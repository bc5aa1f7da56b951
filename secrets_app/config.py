"""
Application configuration.

Built once at startup from environment variables and handed to `create_app()`;
nothing in the request path reads the environment directly.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_PORT = 3000
DEFAULT_DATABASE_URL = "postgresql://localhost:5432/secrets_app"
GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"
FACEBOOK_GRAPH_URL = "https://graph.facebook.com/v19.0"


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _env_str(*names: str) -> Optional[str]:
    """First non-empty value among `names` (preferred name first, legacy names after)."""
    for name in names:
        value = (os.getenv(name, "") or "").strip()
        if value:
            return value
    return None


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return int(float(raw))
    except (ValueError, OverflowError):
        return default


@dataclass(frozen=True)
class AppConfig:
    # Server
    host: str
    port: int
    public_base_url: str  # Used to build provider callback URLs

    # Session configuration
    session_secret: Optional[str]  # None -> random per-process key (sessions die on restart)
    session_ttl_seconds: int
    cookie_secure: bool

    # Database
    database_url: str
    db_connect_timeout: int
    db_auto_migrate: bool

    # Google (OpenID Connect)
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    google_discovery_url: str = GOOGLE_DISCOVERY_URL

    # Facebook (OAuth 2)
    facebook_app_id: Optional[str] = None
    facebook_app_secret: Optional[str] = None
    facebook_graph_url: str = FACEBOOK_GRAPH_URL

    @property
    def google_enabled(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)

    @property
    def facebook_enabled(self) -> bool:
        return bool(self.facebook_app_id and self.facebook_app_secret)

    def callback_url(self, provider: str) -> str:
        return f"{self.public_base_url}/auth/{provider}/secrets"


def load_app_config() -> AppConfig:
    """
    Load configuration from environment variables.

    Legacy variable names (SECRET, CLIENT_ID, APP_ID, ...) are honoured as
    fallbacks so existing `.env` files keep working.
    """
    port = _env_int("PORT", DEFAULT_PORT)
    if port <= 0 or port > 65535:
        port = DEFAULT_PORT

    public_base_url = (_env_str("PUBLIC_BASE_URL") or f"http://localhost:{port}").rstrip("/")

    cookie_secure_env = (os.getenv("COOKIE_SECURE", "") or "").strip().lower()
    if cookie_secure_env in ("1", "true", "yes", "on"):
        cookie_secure = True
    elif cookie_secure_env in ("0", "false", "no", "off"):
        cookie_secure = False
    else:
        # Default: secure cookies when base URL is https; otherwise allow local dev.
        cookie_secure = public_base_url.startswith("https://")

    ttl = _env_int("SESSION_TTL_SECONDS", 24 * 60 * 60)
    if ttl <= 60:
        ttl = 60

    connect_timeout = _env_int("DB_CONNECT_TIMEOUT", 10)
    if connect_timeout <= 0:
        connect_timeout = 10

    return AppConfig(
        host=_env_str("HOST") or "0.0.0.0",
        port=port,
        public_base_url=public_base_url,
        session_secret=_env_str("SESSION_SECRET", "SECRET"),
        session_ttl_seconds=ttl,
        cookie_secure=cookie_secure,
        database_url=_env_str("DATABASE_URL", "POSTGRES_DSN") or DEFAULT_DATABASE_URL,
        db_connect_timeout=connect_timeout,
        db_auto_migrate=_env_bool("DB_AUTO_MIGRATE", False),
        google_client_id=_env_str("GOOGLE_CLIENT_ID", "CLIENT_ID"),
        google_client_secret=_env_str("GOOGLE_CLIENT_SECRET", "CLIENT_SECRET"),
        google_discovery_url=_env_str("GOOGLE_DISCOVERY_URL") or GOOGLE_DISCOVERY_URL,
        facebook_app_id=_env_str("FACEBOOK_APP_ID", "APP_ID"),
        facebook_app_secret=_env_str("FACEBOOK_APP_SECRET", "APP_SECRET"),
        facebook_graph_url=(_env_str("FACEBOOK_GRAPH_URL") or FACEBOOK_GRAPH_URL).rstrip("/"),
    )
