"""Environment-driven configuration for the agent gateway."""

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

logger = logging.getLogger("gateway.config")

DEFAULT_API_URL = "https://api.cursor.com"
DEFAULT_TOKEN_TTL_DAYS = 30.0
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000

MS_PER_DAY = 24 * 60 * 60 * 1000


@dataclass(frozen=True)
class Settings:
    """Snapshot of the gateway configuration."""
    api_key: Optional[str] = None
    api_url: str = DEFAULT_API_URL
    token_secret: Optional[str] = None
    token_ttl_days: float = DEFAULT_TOKEN_TTL_DAYS
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    client_debug: bool = False
    admin_key: Optional[str] = None

    @property
    def token_ttl_ms(self) -> int:
        """Token lifetime in milliseconds (zero or negative is allowed)."""
        return int(self.token_ttl_days * MS_PER_DAY)


def _parse_ttl_days(raw: Optional[str]) -> float:
    if raw is None or not raw.strip():
        return DEFAULT_TOKEN_TTL_DAYS
    try:
        return float(raw.strip())
    except ValueError:
        logger.warning("invalid_token_ttl value=%r default=%s", raw, DEFAULT_TOKEN_TTL_DAYS)
        return DEFAULT_TOKEN_TTL_DAYS


def _parse_port(raw: Optional[str]) -> int:
    if raw is None or not raw.strip():
        return DEFAULT_PORT
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning("invalid_port value=%r default=%s", raw, DEFAULT_PORT)
        return DEFAULT_PORT


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from environment variables.

    Args:
        environ: Mapping to read from (defaults to os.environ)

    Returns:
        Frozen Settings instance
    """
    env = os.environ if environ is None else environ

    return Settings(
        api_key=env.get("CURSOR_API_KEY") or None,
        api_url=(env.get("CURSOR_API_URL") or DEFAULT_API_URL).rstrip("/"),
        token_secret=env.get("TOKEN_SECRET") or None,
        token_ttl_days=_parse_ttl_days(env.get("TOKEN_TTL_DAYS")),
        host=env.get("HOST") or DEFAULT_HOST,
        port=_parse_port(env.get("PORT")),
        client_debug=env.get("CURSOR_CLIENT_DEBUG", "").lower() in ("1", "true", "yes"),
        admin_key=env.get("GATEWAY_ADMIN_KEY") or None,
    )
