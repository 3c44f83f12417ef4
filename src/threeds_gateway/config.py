"""Environment-driven configuration for the gateway and its providers."""

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

logger = logging.getLogger(__name__)

ENVIRONMENT_SANDBOX = "sandbox"
ENVIRONMENT_PRODUCTION = "production"

DEFAULT_APP_URL = "http://localhost:9999"
DEFAULT_CALLBACK_TTL_MINUTES = 30

# Provider keys whose credentials are looked up as <KEY>_<FIELD> variables.
PROVIDER_ENV_FIELDS: Dict[str, tuple] = {
    "paycell": ("username", "password", "merchantId", "secureCode"),
    "ziraat": ("merchantSafeId", "terminalSafeId", "secretKey", "storeKey"),
    "akbank": ("merchantSafeId", "terminalSafeId", "secretKey"),
    "payten": ("merchant", "merchantUser", "merchantPassword", "secretKey"),
    "stripe": ("secretKey", "publicKey", "webhookSecret"),
    "iyzico": ("apiKey", "secretKey", "identityNumber"),
}


def _env_name(provider: str, key: str) -> str:
    snake = "".join(f"_{c}" if c.isupper() else c for c in key)
    return f"{provider}_{snake}".upper()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer value for {name}: {raw!r}")
        return default


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric value for {name}: {raw!r}")
        return default


@dataclass
class ProviderConfig:
    """Credentials and endpoints for one provider instance."""
    values: Dict[str, str] = field(default_factory=dict)
    environment: str = ENVIRONMENT_SANDBOX
    callback_base_url: str = DEFAULT_APP_URL

    @property
    def is_production(self) -> bool:
        return self.environment == ENVIRONMENT_PRODUCTION

    def get(self, key: str, default: str = "") -> str:
        return self.values.get(key) or default

    @classmethod
    def from_env(cls, provider: str, callback_base_url: str = DEFAULT_APP_URL) -> "ProviderConfig":
        """Load ``<PROVIDER>_<FIELD>`` variables for ``provider``."""
        values = {}
        for key in PROVIDER_ENV_FIELDS.get(provider, ()):
            value = os.getenv(_env_name(provider, key))
            if value:
                values[key] = value
        environment = os.getenv(f"{provider.upper()}_ENVIRONMENT", ENVIRONMENT_SANDBOX).lower()
        return cls(values=values, environment=environment, callback_base_url=callback_base_url)


@dataclass
class GatewaySettings:
    """Process-wide settings read from the environment."""
    app_url: str = DEFAULT_APP_URL
    database_url: Optional[str] = None
    api_key: Optional[str] = None
    http_timeout_seconds: float = 30.0
    http_max_retries: int = 2
    callback_state_ttl_minutes: int = DEFAULT_CALLBACK_TTL_MINUTES
    callback_timeout_seconds: float = 30.0
    log_level: str = "INFO"
    providers: Dict[str, ProviderConfig] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        app_url = os.getenv("APP_URL", DEFAULT_APP_URL).rstrip("/")
        providers = {
            name: ProviderConfig.from_env(name, callback_base_url=app_url)
            for name in PROVIDER_ENV_FIELDS
        }
        return cls(
            app_url=app_url,
            database_url=os.getenv("DATABASE_URL"),
            api_key=os.getenv("API_KEY"),
            http_timeout_seconds=_get_float("HTTP_TIMEOUT_SECONDS", 30.0),
            http_max_retries=_get_int("HTTP_MAX_RETRIES", 2),
            callback_state_ttl_minutes=_get_int("CALLBACK_STATE_TTL_MINUTES", DEFAULT_CALLBACK_TTL_MINUTES),
            callback_timeout_seconds=_get_float("CALLBACK_TIMEOUT_SECONDS", 30.0),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            providers=providers,
        )
