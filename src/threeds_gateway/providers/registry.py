"""Explicit registry of configured provider sessions."""

import logging
from typing import Dict, Iterable, List, Optional, Type

from ..config import GatewaySettings
from ..errors import StateError, ValidationError
from ..transport import ProviderHTTPClient
from .akbank import AkbankSession
from .base import ProviderSession
from .iyzico import IyzicoSession
from .paycell import PaycellSession
from .payten import PaytenSession
from .stripe_provider import StripeSession
from .ziraat import ZiraatSession

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: Dict[str, Type[ProviderSession]] = {
    "paycell": PaycellSession,
    "ziraat": ZiraatSession,
    "akbank": AkbankSession,
    "payten": PaytenSession,
    "stripe": StripeSession,
    "iyzico": IyzicoSession,
}


def registry_key(name: str, tenant_id: Optional[int] = None) -> str:
    return f"{tenant_id}_{name}" if tenant_id is not None else name


class ProviderRegistry:
    """Maps provider keys, optionally tenant-scoped, to live sessions.

    Tenant entries are stored as ``"{tenant_id}_{name}"`` and take precedence
    over the shared entry of the same name.
    """

    def __init__(self):
        self._sessions: Dict[str, ProviderSession] = {}

    def register(self, name: str, session: ProviderSession, tenant_id: Optional[int] = None) -> None:
        key = registry_key(name.lower(), tenant_id)
        if key in self._sessions:
            logger.warning(f"Replacing provider session '{key}'")
        self._sessions[key] = session

    def get(self, name: str, tenant_id: Optional[int] = None) -> ProviderSession:
        """Look up the session for ``name``.

        Raises:
            StateError: ``PROVIDER_NOT_FOUND`` if neither a tenant nor a shared
                entry exists.
        """
        name = name.lower()
        if tenant_id is not None:
            session = self._sessions.get(registry_key(name, tenant_id))
            if session is not None:
                return session
        session = self._sessions.get(name)
        if session is None:
            raise StateError(f"Provider '{name}' is not configured", code="PROVIDER_NOT_FOUND", provider=name)
        return session

    def names(self) -> List[str]:
        return sorted(self._sessions)

    def __contains__(self, key: str) -> bool:
        return key in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


def build_registry(
    settings: GatewaySettings,
    http: ProviderHTTPClient,
    providers: Optional[Iterable[str]] = None,
) -> ProviderRegistry:
    """Build one session per configured provider.

    Providers whose configuration fails validation are skipped with a warning,
    so a missing credential never prevents the others from starting.
    """
    registry = ProviderRegistry()
    for name in providers or PROVIDER_CLASSES:
        cls = PROVIDER_CLASSES[name]
        config = settings.providers.get(name)
        if config is None:
            logger.warning(f"No configuration for provider '{name}', skipping")
            continue
        try:
            registry.register(name, cls(config, http))
        except ValidationError as e:
            logger.warning(f"Skipping provider '{name}': {e.message}")
            continue
        logger.info(f"Registered provider '{name}' ({config.environment})")
    return registry
