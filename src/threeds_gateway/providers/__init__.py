"""Provider sessions for the supported payment gateways."""

from .base import (
    CallContext,
    LEGAL_TRANSITIONS,
    ProviderSession,
    SessionFlow,
    SessionState,
)
from .akbank import AkbankSession
from .iyzico import IyzicoSession
from .paycell import PaycellSession
from .payten import PaytenSession
from .stripe_provider import StripeSession
from .ziraat import ZiraatSession
from .registry import PROVIDER_CLASSES, ProviderRegistry, build_registry

__all__ = [
    # Session interface and state machine
    "CallContext",
    "LEGAL_TRANSITIONS",
    "ProviderSession",
    "SessionFlow",
    "SessionState",
    # Vendors
    "AkbankSession",
    "IyzicoSession",
    "PaycellSession",
    "PaytenSession",
    "StripeSession",
    "ZiraatSession",
    # Registry
    "PROVIDER_CLASSES",
    "ProviderRegistry",
    "build_registry",
]
