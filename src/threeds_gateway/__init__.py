# threeds_gateway package
__version__ = "0.1.0"

from .errors import (
    GatewayError,
    ValidationError,
    SigningError,
    TransportError,
    VendorDeclineError,
    StateError,
)
from .models import (
    PaymentRequest,
    StatusRequest,
    CancelRequest,
    RefundRequest,
    TransactionContext,
    NormalizedResult,
    RefundResult,
    PaymentStatus,
)
from .signing import SignatureEngine, SignatureSpec, NESTPAY_VER3
from .normalizer import ResponseNormalizer, VendorSignals
from .callbacks import CallbackStateStore
from .audit import AuditLog
from .config import GatewaySettings, ProviderConfig
from .providers import ProviderRegistry, build_registry
from .services import PaymentService
