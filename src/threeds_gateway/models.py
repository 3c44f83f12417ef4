"""Canonical request, context and result models shared by all providers."""

import enum
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, SecretStr, field_validator


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the database stores datetimes."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Decimal internally, plain JSON number on the wire.
Amount = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount (e.g. TRY) to minor units (kuruş)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_amount(amount: Decimal) -> str:
    """Two-decimal amount string used by form-based gateways."""
    return str(Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def mask_card_number(card_number: str) -> str:
    digits = card_number.replace(" ", "")
    if len(digits) < 10:
        return "*" * len(digits)
    return f"{digits[:6]}{'*' * (len(digits) - 10)}{digits[-4:]}"


class PaymentStatus(str, enum.Enum):
    """Canonical payment status values."""
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in (
            PaymentStatus.SUCCESSFUL,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
            PaymentStatus.REFUNDED,
        )


class Address(BaseModel):
    city: Optional[str] = None
    country: Optional[str] = None
    address: Optional[str] = None
    zip_code: Optional[str] = None


class Customer(BaseModel):
    id: Optional[str] = None
    name: str = ""
    surname: str = ""
    email: Optional[str] = None
    phone_number: Optional[str] = None
    ip_address: Optional[str] = None
    address: Optional[Address] = None

    @property
    def full_name(self) -> str:
        return f"{self.name} {self.surname}".strip()


class CardInfo(BaseModel):
    """Raw card data. Only the tokenization step may read the secret fields."""
    card_holder_name: str = ""
    card_number: SecretStr
    expire_month: str
    expire_year: str
    cvv: SecretStr

    @field_validator("expire_month")
    @classmethod
    def validate_month(cls, v: str) -> str:
        if not v.isdigit() or not 1 <= int(v) <= 12:
            raise ValueError("expire_month must be between 01 and 12")
        return v.zfill(2)

    @field_validator("expire_year")
    @classmethod
    def validate_year(cls, v: str) -> str:
        if not v.isdigit() or len(v) not in (2, 4):
            raise ValueError("expire_year must be 2 or 4 digits")
        return v

    @property
    def number(self) -> str:
        return self.card_number.get_secret_value().replace(" ", "")

    @property
    def expire_year_short(self) -> str:
        return self.expire_year[-2:]


class Item(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    price: Amount
    quantity: int = 1


class PaymentRequest(BaseModel):
    """Provider-independent payment request."""
    id: Optional[str] = None
    reference_id: Optional[str] = None
    amount: Amount
    currency: str = "TRY"
    customer: Customer = Field(default_factory=Customer)
    card_info: Optional[CardInfo] = None
    items: List[Item] = Field(default_factory=list)
    description: Optional[str] = None
    callback_url: Optional[str] = None
    use_3d: bool = False
    installment_count: int = Field(default=1, ge=1, le=36)
    conversation_id: Optional[str] = None
    client_ip: Optional[str] = None
    environment: Optional[str] = None
    tenant_id: Optional[int] = None

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("amount must be greater than 0")
        return v

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        if len(v) != 3 or not v.isalpha():
            raise ValueError("currency must be a 3-letter ISO code")
        return v.upper()

    def audit_payload(self) -> Dict[str, Any]:
        """JSON dump for the audit log, with the PAN as first six and last four digits."""
        payload = self.model_dump(mode="json")
        if self.card_info is not None:
            payload["card_info"]["card_number"] = mask_card_number(self.card_info.number)
            payload["card_info"]["cvv"] = "***"
        return payload


class StatusRequest(BaseModel):
    payment_id: str
    conversation_id: Optional[str] = None


class CancelRequest(BaseModel):
    payment_id: str
    reason: Optional[str] = None
    description: Optional[str] = None
    currency: Optional[str] = None
    conversation_id: Optional[str] = None


class RefundRequest(BaseModel):
    payment_id: str
    refund_amount: Amount
    reason: Optional[str] = None
    description: Optional[str] = None
    currency: Optional[str] = None
    conversation_id: Optional[str] = None

    @field_validator("refund_amount")
    @classmethod
    def validate_refund_amount(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("refund_amount must be greater than 0")
        return v


class TransactionContext(BaseModel):
    """Context preserved across the bank redirect, addressed by an opaque token."""
    model_config = ConfigDict(frozen=True)

    tenant_id: Optional[int] = None
    provider: str
    payment_id: str
    amount: Amount
    currency: str
    environment: str = "sandbox"
    client_ip: Optional[str] = None
    original_callback_url: Optional[str] = None
    log_id: Optional[int] = None
    session_id: Optional[str] = None
    installment_count: int = 1
    conversation_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class NormalizedResult(BaseModel):
    """Canonical answer returned for every provider call."""
    success: bool
    status: PaymentStatus
    payment_id: Optional[str] = None
    transaction_id: Optional[str] = None
    order_id: Optional[str] = None
    amount: Optional[Amount] = None
    currency: Optional[str] = None
    message: Optional[str] = None
    error_code: Optional[str] = None
    redirect_url: Optional[str] = None
    html: Optional[str] = None
    provider_response: Optional[Any] = None
    system_time: datetime = Field(default_factory=utcnow)


class RefundResult(BaseModel):
    success: bool
    status: PaymentStatus
    refund_id: Optional[str] = None
    payment_id: Optional[str] = None
    refund_amount: Optional[Amount] = None
    message: Optional[str] = None
    error_code: Optional[str] = None
    provider_response: Optional[Any] = None
    system_time: datetime = Field(default_factory=utcnow)


def failed_result(
    message: str,
    error_code: Optional[str] = None,
    payment_id: Optional[str] = None,
    amount: Optional[Decimal] = None,
    currency: Optional[str] = None,
    provider_response: Optional[Dict[str, Any]] = None,
) -> NormalizedResult:
    """Build a Failed result for declines raised before provisioning."""
    return NormalizedResult(
        success=False,
        status=PaymentStatus.FAILED,
        payment_id=payment_id,
        amount=amount,
        currency=currency,
        message=message,
        error_code=error_code,
        provider_response=provider_response,
    )


def _check_bin(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.replace(" ", "")
    if not v.isdigit() or not 6 <= len(v) <= 8:
        raise ValueError("bin_number must be the first 6 to 8 card digits")
    return v


class InstallmentInquiry(BaseModel):
    """Which installment plans a card (identified by its BIN) gets for an amount."""
    amount: Amount
    bin_number: Optional[str] = None
    currency: str = "TRY"
    conversation_id: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("amount must be greater than 0")
        return v

    @field_validator("bin_number")
    @classmethod
    def validate_bin(cls, v: Optional[str]) -> Optional[str]:
        return _check_bin(v)


class InstallmentOption(BaseModel):
    installment_count: int
    installment_price: Amount
    total_price: Amount


class InstallmentInfo(BaseModel):
    success: bool
    bin_number: Optional[str] = None
    bank_name: Optional[str] = None
    card_association: Optional[str] = None
    card_family: Optional[str] = None
    options: List[InstallmentOption] = Field(default_factory=list)
    message: Optional[str] = None
    error_code: Optional[str] = None
    provider_response: Optional[Any] = None
    system_time: datetime = Field(default_factory=utcnow)

    @property
    def max_installment_count(self) -> int:
        return max((option.installment_count for option in self.options), default=0)


class CommissionRequest(BaseModel):
    amount: Amount
    installment_count: int = Field(default=1, ge=1, le=36)
    bin_number: Optional[str] = None
    currency: str = "TRY"
    conversation_id: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("amount must be greater than 0")
        return v

    @field_validator("bin_number")
    @classmethod
    def validate_bin(cls, v: Optional[str]) -> Optional[str]:
        return _check_bin(v)


class CommissionResult(BaseModel):
    """What the customer pays on top of ``amount`` for an installment plan.

    ``commission_rate`` is a percentage of ``amount``.
    """
    success: bool
    amount: Optional[Amount] = None
    installment_count: int = 1
    installment_amount: Optional[Amount] = None
    total_amount: Optional[Amount] = None
    commission_amount: Optional[Amount] = None
    commission_rate: Optional[Amount] = None
    message: Optional[str] = None
    error_code: Optional[str] = None
    provider_response: Optional[Any] = None
    system_time: datetime = Field(default_factory=utcnow)
