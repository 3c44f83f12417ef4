"""SQLAlchemy models for callback state, provider audit logs and payment attempts."""

import json
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..models import utcnow


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class CallbackState(Base):
    """Transaction context parked while the customer is on the bank's 3-D page."""
    __tablename__ = "callback_states"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Opaque bearer token presented by the returning browser
    token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)

    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    payment_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    tenant_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Serialized TransactionContext
    context_json: Mapped[str] = mapped_column(Text, nullable=False)

    # Resolution bookkeeping (resolve is a non-destructive read)
    resolve_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_callback_states_expires_at", "expires_at"),
    )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check if the callback state has expired."""
        return (now or utcnow()) > self.expires_at


class ProviderLog(Base):
    """Audit row for one gateway call, holding every signed outbound request."""
    __tablename__ = "provider_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    method: Mapped[str] = mapped_column(String(50), nullable=False)
    endpoint: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    client_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Request JSON: the client request plus provider requests merged by key
    request_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    response_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    error_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processing_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_provider_logs_provider_payment_id", "provider", "payment_id"),
        Index("ix_provider_logs_created_at", "created_at"),
    )

    @property
    def request(self) -> Dict[str, Any]:
        """Get request data as dictionary."""
        if self.request_json:
            return json.loads(self.request_json)
        return {}

    @request.setter
    def request(self, value: Optional[Dict[str, Any]]) -> None:
        """Set request data from dictionary."""
        if value is not None:
            self.request_json = json.dumps(value, default=str)
        else:
            self.request_json = None

    @property
    def response(self) -> Optional[Dict[str, Any]]:
        """Get response data as dictionary."""
        if self.response_json:
            return json.loads(self.response_json)
        return None

    @response.setter
    def response(self, value: Optional[Dict[str, Any]]) -> None:
        """Set response data from dictionary."""
        if value is not None:
            self.response_json = json.dumps(value, default=str)
        else:
            self.response_json = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert log entry to dictionary representation."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "provider": self.provider,
            "method": self.method,
            "endpoint": self.endpoint,
            "payment_id": self.payment_id,
            "transaction_id": self.transaction_id,
            "status": self.status,
            "request": self.request,
            "response": self.response,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "processing_ms": self.processing_ms,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class PaymentAttempt(Base):
    """Lifecycle of one payment across its round trips."""
    __tablename__ = "payment_attempts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    tenant_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    payment_id: Mapped[str] = mapped_column(String(255), nullable=False)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    is_3d: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    log_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Last normalized result, replayed on duplicate callbacks
    result_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "payment_id", name="uq_payment_attempts_provider_payment_id"),
        Index("ix_payment_attempts_status", "status"),
    )

    @property
    def result(self) -> Optional[Dict[str, Any]]:
        """Get the last normalized result as dictionary."""
        if self.result_json:
            return json.loads(self.result_json)
        return None

    @result.setter
    def result(self, value: Optional[Dict[str, Any]]) -> None:
        """Set the last normalized result from dictionary."""
        if value is not None:
            self.result_json = json.dumps(value, default=str)
        else:
            self.result_json = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert payment attempt to dictionary representation."""
        return {
            "id": self.id,
            "provider": self.provider,
            "tenant_id": self.tenant_id,
            "payment_id": self.payment_id,
            "transaction_id": self.transaction_id,
            "status": self.status,
            "amount": float(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "is_3d": self.is_3d,
            "error_code": self.error_code,
            "message": self.message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
