"""
Payment job data model and state machine table
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Union

from pydantic import BaseModel

from src.payments.models import (
    CryptoPaymentPayload,
    FiatPaymentPayload,
    PaymentMethod,
    PaymentRequirements,
    SettleResponse,
    VerifyResponse,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStatus(str, Enum):
    """Lifecycle states for a payment job"""
    PAYMENT_REQUIRED = "payment_required"  # Requirements issued, waiting for proof
    PAYMENT_RECEIVED = "payment_received"  # Proof accepted, queued for processing
    VERIFYING = "verifying"
    VERIFIED = "verified"
    SETTLING = "settling"
    SETTLED = "settled"                    # On ledger, may await manual confirmation
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


TERMINAL_STATUSES: FrozenSet[PaymentStatus] = frozenset({
    PaymentStatus.COMPLETED,
    PaymentStatus.FAILED,
    PaymentStatus.EXPIRED,
})

# Statuses whose result is returned as-is when a proof is resubmitted
SUCCESS_STATUSES: FrozenSet[PaymentStatus] = frozenset({
    PaymentStatus.VERIFIED,
    PaymentStatus.SETTLED,
    PaymentStatus.COMPLETED,
})

IN_FLIGHT_STATUSES: FrozenSet[PaymentStatus] = frozenset({
    PaymentStatus.PAYMENT_RECEIVED,
    PaymentStatus.VERIFYING,
    PaymentStatus.SETTLING,
})

# Statuses the payment deadline still applies to; no funds have moved yet
EXPIRABLE_STATUSES: FrozenSet[PaymentStatus] = frozenset({
    PaymentStatus.PAYMENT_REQUIRED,
    PaymentStatus.PAYMENT_RECEIVED,
    PaymentStatus.VERIFYING,
})

_ABORT = {PaymentStatus.FAILED, PaymentStatus.EXPIRED}

ALLOWED_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PAYMENT_REQUIRED: frozenset({PaymentStatus.PAYMENT_RECEIVED, *_ABORT}),
    PaymentStatus.PAYMENT_RECEIVED: frozenset({PaymentStatus.VERIFYING, *_ABORT}),
    PaymentStatus.VERIFYING: frozenset({PaymentStatus.VERIFIED, *_ABORT}),
    PaymentStatus.VERIFIED: frozenset({PaymentStatus.SETTLING, *_ABORT}),
    PaymentStatus.SETTLING: frozenset({PaymentStatus.SETTLED, *_ABORT}),
    PaymentStatus.SETTLED: frozenset({PaymentStatus.COMPLETED}),
    PaymentStatus.COMPLETED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.EXPIRED: frozenset(),
}


@dataclass
class PaymentJob:
    """A payment obligation and everything recorded while settling it"""
    job_id: str
    order_id: str
    amount_usd: str
    amount_atomic: str
    resource: str
    description: str
    requirements: PaymentRequirements
    expires_at: datetime
    requires_manual_confirmation: bool = True
    status: PaymentStatus = PaymentStatus.PAYMENT_REQUIRED
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    payment_payload: Optional[Union[CryptoPaymentPayload, FiatPaymentPayload]] = None
    payment_method: Optional[PaymentMethod] = None
    verify_response: Optional[VerifyResponse] = None
    settle_response: Optional[SettleResponse] = None
    error_message: Optional[str] = None
    manually_confirmed: bool = False
    confirmed_at: Optional[datetime] = None
    confirmed_by: Optional[str] = None
    fiat_amount: Optional[str] = None
    fiat_qr_link: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_live(self) -> bool:
        return not self.is_terminal

    @property
    def tx_hash(self) -> Optional[str]:
        if self.settle_response and self.settle_response.transaction:
            return self.settle_response.transaction
        return None

    @property
    def payer(self) -> Optional[str]:
        if self.settle_response and self.settle_response.payer:
            return self.settle_response.payer
        if self.verify_response:
            return self.verify_response.payer
        return None

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready snapshot for API responses"""
        def dump(model: Optional[BaseModel]):
            return model.model_dump(mode="json") if model is not None else None

        return {
            "job_id": self.job_id,
            "order_id": self.order_id,
            "amount_usd": self.amount_usd,
            "amount_atomic": self.amount_atomic,
            "resource": self.resource,
            "description": self.description,
            "status": self.status.value,
            "payment_requirements": dump(self.requirements),
            "payment_payload": dump(self.payment_payload),
            "payment_method": self.payment_method.value if self.payment_method else None,
            "verify_response": dump(self.verify_response),
            "settle_response": dump(self.settle_response),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "error_message": self.error_message,
            "requires_manual_confirmation": self.requires_manual_confirmation,
            "manually_confirmed": self.manually_confirmed,
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "confirmed_by": self.confirmed_by,
            "fiat_amount": self.fiat_amount,
            "fiat_qr_link": self.fiat_qr_link,
        }


class JobOutcome(BaseModel):
    """Structured result of every registry operation"""
    success: bool
    job_id: Optional[str] = None
    order_id: Optional[str] = None
    status: Optional[PaymentStatus] = None
    method: Optional[PaymentMethod] = None
    requirements: Optional[PaymentRequirements] = None
    tx_hash: Optional[str] = None
    block_explorer_url: Optional[str] = None
    payer: Optional[str] = None
    requires_manual_confirmation: Optional[bool] = None
    error: Optional[str] = None
