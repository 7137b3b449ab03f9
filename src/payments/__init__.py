"""
x402 Payment Module
Exact-scheme payments on the Stellar ledger, with an optional fiat channel
"""

from src.payments.errors import X402Error
from src.payments.facilitator import X402Facilitator
from src.payments.headers import (
    decode_payment_header,
    decode_settlement_header,
    encode_payment_header,
    encode_settlement_header,
)
from src.payments.models import (
    CryptoPaymentPayload,
    FiatPaymentPayload,
    PaymentMethod,
    PaymentPayload,
    PaymentRequirements,
    SettleResponse,
    SettlementResponse,
    VerifyResponse,
)
from src.payments.requirements import (
    ATOMIC_DECIMALS,
    build_payment_requirements,
    usd_to_atomic,
)

__all__ = [
    "X402Error",
    "X402Facilitator",
    "decode_payment_header",
    "decode_settlement_header",
    "encode_payment_header",
    "encode_settlement_header",
    "CryptoPaymentPayload",
    "FiatPaymentPayload",
    "PaymentMethod",
    "PaymentPayload",
    "PaymentRequirements",
    "SettleResponse",
    "SettlementResponse",
    "VerifyResponse",
    "ATOMIC_DECIMALS",
    "build_payment_requirements",
    "usd_to_atomic",
]
