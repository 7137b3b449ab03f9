"""
Payment requirement construction and fixed-point amount helpers.

USD is converted to stroops exactly once, when requirements are issued,
truncating toward zero. Everything after that point works on integers.
"""

from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Optional, Union

from src.payments.errors import ValidationError
from src.payments.models import PaymentExtra, PaymentRequirements

# Stellar amounts have 7 decimals (1 XLM = 10_000_000 stroops)
ATOMIC_DECIMALS = 7
ATOMIC_UNIT = Decimal(10 ** ATOMIC_DECIMALS)

NATIVE_ASSET = "native"


def _to_decimal(value: Union[str, int, float, Decimal], field: str) -> Decimal:
    try:
        # str() first so floats keep their shortest repr instead of binary noise
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid {field}: {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"Invalid {field}: {value!r}")
    return amount


def usd_to_atomic(amount_usd: Union[str, int, float, Decimal]) -> str:
    """Convert a USD amount to stroops, truncating toward zero"""
    amount = _to_decimal(amount_usd, "amount")
    atomic = int((amount * ATOMIC_UNIT).to_integral_value(rounding=ROUND_DOWN))
    if atomic <= 0:
        raise ValidationError(f"Amount must be positive, got {amount_usd}")
    return str(atomic)


def ledger_amount_to_atomic(amount: Union[str, Decimal]) -> int:
    """Convert a ledger decimal string (e.g. '10.0000000') to stroops"""
    value = _to_decimal(amount, "ledger amount")
    return int((value * ATOMIC_UNIT).to_integral_value(rounding=ROUND_DOWN))


def build_payment_requirements(
    amount_usd: Union[str, int, float, Decimal],
    resource: str,
    pay_to: str,
    description: str = "",
    network: str = "stellar-testnet",
    scheme: str = "exact",
    asset: str = NATIVE_ASSET,
    timeout_seconds: int = 300,
    fee_sponsorship: bool = True,
    amount_atomic: Optional[str] = None,
) -> PaymentRequirements:
    """
    Create the canonical PaymentRequirements for a USD amount.

    Args:
        amount_usd: Amount in USD (converted to stroops once, here)
        resource: Resource identifier being paid for
        pay_to: Stellar account receiving the payment
        description: Human-readable description
        network: Ledger network identifier
        scheme: Payment scheme (only "exact" is supported)
        asset: 'native' or a credit asset identifier
        timeout_seconds: Payment window in seconds
        fee_sponsorship: Whether the facilitator pays network fees
        amount_atomic: Precomputed stroop amount, skips conversion

    Returns:
        Immutable PaymentRequirements
    """
    if not pay_to:
        raise ValidationError("payTo address is required")

    return PaymentRequirements(
        scheme=scheme,
        network=network,
        maxAmountRequired=amount_atomic or usd_to_atomic(amount_usd),
        resource=resource,
        description=description,
        payTo=pay_to,
        maxTimeoutSeconds=timeout_seconds,
        asset=asset,
        extra=PaymentExtra(feeSponsorship=fee_sponsorship),
    )
