"""
Base64(JSON) codecs for the X-PAYMENT and X-PAYMENT-RESPONSE headers
"""

import base64
import binascii
import json
from typing import Any, Union

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from src.payments.errors import ValidationError
from src.payments.models import (
    CryptoPaymentPayload,
    FiatPaymentPayload,
    PaymentPayload,
    SettlementResponse,
)

_payload_adapter: TypeAdapter = TypeAdapter(PaymentPayload)


def _b64encode_json(text: str) -> str:
    return base64.b64encode(text.encode()).decode()


def parse_payment_payload(raw: Union[dict, Any]) -> PaymentPayload:
    """
    Validate a decoded payment payload into the crypto/fiat union.

    Crypto payloads from older clients omit ``type``; they are recognized
    by the presence of ``scheme``.
    """
    if isinstance(raw, (CryptoPaymentPayload, FiatPaymentPayload)):
        return raw
    if not isinstance(raw, dict):
        raise ValidationError("Payment payload must be a JSON object")
    if "type" not in raw and "scheme" in raw:
        raw = {**raw, "type": "crypto"}
    try:
        return _payload_adapter.validate_python(raw)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid payment payload: {e.errors()[0]['msg']}")


def encode_payment_header(payload: PaymentPayload) -> str:
    """Encode a payment payload for the X-PAYMENT header"""
    return _b64encode_json(payload.model_dump_json())


def decode_payment_header(encoded: str) -> PaymentPayload:
    """Decode the X-PAYMENT header, raising ValidationError when malformed"""
    try:
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
        raw = json.loads(decoded)
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise ValidationError(f"Invalid payment payload: {e}")
    return parse_payment_payload(raw)


def encode_settlement_header(response: SettlementResponse) -> str:
    """Encode a settlement response for the X-PAYMENT-RESPONSE header"""
    return _b64encode_json(response.model_dump_json())


def decode_settlement_header(encoded: str) -> SettlementResponse:
    """Decode an X-PAYMENT-RESPONSE header"""
    decoded = base64.b64decode(encoded).decode("utf-8")
    return SettlementResponse.model_validate_json(decoded)
