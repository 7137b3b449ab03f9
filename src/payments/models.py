"""
x402-compliant payment models for the Stellar facilitator
Field names follow the x402 wire format (camelCase) so models serialize as-is
"""

from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PaymentMethod(str, Enum):
    """Payment variant a job can be settled with"""
    CRYPTO = "crypto"
    FIAT = "fiat"


class PaymentExtra(BaseModel):
    """Stellar-specific requirement flags"""
    model_config = ConfigDict(frozen=True)

    feeSponsorship: bool = False


class PaymentRequirements(BaseModel):
    """What a payer must send to be granted a resource (immutable once issued)"""
    model_config = ConfigDict(frozen=True)

    type: Literal["crypto"] = "crypto"
    scheme: str = Field(default="exact", description="Payment scheme")
    network: str = Field(default="stellar-testnet", description="Ledger network")
    maxAmountRequired: str = Field(description="Amount in stroops (7 decimals)")
    resource: str
    description: str = ""
    mimeType: str = "application/json"
    payTo: str = Field(description="Stellar account receiving the payment (G...)")
    maxTimeoutSeconds: int
    asset: str = Field(default="native", description="'native' or credit asset code / CODE:ISSUER")
    outputSchema: Optional[dict] = None
    extra: Optional[PaymentExtra] = None

    @field_validator("maxAmountRequired")
    @classmethod
    def validate_amount(cls, v):
        if not v.isdigit() or int(v) <= 0:
            raise ValueError("maxAmountRequired must be a positive integer string")
        return v


class ExactStellarPayload(BaseModel):
    """Scheme payload carrying a signed Stellar transaction"""
    signedTxXdr: str = Field(min_length=1, description="Base64 signed transaction envelope")
    sourceAccount: str
    amount: str
    destination: str
    asset: str = "native"
    validUntilLedger: int = 0
    nonce: str = ""


class CryptoPaymentPayload(BaseModel):
    """x402 crypto payment submitted in the X-PAYMENT header"""
    type: Literal["crypto"] = "crypto"
    x402Version: int
    scheme: str
    network: str
    payload: ExactStellarPayload

    @property
    def method(self) -> PaymentMethod:
        return PaymentMethod.CRYPTO


class FiatProof(BaseModel):
    """Bank transfer reference"""
    glosa: str = Field(min_length=1)
    time: Optional[str] = None
    transactionId: Optional[str] = None


class FiatPaymentPayload(BaseModel):
    """Fiat (bank QR) payment proof"""
    type: Literal["fiat"]
    x402Version: int = 1
    currency: str = "BOB"
    payload: FiatProof

    @property
    def method(self) -> PaymentMethod:
        return PaymentMethod.FIAT


PaymentPayload = Annotated[
    Union[CryptoPaymentPayload, FiatPaymentPayload],
    Field(discriminator="type"),
]


class VerifyResponse(BaseModel):
    """Result of payment verification"""
    model_config = ConfigDict(frozen=True)

    isValid: bool
    invalidReason: Optional[str] = None
    payer: Optional[str] = None


class SettleResponse(BaseModel):
    """Result of payment settlement"""
    model_config = ConfigDict(frozen=True)

    success: bool
    errorReason: Optional[str] = None
    transaction: str = ""
    network: str
    payer: Optional[str] = None


class SettlementResponse(BaseModel):
    """Body of the X-PAYMENT-RESPONSE header"""
    success: bool
    type: PaymentMethod
    transaction: Optional[str] = None
    network: Optional[str] = None
    payer: Optional[str] = None
    currency: Optional[str] = None
    errorReason: Optional[str] = None


class CryptoAcceptOption(BaseModel):
    """Crypto entry of a 402 accepts list"""
    type: Literal["crypto"] = "crypto"
    scheme: str
    network: str
    amountRequired: str
    resource: str
    payTo: str
    asset: str
    maxTimeoutSeconds: int


class FiatAcceptOption(BaseModel):
    """Fiat (bank QR) entry of a 402 accepts list"""
    type: Literal["fiat"] = "fiat"
    currency: str
    symbol: str
    amountRequired: str
    ipfsQrLink: Optional[str] = None
    maxTimeoutSeconds: int = 60
    resource: Optional[str] = None


AcceptOption = Annotated[
    Union[CryptoAcceptOption, FiatAcceptOption],
    Field(discriminator="type"),
]


class PaymentRequiredResponse(BaseModel):
    """x402 Payment Required response body (HTTP 402)"""
    x402Version: int = 1
    resource: str
    accepts: List[AcceptOption]
    error: str
    jobId: Optional[str] = None


class SupportedKind(BaseModel):
    x402Version: int
    scheme: str
    network: str
