"""
x402 Facilitator for Stellar
Verifies signed payment transactions and settles them on the ledger
"""

from typing import Optional, Union

import structlog
from stellar_sdk import (
    FeeBumpTransactionEnvelope,
    Keypair,
    Payment,
    TransactionBuilder,
    TransactionEnvelope,
)
from stellar_sdk.exceptions import BadSignatureError

from src.config import FacilitatorConfig
from src.payments.errors import LedgerError, ProtocolMismatchError
from src.payments.ledger import HorizonClient
from src.payments.models import (
    CryptoPaymentPayload,
    FiatPaymentPayload,
    PaymentRequirements,
    SettleResponse,
    SupportedKind,
    VerifyResponse,
)
from src.payments.requirements import NATIVE_ASSET, ledger_amount_to_atomic

logger = structlog.get_logger()

AnyPaymentPayload = Union[CryptoPaymentPayload, FiatPaymentPayload]


def asset_identifier(asset) -> str:
    """'native' for XLM, 'CODE:ISSUER' for credit assets"""
    if asset.is_native():
        return NATIVE_ASSET
    return f"{asset.code}:{asset.issuer}"


def asset_satisfies(asset, expected: str) -> bool:
    """Whether an operation asset matches a requirement asset"""
    if expected == NATIVE_ASSET:
        return asset.is_native()
    if asset.is_native():
        return False
    code, _, issuer = expected.partition(":")
    return asset.code == code and (not issuer or asset.issuer == issuer)


class X402Facilitator:
    """
    Handles the facilitator side of the x402 flow on Stellar:
    - verify: protocol, signature, destination, amount, asset and balance checks
    - settle: submit the payer's transaction, optionally wrapped in a
      fee-bump signed by the facilitator key

    The facilitator secret never leaves this object.
    """

    def __init__(
        self,
        config: FacilitatorConfig,
        ledger: Optional[HorizonClient] = None,
    ):
        self.config = config
        self.network = config.network
        self.network_passphrase = config.network_passphrase
        self.ledger = ledger or HorizonClient(
            horizon_url=config.horizon_url,
            poll_interval=config.settlement_poll_interval,
            max_poll_attempts=config.settlement_max_poll_attempts,
        )
        self._keypair: Optional[Keypair] = None

        if config.facilitator_private_key:
            self._keypair = Keypair.from_secret(config.facilitator_private_key)
            logger.info(
                "facilitator_initialized",
                network=self.network,
                address=self._keypair.public_key,
            )
        else:
            logger.warning(
                "facilitator_not_configured",
                message="FACILITATOR_PRIVATE_KEY not set, settlement unavailable",
            )

    def is_ready(self) -> bool:
        return self._keypair is not None

    @property
    def facilitator_address(self) -> Optional[str]:
        return self._keypair.public_key if self._keypair else None

    def get_supported(self) -> dict:
        kind = SupportedKind(
            x402Version=self.config.x402_version,
            scheme=self.config.scheme,
            network=self.network,
        )
        return {"kinds": [kind.model_dump()]}

    def block_explorer_url(self, tx_hash: str) -> str:
        return f"{self.config.block_explorer_url.rstrip('/')}/tx/{tx_hash}"

    async def get_balance(self, address: str, asset: str = NATIVE_ASSET) -> int:
        """Balance of an account in stroops"""
        return await self.ledger.balance_of(address, asset)

    def _decode(self, signed_tx_xdr: str) -> TransactionEnvelope:
        envelope = TransactionBuilder.from_xdr(signed_tx_xdr, self.network_passphrase)
        if isinstance(envelope, FeeBumpTransactionEnvelope):
            raise ValueError("Fee-bump envelopes are not accepted as payment proofs")
        return envelope

    @staticmethod
    def _find_payment(envelope: TransactionEnvelope) -> Optional[Payment]:
        for op in envelope.transaction.operations:
            if isinstance(op, Payment):
                return op
        return None

    @staticmethod
    def _has_valid_signature(envelope: TransactionEnvelope, account_id: str) -> bool:
        keypair = Keypair.from_public_key(account_id)
        tx_hash = envelope.hash()
        for decorated in envelope.signatures:
            try:
                keypair.verify(tx_hash, decorated.signature)
                return True
            except BadSignatureError:
                continue
        return False

    def _check_protocol(self, payload: CryptoPaymentPayload) -> None:
        if payload.x402Version != self.config.x402_version:
            raise ProtocolMismatchError(f"Unsupported x402 version: {payload.x402Version}")
        if payload.network != self.network:
            raise ProtocolMismatchError(f"Wrong network. Expected {self.network}, got {payload.network}")
        if payload.scheme != self.config.scheme:
            raise ProtocolMismatchError(f"Unsupported scheme: {payload.scheme}")

    async def verify(
        self,
        payment_payload: AnyPaymentPayload,
        requirements: PaymentRequirements,
    ) -> VerifyResponse:
        """
        Verify a payment payload against payment requirements.

        Checks run in order and stop at the first failure:
        variant, protocol version/network/scheme, XDR decoding and source
        account, signature, payment operation and destination, amount,
        asset, and finally the payer's live balance.
        """
        if not isinstance(payment_payload, CryptoPaymentPayload):
            return VerifyResponse(
                isValid=False,
                invalidReason="Invalid payment payload type for crypto payment",
            )

        if not self.is_ready():
            return VerifyResponse(isValid=False, invalidReason="Facilitator not configured")

        payload = payment_payload.payload

        try:
            self._check_protocol(payment_payload)
        except ProtocolMismatchError as e:
            logger.info("payment_protocol_mismatch", payer=payload.sourceAccount, reason=e.reason)
            return VerifyResponse(isValid=False, invalidReason=e.reason, payer=payload.sourceAccount)

        try:
            envelope = self._decode(payload.signedTxXdr)
        except Exception as e:
            logger.warning("payment_xdr_decode_failed", error=str(e))
            return VerifyResponse(
                isValid=False,
                invalidReason=f"Invalid transaction XDR: {e}",
                payer=payload.sourceAccount,
            )

        source = envelope.transaction.source.account_id
        if source != payload.sourceAccount:
            return VerifyResponse(
                isValid=False,
                invalidReason="Transaction source account mismatch",
                payer=payload.sourceAccount,
            )

        if not envelope.signatures:
            return VerifyResponse(isValid=False, invalidReason="Transaction has no signatures", payer=source)

        try:
            signed = self._has_valid_signature(envelope, source)
        except ValueError as e:
            return VerifyResponse(isValid=False, invalidReason=f"Invalid source account: {e}", payer=source)
        if not signed:
            return VerifyResponse(isValid=False, invalidReason="Invalid transaction signature", payer=source)

        payment_op = self._find_payment(envelope)
        if payment_op is None:
            return VerifyResponse(
                isValid=False,
                invalidReason="No payment operation found in transaction",
                payer=source,
            )

        if payment_op.destination.account_id != requirements.payTo:
            return VerifyResponse(
                isValid=False,
                invalidReason=f"Payment destination mismatch. Expected {requirements.payTo}",
                payer=source,
            )

        paid = ledger_amount_to_atomic(payment_op.amount)
        required = int(requirements.maxAmountRequired)
        if paid < required:
            return VerifyResponse(
                isValid=False,
                invalidReason=f"Insufficient payment amount. Required {required}, got {paid}",
                payer=source,
            )

        if not asset_satisfies(payment_op.asset, requirements.asset):
            if requirements.asset == NATIVE_ASSET:
                reason = "Expected native XLM payment"
            else:
                reason = (
                    f"Asset mismatch. Expected {requirements.asset}, "
                    f"got {asset_identifier(payment_op.asset)}"
                )
            return VerifyResponse(isValid=False, invalidReason=reason, payer=source)

        balance_error = await self._check_balance(source, requirements.asset, required)
        if balance_error:
            return VerifyResponse(isValid=False, invalidReason=balance_error, payer=source)

        logger.info(
            "payment_verified",
            payer=source,
            amount=paid,
            destination=requirements.payTo,
            asset=requirements.asset,
        )
        return VerifyResponse(isValid=True, payer=source)

    async def _check_balance(self, account_id: str, asset: str, required: int) -> Optional[str]:
        try:
            balance = await self.ledger.balance_of(account_id, asset)
        except LedgerError as e:
            logger.error("payer_balance_lookup_failed", payer=account_id, error=e.reason)
            return "Failed to verify payer balance"
        if balance < required:
            return f"Insufficient balance. Has {balance}, needs {required}"
        return None

    def _fee_bump(self, envelope: TransactionEnvelope) -> FeeBumpTransactionEnvelope:
        operations = max(len(envelope.transaction.operations), 1)
        # the bump rate may not fall below the inner per-op rate
        inner_base_fee = -(-envelope.transaction.fee // operations)
        fee_bump = TransactionBuilder.build_fee_bump_transaction(
            fee_source=self._keypair,
            base_fee=max(self.config.fee_bump_base_fee, inner_base_fee),
            inner_transaction_envelope=envelope,
            network_passphrase=self.network_passphrase,
        )
        fee_bump.sign(self._keypair)
        return fee_bump

    def _settle_failure(self, reason: str, payer: Optional[str] = None) -> SettleResponse:
        return SettleResponse(
            success=False,
            errorReason=reason,
            transaction="",
            network=self.network,
            payer=payer,
        )

    async def settle(
        self,
        payment_payload: AnyPaymentPayload,
        requirements: PaymentRequirements,
    ) -> SettleResponse:
        """
        Settle a payment by submitting the signed transaction to Stellar.

        With ``extra.feeSponsorship`` the payer's envelope is wrapped,
        unmodified, in a fee-bump paid by the facilitator key.
        """
        if not isinstance(payment_payload, CryptoPaymentPayload):
            return self._settle_failure("Invalid payment payload type for crypto payment")

        if not self.is_ready():
            return self._settle_failure("Facilitator not configured")

        payload = payment_payload.payload
        payer = payload.sourceAccount

        try:
            envelope = self._decode(payload.signedTxXdr)

            if self.config.recheck_balance_before_settle:
                balance_error = await self._check_balance(
                    payer, requirements.asset, int(requirements.maxAmountRequired)
                )
                if balance_error:
                    return self._settle_failure(balance_error, payer)

            sponsored = bool(requirements.extra and requirements.extra.feeSponsorship)
            to_submit = self._fee_bump(envelope) if sponsored else envelope

            tx_hash = await self.ledger.submit_transaction(to_submit.to_xdr())
            await self.ledger.wait_for_transaction(tx_hash)

            logger.info(
                "payment_settled",
                tx_hash=tx_hash,
                payer=payer,
                fee_sponsored=sponsored,
            )
            return SettleResponse(
                success=True,
                transaction=tx_hash,
                network=self.network,
                payer=payer,
            )

        except LedgerError as e:
            logger.error("payment_settlement_failed", error=e.reason, payer=payer)
            return self._settle_failure(e.reason, payer)
        except Exception as e:
            logger.error("payment_settlement_failed", error=str(e), payer=payer)
            return self._settle_failure(f"Settlement failed: {e}", payer)

    async def aclose(self):
        await self.ledger.aclose()
