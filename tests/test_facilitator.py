"""
Unit tests for the Stellar x402 facilitator
Transactions are built and signed offline with stellar-sdk so signature
checks run for real; Horizon is replaced by FakeLedger.
"""

import pytest
from stellar_sdk import (
    Account,
    Asset,
    FeeBumpTransactionEnvelope,
    Keypair,
    TransactionBuilder,
)

from src.config import FacilitatorConfig
from src.payments.errors import ProtocolMismatchError
from src.payments.facilitator import X402Facilitator, asset_satisfies
from src.payments.requirements import build_payment_requirements
from tests.conftest import TESTNET_PASSPHRASE, FakeLedger, crypto_payload, fiat_payload


@pytest.fixture
def requirements(merchant_keypair):
    return build_payment_requirements(
        amount_usd="10",
        resource="/api/pay",
        pay_to=merchant_keypair.public_key,
    )


class TestFacilitatorInfo:

    def test_ready_with_key(self, facilitator, facilitator_keypair):
        assert facilitator.is_ready()
        assert facilitator.facilitator_address == facilitator_keypair.public_key

    def test_not_ready_without_key(self):
        facilitator = X402Facilitator(FacilitatorConfig(_env_file=None), ledger=FakeLedger())
        assert not facilitator.is_ready()
        assert facilitator.facilitator_address is None

    def test_supported(self, facilitator):
        assert facilitator.get_supported() == {
            "kinds": [{"x402Version": 1, "scheme": "exact", "network": "stellar-testnet"}]
        }

    def test_block_explorer_url(self, facilitator):
        assert facilitator.block_explorer_url("abc") == "https://stellar.expert/explorer/testnet/tx/abc"

    @pytest.mark.asyncio
    async def test_get_balance(self, facilitator, payer_keypair):
        assert await facilitator.get_balance(payer_keypair.public_key) == 1_000_000_000

    def test_asset_satisfies(self):
        issuer = Keypair.random().public_key
        usdc = Asset("USDC", issuer)
        assert asset_satisfies(Asset.native(), "native")
        assert not asset_satisfies(usdc, "native")
        assert asset_satisfies(usdc, f"USDC:{issuer}")
        assert asset_satisfies(usdc, "USDC")
        assert not asset_satisfies(usdc, f"USDC:{Keypair.random().public_key}")
        assert not asset_satisfies(Asset.native(), "USDC")


class TestVerify:

    @pytest.mark.asyncio
    async def test_valid_payment(self, facilitator, requirements, valid_payment, payer_keypair):
        result = await facilitator.verify(valid_payment(), requirements)

        assert result.isValid
        assert result.invalidReason is None
        assert result.payer == payer_keypair.public_key

    @pytest.mark.asyncio
    async def test_overpayment_is_valid(self, facilitator, requirements, valid_payment):
        assert (await facilitator.verify(valid_payment("12.5"), requirements)).isValid

    @pytest.mark.asyncio
    async def test_fiat_payload_rejected(self, facilitator, requirements):
        result = await facilitator.verify(fiat_payload(), requirements)
        assert not result.isValid
        assert result.invalidReason == "Invalid payment payload type for crypto payment"

    @pytest.mark.asyncio
    async def test_not_configured(self, requirements, valid_payment):
        facilitator = X402Facilitator(FacilitatorConfig(_env_file=None), ledger=FakeLedger())
        result = await facilitator.verify(valid_payment(), requirements)
        assert result.invalidReason == "Facilitator not configured"

    @pytest.mark.asyncio
    async def test_wrong_version(self, facilitator, requirements, payer_keypair, merchant_keypair):
        payload = crypto_payload(payer_keypair, merchant_keypair.public_key, x402_version=2)
        result = await facilitator.verify(payload, requirements)
        assert result.invalidReason == "Unsupported x402 version: 2"

    @pytest.mark.asyncio
    async def test_wrong_network(self, facilitator, requirements, payer_keypair, merchant_keypair):
        payload = crypto_payload(payer_keypair, merchant_keypair.public_key, network="stellar-pubnet")
        result = await facilitator.verify(payload, requirements)
        assert not result.isValid
        assert result.invalidReason.startswith("Wrong network")

    @pytest.mark.asyncio
    async def test_wrong_scheme(self, facilitator, requirements, valid_payment):
        payload = valid_payment().model_copy(update={"scheme": "upto"})
        result = await facilitator.verify(payload, requirements)
        assert result.invalidReason == "Unsupported scheme: upto"

    @pytest.mark.asyncio
    async def test_invalid_xdr(self, facilitator, requirements, valid_payment):
        payment = valid_payment()
        payload = payment.model_copy(update={
            "payload": payment.payload.model_copy(update={"signedTxXdr": "bm90IGEgdHJhbnNhY3Rpb24="}),
        })
        result = await facilitator.verify(payload, requirements)
        assert not result.isValid
        assert result.invalidReason.startswith("Invalid transaction XDR")

    @pytest.mark.asyncio
    async def test_source_mismatch(self, facilitator, requirements, valid_payment):
        payment = valid_payment()
        payload = payment.model_copy(update={
            "payload": payment.payload.model_copy(update={"sourceAccount": Keypair.random().public_key}),
        })
        result = await facilitator.verify(payload, requirements)
        assert result.invalidReason == "Transaction source account mismatch"

    @pytest.mark.asyncio
    async def test_unsigned(self, facilitator, requirements, payer_keypair, merchant_keypair):
        payload = crypto_payload(payer_keypair, merchant_keypair.public_key, sign=False)
        result = await facilitator.verify(payload, requirements)
        assert result.invalidReason == "Transaction has no signatures"

    @pytest.mark.asyncio
    async def test_signed_by_someone_else(self, facilitator, requirements, payer_keypair, merchant_keypair):
        payload = crypto_payload(payer_keypair, merchant_keypair.public_key, signer=Keypair.random())
        result = await facilitator.verify(payload, requirements)
        assert result.invalidReason == "Invalid transaction signature"

    @pytest.mark.asyncio
    async def test_signed_for_other_network(self, facilitator, requirements, payer_keypair, merchant_keypair):
        payload = crypto_payload(
            payer_keypair,
            merchant_keypair.public_key,
            passphrase="Public Global Stellar Network ; September 2015",
        )
        result = await facilitator.verify(payload, requirements)
        assert result.invalidReason == "Invalid transaction signature"

    @pytest.mark.asyncio
    async def test_no_payment_operation(self, facilitator, requirements, valid_payment, payer_keypair):
        tx = (
            TransactionBuilder(
                source_account=Account(payer_keypair.public_key, 1234),
                network_passphrase=TESTNET_PASSPHRASE,
                base_fee=100,
            )
            .append_bump_sequence_op(bump_to=5000)
            .set_timeout(300)
            .build()
        )
        tx.sign(payer_keypair)
        payment = valid_payment()
        payload = payment.model_copy(update={
            "payload": payment.payload.model_copy(update={"signedTxXdr": tx.to_xdr()}),
        })

        result = await facilitator.verify(payload, requirements)
        assert result.invalidReason == "No payment operation found in transaction"

    @pytest.mark.asyncio
    async def test_destination_mismatch(self, facilitator, requirements, payer_keypair):
        payload = crypto_payload(payer_keypair, Keypair.random().public_key)
        result = await facilitator.verify(payload, requirements)
        assert result.invalidReason == f"Payment destination mismatch. Expected {requirements.payTo}"

    @pytest.mark.asyncio
    async def test_insufficient_amount(self, facilitator, requirements, valid_payment):
        result = await facilitator.verify(valid_payment("5"), requirements)
        assert not result.isValid
        assert result.invalidReason == "Insufficient payment amount. Required 100000000, got 50000000"

    @pytest.mark.asyncio
    async def test_one_stroop_short(self, facilitator, requirements, valid_payment):
        result = await facilitator.verify(valid_payment("9.9999999"), requirements)
        assert "Insufficient payment amount" in result.invalidReason

    @pytest.mark.asyncio
    async def test_non_native_asset(self, facilitator, requirements, payer_keypair, merchant_keypair):
        usdc = Asset("USDC", Keypair.random().public_key)
        payload = crypto_payload(payer_keypair, merchant_keypair.public_key, asset=usdc)
        result = await facilitator.verify(payload, requirements)
        assert result.invalidReason == "Expected native XLM payment"

    @pytest.mark.asyncio
    async def test_credit_asset_requirement(self, facilitator, payer_keypair, merchant_keypair):
        issuer = Keypair.random().public_key
        requirements = build_payment_requirements(
            amount_usd="10",
            resource="/api/pay",
            pay_to=merchant_keypair.public_key,
            asset=f"USDC:{issuer}",
        )

        paid_native = await facilitator.verify(
            crypto_payload(payer_keypair, merchant_keypair.public_key), requirements
        )
        assert paid_native.invalidReason.startswith("Asset mismatch. Expected USDC:")

        paid_usdc = await facilitator.verify(
            crypto_payload(payer_keypair, merchant_keypair.public_key, asset=Asset("USDC", issuer)),
            requirements,
        )
        assert paid_usdc.isValid

    @pytest.mark.asyncio
    async def test_credit_asset_one_stroop_short(self, facilitator, payer_keypair, merchant_keypair):
        issuer = Keypair.random().public_key
        requirements = build_payment_requirements(
            amount_usd="10",
            resource="/api/pay",
            pay_to=merchant_keypair.public_key,
            asset=f"USDC:{issuer}",
        )
        payload = crypto_payload(
            payer_keypair, merchant_keypair.public_key, amount="9.9999999", asset=Asset("USDC", issuer)
        )

        result = await facilitator.verify(payload, requirements)
        assert not result.isValid
        assert result.invalidReason == "Insufficient payment amount. Required 100000000, got 99999999"

    def test_protocol_check_raises_mismatch(self, facilitator, payer_keypair, merchant_keypair):
        payload = crypto_payload(payer_keypair, merchant_keypair.public_key, network="stellar-mainnet")
        with pytest.raises(ProtocolMismatchError) as exc_info:
            facilitator._check_protocol(payload)
        assert exc_info.value.reason == "Wrong network. Expected stellar-testnet, got stellar-mainnet"

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, facilitator, ledger, requirements, valid_payment, payer_keypair):
        ledger.balances[payer_keypair.public_key] = 99_999_999
        result = await facilitator.verify(valid_payment(), requirements)
        assert result.invalidReason == "Insufficient balance. Has 99999999, needs 100000000"

    @pytest.mark.asyncio
    async def test_balance_lookup_failure(self, facilitator, ledger, requirements, valid_payment, payer_keypair):
        del ledger.balances[payer_keypair.public_key]
        result = await facilitator.verify(valid_payment(), requirements)
        assert result.invalidReason == "Failed to verify payer balance"


class TestSettle:

    @pytest.mark.asyncio
    async def test_settles_with_fee_bump(
        self, facilitator, ledger, requirements, valid_payment, facilitator_keypair, payer_keypair
    ):
        payment = valid_payment()
        result = await facilitator.settle(payment, requirements)

        assert result.success
        assert result.transaction == f"{1:064x}"
        assert result.network == "stellar-testnet"
        assert result.payer == payer_keypair.public_key

        submitted = TransactionBuilder.from_xdr(ledger.submitted[0], TESTNET_PASSPHRASE)
        assert isinstance(submitted, FeeBumpTransactionEnvelope)
        assert submitted.transaction.fee_source.account_id == facilitator_keypair.public_key
        assert submitted.transaction.inner_transaction_envelope.to_xdr() == payment.payload.signedTxXdr
        assert len(submitted.signatures) == 1

    @pytest.mark.asyncio
    async def test_fee_bump_rounds_inner_rate_up(
        self, facilitator, ledger, requirements, valid_payment, payer_keypair, merchant_keypair
    ):
        tx = (
            TransactionBuilder(
                source_account=Account(payer_keypair.public_key, 1234),
                network_passphrase=TESTNET_PASSPHRASE,
                base_fee=500,
            )
            .append_payment_op(destination=merchant_keypair.public_key, asset=Asset.native(), amount="10")
            .append_payment_op(destination=merchant_keypair.public_key, asset=Asset.native(), amount="10")
            .set_timeout(300)
            .build()
        )
        # 1001 stroops over two operations is a rate of 500.5
        tx.transaction.fee = 1001
        tx.sign(payer_keypair)
        payment = valid_payment()
        payload = payment.model_copy(update={
            "payload": payment.payload.model_copy(update={"signedTxXdr": tx.to_xdr()}),
        })

        result = await facilitator.settle(payload, requirements)

        assert result.success
        submitted = TransactionBuilder.from_xdr(ledger.submitted[0], TESTNET_PASSPHRASE)
        assert isinstance(submitted, FeeBumpTransactionEnvelope)
        assert submitted.transaction.base_fee == 501
        assert submitted.transaction.inner_transaction_envelope.transaction.fee == 1001

    @pytest.mark.asyncio
    async def test_settles_without_sponsorship(self, facilitator, ledger, valid_payment, merchant_keypair):
        requirements = build_payment_requirements(
            amount_usd="10",
            resource="/api/pay",
            pay_to=merchant_keypair.public_key,
            fee_sponsorship=False,
        )
        payment = valid_payment()

        result = await facilitator.settle(payment, requirements)

        assert result.success
        assert ledger.submitted == [payment.payload.signedTxXdr]

    @pytest.mark.asyncio
    async def test_submission_rejected(self, facilitator, ledger, requirements, valid_payment):
        ledger.submit_error = "Transaction rejected: ERROR"
        result = await facilitator.settle(valid_payment(), requirements)

        assert not result.success
        assert result.errorReason == "Transaction rejected: ERROR"
        assert result.transaction == ""

    @pytest.mark.asyncio
    async def test_failed_on_ledger(self, facilitator, ledger, requirements, valid_payment):
        ledger.failed_on_ledger = True
        result = await facilitator.settle(valid_payment(), requirements)
        assert not result.success
        assert "failed on ledger" in result.errorReason

    @pytest.mark.asyncio
    async def test_balance_drained_before_settle(
        self, facilitator, ledger, requirements, valid_payment, payer_keypair
    ):
        ledger.balances[payer_keypair.public_key] = 0
        result = await facilitator.settle(valid_payment(), requirements)

        assert not result.success
        assert result.errorReason.startswith("Insufficient balance")
        assert ledger.submitted == []

    @pytest.mark.asyncio
    async def test_balance_recheck_disabled(
        self, config, ledger, requirements, valid_payment, payer_keypair
    ):
        config = config.model_copy(update={"recheck_balance_before_settle": False})
        facilitator = X402Facilitator(config, ledger=ledger)
        ledger.balances[payer_keypair.public_key] = 0

        result = await facilitator.settle(valid_payment(), requirements)
        assert result.success

    @pytest.mark.asyncio
    async def test_not_configured(self, requirements, valid_payment):
        facilitator = X402Facilitator(FacilitatorConfig(_env_file=None), ledger=FakeLedger())
        result = await facilitator.settle(valid_payment(), requirements)
        assert result.errorReason == "Facilitator not configured"

    @pytest.mark.asyncio
    async def test_fiat_payload_rejected(self, facilitator, requirements):
        result = await facilitator.settle(fiat_payload(), requirements)
        assert not result.success

    @pytest.mark.asyncio
    async def test_aclose_closes_ledger(self, facilitator, ledger):
        await facilitator.aclose()
        assert ledger.closed
