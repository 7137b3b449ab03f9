"""
Pytest configuration and shared fixtures
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

import pytest
from stellar_sdk import Account, Asset, Keypair, TransactionBuilder

from src.config import FacilitatorConfig
from src.jobs.queue import SubmissionQueue
from src.jobs.registry import PaymentJobRegistry
from src.jobs.scheduler import ExpirationScheduler
from src.payments.errors import LedgerError
from src.payments.facilitator import X402Facilitator
from src.payments.headers import encode_payment_header
from src.payments.models import (
    CryptoPaymentPayload,
    ExactStellarPayload,
    FiatAcceptOption,
    FiatPaymentPayload,
    FiatProof,
)

TESTNET_PASSPHRASE = "Test SDF Network ; September 2015"


class FakeLedger:
    """In-memory stand-in for HorizonClient"""

    def __init__(self, balances: Optional[dict] = None):
        self.balances = dict(balances or {})
        self.submitted: List[str] = []
        self.submit_error: Optional[str] = None
        self.failed_on_ledger = False
        self.closed = False

    async def balance_of(self, account_id: str, asset: str = "native") -> int:
        if account_id not in self.balances:
            raise LedgerError(f"Account {account_id} not found", status_code=404)
        return self.balances[account_id]

    async def submit_transaction(self, envelope_xdr: str) -> str:
        if self.submit_error:
            raise LedgerError(self.submit_error, status_code=400)
        self.submitted.append(envelope_xdr)
        return f"{len(self.submitted):064x}"

    async def wait_for_transaction(self, tx_hash: str) -> dict:
        if self.failed_on_ledger:
            raise LedgerError(f"Transaction {tx_hash} failed on ledger")
        return {"hash": tx_hash, "successful": True, "ledger": 1234}

    async def aclose(self):
        self.closed = True


class RecordingNotifier:
    """Notification sink that keeps every event in order"""

    def __init__(self):
        self.events = []

    def notify(self, event, job, data):
        self.events.append((event, job.job_id, job.status, data))

    async def aclose(self):
        pass

    @property
    def types(self):
        return [event.value for event, *_ in self.events]


class StubFiatGateway:
    def __init__(self, verified: bool = True):
        self.verified = verified
        self.verify_calls = []
        self.quotes = []

    async def quote(self, order_id, amount, description):
        self.quotes.append((order_id, amount))
        return FiatAcceptOption(
            currency="BOB",
            symbol="Bs.",
            amountRequired=str(amount),
            ipfsQrLink=f"ipfs://qr-{order_id}",
        )

    async def verify(self, order_id, details):
        self.verify_calls.append((order_id, details))
        return self.verified


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


def build_signed_xdr(
    payer: Keypair,
    destination: str,
    amount: str = "10",
    asset: Optional[Asset] = None,
    signer: Optional[Keypair] = None,
    passphrase: str = TESTNET_PASSPHRASE,
    sign: bool = True,
) -> str:
    """Build a payment transaction offline; amount is in XLM units"""
    source = Account(payer.public_key, 1234)
    tx = (
        TransactionBuilder(source_account=source, network_passphrase=passphrase, base_fee=100)
        .append_payment_op(destination=destination, asset=asset or Asset.native(), amount=amount)
        .set_timeout(300)
        .build()
    )
    if sign:
        tx.sign(signer or payer)
    return tx.to_xdr()


def crypto_payload(
    payer: Keypair,
    destination: str,
    amount: str = "10",
    network: str = "stellar-testnet",
    x402_version: int = 1,
    **kwargs,
) -> CryptoPaymentPayload:
    xdr = build_signed_xdr(payer, destination, amount=amount, **kwargs)
    atomic = str(int(Decimal(amount) * 10_000_000))
    return CryptoPaymentPayload(
        x402Version=x402_version,
        scheme="exact",
        network=network,
        payload=ExactStellarPayload(
            signedTxXdr=xdr,
            sourceAccount=payer.public_key,
            amount=atomic,
            destination=destination,
        ),
    )


def fiat_payload(glosa: str = "ORDER-1 transfer", transaction_id: str = "BNB-778812") -> FiatPaymentPayload:
    return FiatPaymentPayload(
        type="fiat",
        x402Version=1,
        currency="BOB",
        payload=FiatProof(glosa=glosa, transactionId=transaction_id),
    )


@pytest.fixture
def facilitator_keypair() -> Keypair:
    return Keypair.random()


@pytest.fixture
def payer_keypair() -> Keypair:
    return Keypair.random()


@pytest.fixture
def merchant_keypair() -> Keypair:
    return Keypair.random()


@pytest.fixture
def config(facilitator_keypair, merchant_keypair) -> FacilitatorConfig:
    """Facilitator config isolated from the local .env"""
    return FacilitatorConfig(
        _env_file=None,
        facilitator_private_key=facilitator_keypair.secret,
        pay_to_address=merchant_keypair.public_key,
        webhook_backend_url="",
    )


@pytest.fixture
def ledger(payer_keypair) -> FakeLedger:
    return FakeLedger(balances={payer_keypair.public_key: 1_000_000_000})


@pytest.fixture
def facilitator(config, ledger) -> X402Facilitator:
    return X402Facilitator(config, ledger=ledger)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def registry(facilitator, config, notifier, clock):
    registry = PaymentJobRegistry(
        facilitator=facilitator,
        config=config,
        queue=SubmissionQueue(name="test"),
        scheduler=ExpirationScheduler(clock=clock),
        notifier=notifier,
        clock=clock,
    )
    yield registry
    await registry.close()


@pytest.fixture
def valid_payment(payer_keypair, merchant_keypair):
    """Factory for a correctly signed payload paying the merchant"""
    def make(amount: str = "10") -> CryptoPaymentPayload:
        return crypto_payload(payer_keypair, merchant_keypair.public_key, amount=amount)
    return make


@pytest.fixture
def payment_header(valid_payment):
    def make(amount: str = "10") -> str:
        return encode_payment_header(valid_payment(amount))
    return make
