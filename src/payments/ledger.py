"""
Async Horizon client for balance lookups and transaction submission
"""

import asyncio
from decimal import Decimal
from typing import List, Optional

import httpx
import structlog

from src.payments.errors import LedgerError, LedgerTimeoutError
from src.payments.requirements import NATIVE_ASSET, ledger_amount_to_atomic

logger = structlog.get_logger()

# Submission statuses returned by POST /transactions_async
_ACCEPTED_SUBMIT_STATUSES = {"PENDING", "DUPLICATE"}


def asset_matches_balance(balance: dict, asset: str) -> bool:
    """Check whether a Horizon balance entry holds the given asset"""
    if asset == NATIVE_ASSET:
        return balance.get("asset_type") == "native"
    if balance.get("asset_type") == "native":
        return False
    code, _, issuer = asset.partition(":")
    if balance.get("asset_code") != code:
        return False
    return not issuer or balance.get("asset_issuer") == issuer


class HorizonClient:
    """
    Minimal async Horizon REST client.

    Submission uses the async endpoint and then polls the transaction
    resource at a fixed interval up to a hard ceiling.
    """

    def __init__(
        self,
        horizon_url: str = "https://horizon-testnet.stellar.org",
        poll_interval: float = 1.0,
        max_poll_attempts: int = 30,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.horizon_url = horizon_url.rstrip("/")
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def load_balances(self, account_id: str) -> List[dict]:
        """Fetch the balances array of an account"""
        try:
            response = await self.client.get(f"{self.horizon_url}/accounts/{account_id}")
        except httpx.HTTPError as e:
            raise LedgerError(f"Horizon request failed: {e}")

        if response.status_code == 404:
            raise LedgerError(f"Account {account_id} not found", status_code=404)
        if response.status_code >= 400:
            raise LedgerError(
                f"Horizon returned {response.status_code} for account {account_id}",
                status_code=response.status_code,
            )
        return response.json().get("balances", [])

    async def balance_of(self, account_id: str, asset: str = NATIVE_ASSET) -> int:
        """Balance of an asset in stroops (0 when the account has no trustline)"""
        balances = await self.load_balances(account_id)
        for balance in balances:
            if asset_matches_balance(balance, asset):
                return ledger_amount_to_atomic(Decimal(balance.get("balance", "0")))
        return 0

    async def submit_transaction(self, envelope_xdr: str) -> str:
        """Submit a signed envelope and return its hash once accepted for processing"""
        try:
            response = await self.client.post(
                f"{self.horizon_url}/transactions_async",
                data={"tx": envelope_xdr},
            )
        except httpx.HTTPError as e:
            raise LedgerError(f"Transaction submission failed: {e}")

        try:
            body = response.json()
        except ValueError:
            raise LedgerError(
                f"Horizon returned {response.status_code} with a non-JSON body",
                status_code=response.status_code,
            )

        tx_status = body.get("tx_status")
        tx_hash = body.get("hash")
        if tx_status not in _ACCEPTED_SUBMIT_STATUSES or not tx_hash:
            logger.warning(
                "horizon_submission_rejected",
                status_code=response.status_code,
                tx_status=tx_status,
                error_result_xdr=body.get("error_result_xdr"),
            )
            raise LedgerError(
                f"Transaction rejected: {tx_status or body.get('title', 'unknown error')}",
                status_code=response.status_code,
                extras=body,
            )

        logger.info("horizon_transaction_submitted", tx_hash=tx_hash, tx_status=tx_status)
        return tx_hash

    async def wait_for_transaction(self, tx_hash: str) -> dict:
        """
        Poll until the transaction lands in a ledger.

        Raises:
            LedgerError: The transaction was included but failed
            LedgerTimeoutError: The polling ceiling was reached
        """
        for attempt in range(1, self.max_poll_attempts + 1):
            try:
                response = await self.client.get(f"{self.horizon_url}/transactions/{tx_hash}")
            except httpx.HTTPError as e:
                logger.warning("horizon_poll_error", tx_hash=tx_hash, attempt=attempt, error=str(e))
                response = None

            if response is not None and response.status_code == 200:
                record = response.json()
                if not record.get("successful", False):
                    raise LedgerError(
                        f"Transaction {tx_hash} failed on ledger",
                        extras=record,
                    )
                logger.info(
                    "horizon_transaction_confirmed",
                    tx_hash=tx_hash,
                    ledger=record.get("ledger"),
                    attempts=attempt,
                )
                return record

            if response is not None and response.status_code not in (404, 429, 503):
                raise LedgerError(
                    f"Horizon returned {response.status_code} while polling {tx_hash}",
                    status_code=response.status_code,
                )

            await asyncio.sleep(self.poll_interval)

        raise LedgerTimeoutError(
            f"Transaction {tx_hash} not confirmed after {self.max_poll_attempts} attempts"
        )

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()
