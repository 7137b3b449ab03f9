"""
Webhook notifications for payment job transitions.

Dispatch is fire-and-forget: each event is posted from a background task
and delivery failures are logged, never propagated to the job.
"""

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol, Set

import httpx
import structlog

if TYPE_CHECKING:
    from src.jobs.models import PaymentJob

logger = structlog.get_logger()


class WebhookEventType(str, Enum):
    PAYMENT_REQUIRED = "X402_PAYMENT_REQUIRED"
    PAYMENT_RECEIVED = "X402_PAYMENT_RECEIVED"
    PAYMENT_VERIFIED = "X402_PAYMENT_VERIFIED"
    PAYMENT_SETTLED = "X402_PAYMENT_SETTLED"
    PAYMENT_CONFIRMED = "X402_PAYMENT_CONFIRMED"
    PAYMENT_FAILED = "X402_PAYMENT_FAILED"
    PAYMENT_EXPIRED = "X402_PAYMENT_EXPIRED"


class NotificationSink(Protocol):
    """Receives one event per transition of interest"""

    def notify(self, event: WebhookEventType, job: "PaymentJob", data: Dict[str, Any]) -> None:
        ...

    async def aclose(self) -> None:
        ...


def _dump(model) -> Optional[dict]:
    return model.model_dump(mode="json") if model is not None else None


def build_event_data(
    event: WebhookEventType,
    job: "PaymentJob",
    block_explorer_url: Optional[str] = None,
) -> Dict[str, Any]:
    """Transition-specific fields attached to a webhook"""
    tx_hash = job.tx_hash

    if event == WebhookEventType.PAYMENT_REQUIRED:
        return {
            "paymentRequirements": _dump(job.requirements),
            "amountUsd": job.amount_usd,
        }
    if event == WebhookEventType.PAYMENT_RECEIVED:
        payload = job.payment_payload
        payer = getattr(payload.payload, "sourceAccount", None) if payload else None
        return {
            "payer": payer,
            "method": job.payment_method.value if job.payment_method else None,
        }
    if event == WebhookEventType.PAYMENT_VERIFIED:
        return {
            "verifyResponse": _dump(job.verify_response),
            "payer": job.payer,
        }
    if event == WebhookEventType.PAYMENT_SETTLED:
        return {
            "settleResponse": _dump(job.settle_response),
            "txHash": tx_hash,
            "blockExplorerUrl": block_explorer_url,
            "payer": job.payer,
            "amountUsd": job.amount_usd,
        }
    if event == WebhookEventType.PAYMENT_CONFIRMED:
        return {
            "txHash": tx_hash,
            "blockExplorerUrl": block_explorer_url,
            "payer": job.payer,
            "amountUsd": job.amount_usd,
            "confirmedAt": job.confirmed_at.isoformat() if job.confirmed_at else None,
            "confirmedBy": job.confirmed_by,
        }
    if event == WebhookEventType.PAYMENT_FAILED:
        return {
            "error": job.error_message,
            "verifyResponse": _dump(job.verify_response),
            "settleResponse": _dump(job.settle_response),
        }
    if event == WebhookEventType.PAYMENT_EXPIRED:
        return {
            "amountUsd": job.amount_usd,
            "expiresAt": job.expires_at.isoformat(),
        }
    raise ValueError(f"Unknown webhook event: {event}")


class WebhookNotifier:
    """
    Posts job events to ``<backend_url>/webhook/x402/result``.

    When no backend URL is configured events are logged and skipped.
    """

    def __init__(
        self,
        backend_url: str = "",
        timeout: float = 10.0,
        source: str = "x402-facilitator",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.backend_url = backend_url.rstrip("/")
        self.source = source
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self._tasks: Set[asyncio.Task] = set()

    @property
    def url(self) -> str:
        return f"{self.backend_url}/webhook/x402/result"

    def build_payload(self, event: WebhookEventType, job: "PaymentJob", data: Dict[str, Any]) -> dict:
        return {
            "type": event.value,
            "orderId": job.order_id,
            "jobId": job.job_id,
            "data": {
                "status": job.status.value,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                **data,
            },
        }

    def notify(self, event: WebhookEventType, job: "PaymentJob", data: Dict[str, Any]) -> None:
        """Schedule delivery without waiting for it"""
        # Snapshot now; the job keeps moving while the request is in flight
        payload = self.build_payload(event, job, data)
        task = asyncio.create_task(self.dispatch(event, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def dispatch(self, event: WebhookEventType, payload: dict) -> bool:
        """POST one event; returns whether it was delivered"""
        job_id = payload.get("jobId")
        if not self.backend_url:
            logger.warning("webhook_backend_not_configured", event_type=event.value, job_id=job_id)
            return False

        try:
            response = await self.client.post(
                self.url,
                json=payload,
                headers={
                    "X-Webhook-Source": self.source,
                    "X-Webhook-Event": event.value,
                },
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("webhook_delivery_failed", event_type=event.value, job_id=job_id, error=str(e))
            return False

        logger.debug("webhook_delivered", event_type=event.value, job_id=job_id)
        return True

    async def aclose(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._owns_client:
            await self.client.aclose()
