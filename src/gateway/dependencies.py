from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address
import structlog

from src.config import FacilitatorConfig, get_facilitator_config
from src.jobs.queue import SubmissionQueue
from src.jobs.registry import PaymentJobRegistry
from src.notifications.webhooks import WebhookNotifier
from src.payments.facilitator import X402Facilitator
from src.payments.fiat import FiatGateway

logger = structlog.get_logger()


@dataclass
class FacilitatorServices:
    """Everything a request handler needs, owned by the app lifespan"""
    config: FacilitatorConfig
    facilitator: X402Facilitator
    registry: PaymentJobRegistry
    fiat_gateway: Optional[FiatGateway] = None

    async def aclose(self):
        await self.registry.close()
        await self.facilitator.aclose()


def build_services(
    config: Optional[FacilitatorConfig] = None,
    fiat_gateway: Optional[FiatGateway] = None,
) -> FacilitatorServices:
    """Wire the facilitator, queue, notifier and registry from config"""
    config = config or get_facilitator_config()
    facilitator = X402Facilitator(config)
    notifier = WebhookNotifier(
        backend_url=config.webhook_backend_url,
        timeout=config.webhook_timeout_seconds,
        source=config.webhook_source,
    )
    registry = PaymentJobRegistry(
        facilitator=facilitator,
        config=config,
        queue=SubmissionQueue(name=config.network),
        notifier=notifier,
        fiat_gateway=fiat_gateway,
    )
    return FacilitatorServices(
        config=config,
        facilitator=facilitator,
        registry=registry,
        fiat_gateway=fiat_gateway,
    )


def get_services(request: Request) -> FacilitatorServices:
    return request.app.state.services


def get_client_key(request: Request) -> str:
    """Get client identifier for rate limiting - uses IP address"""
    return get_remote_address(request)


limiter = Limiter(key_func=get_client_key)
