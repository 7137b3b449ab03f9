"""
x402 Facilitator Server
FastAPI app exposing the 402 payment flow and the job admin API
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
import structlog

from src.config import configure_logging, get_facilitator_config
from src.gateway.dependencies import FacilitatorServices, build_services, limiter
from src.gateway.routers import jobs, pay
from src.jobs.tasks import run_maintenance_tasks

logger = structlog.get_logger()

SERVICE_NAME = "x402 Facilitator"
SERVICE_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the FastAPI app"""
    services: FacilitatorServices = app.state.services
    config = services.config
    logger.info(
        "facilitator_starting",
        host=config.host,
        port=config.port,
        network=config.network,
        facilitator_ready=services.facilitator.is_ready(),
    )

    maintenance = asyncio.create_task(
        run_maintenance_tasks(services.registry, config.sweep_interval_seconds)
    )
    yield

    logger.info("facilitator_shutting_down")
    maintenance.cancel()
    try:
        await maintenance
    except asyncio.CancelledError:
        pass
    await services.aclose()


def create_app(services: Optional[FacilitatorServices] = None) -> FastAPI:
    """Build the app; tests pass prebuilt services with fakes wired in"""
    services = services or build_services()
    config = services.config

    app = FastAPI(
        title=SERVICE_NAME,
        description="x402 payment facilitator for Stellar with fiat fallback",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-PAYMENT-RESPONSE"],
    )

    @app.get("/")
    async def root():
        """Root endpoint with basic info"""
        return {
            "name": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "status": "operational",
            "network": config.network,
            "endpoints": {
                "pay": "/api/pay",
                "supported": "/api/supported",
                "jobs": "/api/x402/jobs",
                "health": "/health",
            },
        }

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint"""
        svc: FacilitatorServices = request.app.state.services
        return {
            "status": "healthy" if svc.facilitator.is_ready() else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "network": svc.config.network,
            "facilitator_address": svc.facilitator.facilitator_address,
            "fiat_enabled": svc.fiat_gateway is not None,
            "queue_depth": svc.registry.queue.depth,
            "jobs": svc.registry.count_by_status(),
        }

    @app.get("/api/supported")
    async def supported(request: Request):
        """Scheme/network pairs this facilitator settles"""
        return request.app.state.services.facilitator.get_supported()

    app.include_router(pay.router)
    app.include_router(jobs.router)
    return app


def main():
    import uvicorn

    config = get_facilitator_config()
    configure_logging(config)
    uvicorn.run(
        create_app(build_services(config)),
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
