"""
Resource endpoint speaking the x402 flow: 402 with payment options when no
proof is attached, verify-then-settle when one is.
"""

from decimal import Decimal, InvalidOperation
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse

from src.gateway.dependencies import FacilitatorServices, get_services, limiter, logger
from src.jobs.models import SUCCESS_STATUSES, JobOutcome, PaymentJob
from src.payments.errors import ValidationError
from src.payments.headers import decode_payment_header, encode_settlement_header
from src.payments.models import (
    AcceptOption,
    CryptoAcceptOption,
    FiatPaymentPayload,
    PaymentMethod,
    PaymentRequiredResponse,
    SettlementResponse,
)

router = APIRouter()

PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"


async def build_accepts(
    services: FacilitatorServices,
    job: PaymentJob,
    fiat_amount: Optional[Decimal] = None,
) -> List[AcceptOption]:
    """Accept options for a job, honoring its method lock"""
    accepts: List[AcceptOption] = []

    if job.payment_method != PaymentMethod.FIAT:
        req = job.requirements
        accepts.append(CryptoAcceptOption(
            scheme=req.scheme,
            network=req.network,
            amountRequired=req.maxAmountRequired,
            resource=req.resource,
            payTo=req.payTo,
            asset=req.asset,
            maxTimeoutSeconds=req.maxTimeoutSeconds,
        ))

    gateway = services.fiat_gateway
    if job.payment_method != PaymentMethod.CRYPTO and gateway is not None:
        amount = fiat_amount if fiat_amount is not None else Decimal(job.amount_usd)
        try:
            option = await gateway.quote(job.order_id, amount, job.description)
        except Exception as e:
            logger.error("fiat_quote_failed", job_id=job.job_id, order_id=job.order_id, error=str(e))
            option = None
        if option is not None:
            services.registry.record_fiat_quote(job.job_id, option)
            accepts.append(option)

    return accepts


async def payment_required(
    services: FacilitatorServices,
    job: PaymentJob,
    error: str,
    fiat_amount: Optional[Decimal] = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    body = PaymentRequiredResponse(
        x402Version=services.config.x402_version,
        resource=job.resource,
        accepts=await build_accepts(services, job, fiat_amount),
        error=error,
        jobId=job.job_id,
    )
    return JSONResponse(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        content=body.model_dump(mode="json"),
        headers=headers,
    )


def settlement_for(job: PaymentJob, outcome: JobOutcome) -> SettlementResponse:
    settle = job.settle_response
    currency = None
    if isinstance(job.payment_payload, FiatPaymentPayload):
        currency = job.payment_payload.currency
    return SettlementResponse(
        success=outcome.success,
        type=job.payment_method or PaymentMethod.CRYPTO,
        transaction=outcome.tx_hash,
        network=settle.network if settle else job.requirements.network,
        payer=outcome.payer,
        currency=currency,
        errorReason=None if outcome.success else outcome.error,
    )


def _parse_decimal(value: Optional[str], field: str) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        parsed = Decimal(value)
    except InvalidOperation:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{field} must be a number")
    if not parsed.is_finite() or parsed <= 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{field} must be positive")
    return parsed


@router.get("/api/pay", tags=["Payments"])
@limiter.limit("30/minute")
async def pay(
    request: Request,
    orderId: str,
    amountUsd: str,
    description: str = "",
    resource: Optional[str] = None,
    payTo: Optional[str] = None,
    requiresManualConfirmation: bool = True,
    fiatAmount: Optional[str] = None,
    x_payment: Optional[str] = Header(default=None, alias=PAYMENT_HEADER),
    services: FacilitatorServices = Depends(get_services),
):
    """
    x402 resource endpoint.

    Without an X-PAYMENT header returns 402 with the accepted options.
    With one, runs verify-then-settle and returns 200 with the settlement
    in X-PAYMENT-RESPONSE, or 402 with refreshed options on failure.
    """
    fiat_amount = _parse_decimal(fiatAmount, "fiatAmount")
    _parse_decimal(amountUsd, "amountUsd")

    if not payTo and not services.config.default_pay_to:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Payee not configured",
        )

    registry = services.registry
    created = await registry.create_job(
        order_id=orderId,
        amount_usd=amountUsd,
        description=description,
        resource=resource,
        requires_manual_confirmation=requiresManualConfirmation,
        pay_to=payTo,
    )
    if not created.success:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=created.error)

    job = registry.get_job(created.job_id)

    if not x_payment:
        return await payment_required(services, job, "Payment required", fiat_amount)

    try:
        payload = decode_payment_header(x_payment)
    except ValidationError as e:
        logger.warning("payment_header_invalid", order_id=orderId, error=e.reason)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.reason)

    outcome = await registry.submit_payload(job.job_id, payload)
    settlement = settlement_for(job, outcome)
    headers = {PAYMENT_RESPONSE_HEADER: encode_settlement_header(settlement)}

    if outcome.success and job.status in SUCCESS_STATUSES:
        logger.info(
            "payment_accepted",
            job_id=job.job_id,
            order_id=orderId,
            method=settlement.type.value,
            transaction=settlement.transaction,
        )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content=settlement.model_dump(mode="json"),
            headers=headers,
        )

    # A failed job is absorbing; the next attempt gets a fresh job for the order
    retry = registry.get_job(created.job_id)
    if retry is not None and retry.is_terminal:
        refreshed = await registry.create_job(
            order_id=orderId,
            amount_usd=amountUsd,
            description=description,
            resource=resource,
            requires_manual_confirmation=requiresManualConfirmation,
            pay_to=payTo,
        )
        if refreshed.success:
            retry = registry.get_job(refreshed.job_id)

    return await payment_required(
        services,
        retry or job,
        outcome.error or "Payment failed",
        fiat_amount,
        headers=headers,
    )
