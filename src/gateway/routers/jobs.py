from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from src.gateway.dependencies import FacilitatorServices, get_services, logger
from src.jobs.models import JobOutcome, PaymentStatus
from src.payments.errors import ValidationError
from src.payments.headers import decode_payment_header

router = APIRouter(prefix="/api/x402/jobs", tags=["Jobs"])


class CreateJobRequest(BaseModel):
    orderId: str = Field(min_length=1)
    amountUsd: str
    description: str = ""
    resource: Optional[str] = None
    payTo: Optional[str] = None
    requiresManualConfirmation: bool = True


class SubmitPaymentRequest(BaseModel):
    paymentHeader: str = Field(min_length=1, description="Base64 X-PAYMENT value")


class ConfirmRequest(BaseModel):
    confirmedBy: Optional[str] = None


def _outcome_response(outcome: JobOutcome, failure_code: int, success_code: int = status.HTTP_200_OK) -> JSONResponse:
    if outcome.success:
        code = success_code
    elif outcome.error == "Payment job not found":
        code = status.HTTP_404_NOT_FOUND
    else:
        code = failure_code
    return JSONResponse(status_code=code, content=outcome.model_dump(mode="json"))


@router.post("")
async def create_job(body: CreateJobRequest, services: FacilitatorServices = Depends(get_services)):
    """Create (or reuse) the payment job for an order"""
    outcome = await services.registry.create_job(
        order_id=body.orderId,
        amount_usd=body.amountUsd,
        description=body.description,
        resource=body.resource,
        requires_manual_confirmation=body.requiresManualConfirmation,
        pay_to=body.payTo,
    )
    return _outcome_response(outcome, status.HTTP_400_BAD_REQUEST, status.HTTP_201_CREATED)


@router.get("")
async def list_jobs(
    status_filter: Optional[PaymentStatus] = Query(default=None, alias="status"),
    services: FacilitatorServices = Depends(get_services),
):
    jobs = services.registry.list_jobs(status_filter)
    return {
        "jobs": [job.to_dict() for job in jobs],
        "count": len(jobs),
    }


@router.post("/sweep")
async def sweep(services: FacilitatorServices = Depends(get_services)):
    """Drop failed/expired jobs past the retention window"""
    swept = await services.registry.sweep_expired()
    return {"swept": swept}


@router.get("/order/{order_id}")
async def get_job_by_order(order_id: str, services: FacilitatorServices = Depends(get_services)):
    job = services.registry.get_job_by_order_id(order_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No payment job for order {order_id}",
        )
    return job.to_dict()


@router.get("/{job_id}")
async def get_job(job_id: str, services: FacilitatorServices = Depends(get_services)):
    job = services.registry.get_job(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Payment job {job_id} not found",
        )
    return job.to_dict()


@router.post("/{job_id}/submit")
async def submit_payment(
    job_id: str,
    body: SubmitPaymentRequest,
    services: FacilitatorServices = Depends(get_services),
):
    """Submit an X-PAYMENT value for a job and wait for verify/settle"""
    try:
        payload = decode_payment_header(body.paymentHeader)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.reason)
    outcome = await services.registry.submit_payload(job_id, payload)
    return _outcome_response(outcome, status.HTTP_402_PAYMENT_REQUIRED)


@router.post("/{job_id}/confirm")
async def confirm_payment(
    job_id: str,
    body: Optional[ConfirmRequest] = None,
    services: FacilitatorServices = Depends(get_services),
):
    """Operator confirmation of a settled payment"""
    confirmed_by = body.confirmedBy if body else None
    outcome = await services.registry.confirm_manually(job_id, confirmed_by)
    if not outcome.success:
        logger.warning("manual_confirmation_rejected", job_id=job_id, error=outcome.error)
    return _outcome_response(outcome, status.HTTP_409_CONFLICT)
