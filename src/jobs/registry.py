"""
Payment Job Registry
Owns payment jobs, mediates every state transition and hands crypto
payments to the submission queue for verify-then-settle.
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union

import structlog

from src.config import FacilitatorConfig
from src.jobs.models import (
    ALLOWED_TRANSITIONS,
    EXPIRABLE_STATUSES,
    IN_FLIGHT_STATUSES,
    SUCCESS_STATUSES,
    JobOutcome,
    PaymentJob,
    PaymentStatus,
    utcnow,
)
from src.jobs.queue import SubmissionQueue
from src.jobs.scheduler import ExpirationScheduler
from src.notifications.webhooks import NotificationSink, WebhookEventType, build_event_data
from src.payments.errors import (
    ConfigurationError,
    ConflictError,
    ExpiryError,
    InvalidTransitionError,
    SettlementFailure,
    ValidationError,
    VerificationFailure,
    X402Error,
)
from src.payments.facilitator import X402Facilitator
from src.payments.fiat import FiatGateway
from src.payments.headers import decode_payment_header, parse_payment_payload
from src.payments.models import (
    CryptoPaymentPayload,
    FiatAcceptOption,
    FiatPaymentPayload,
    PaymentMethod,
    SettleResponse,
    VerifyResponse,
)
from src.payments.requirements import build_payment_requirements, usd_to_atomic

logger = structlog.get_logger()

RawPayload = Union[str, Dict[str, Any], CryptoPaymentPayload, FiatPaymentPayload]

EXPIRED_MESSAGE = "Payment window expired"


class PaymentJobRegistry:
    """
    In-memory store and state machine for payment jobs.

    Jobs are indexed by job id and by order id. The table lock guards
    inserts and deletes; a per-job lock serializes writes to a single job.
    No lock is held across ledger calls or webhook dispatch.
    """

    def __init__(
        self,
        facilitator: X402Facilitator,
        config: FacilitatorConfig,
        queue: Optional[SubmissionQueue] = None,
        scheduler: Optional[ExpirationScheduler] = None,
        notifier: Optional[NotificationSink] = None,
        fiat_gateway: Optional[FiatGateway] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.facilitator = facilitator
        self.config = config
        self.queue = queue or SubmissionQueue()
        self.scheduler = scheduler or ExpirationScheduler(clock=clock)
        self.notifier = notifier
        self.fiat_gateway = fiat_gateway
        self._clock = clock

        self._jobs: Dict[str, PaymentJob] = {}
        self._jobs_by_order: Dict[str, str] = {}
        self._table_lock = asyncio.Lock()
        self._job_locks: Dict[str, asyncio.Lock] = {}

    # ===== CREATION =====

    async def create_job(
        self,
        order_id: str,
        amount_usd: Union[str, int, float, Decimal],
        description: str = "",
        resource: Optional[str] = None,
        requires_manual_confirmation: bool = True,
        pay_to: Optional[str] = None,
    ) -> JobOutcome:
        """
        Create a payment job in ``payment_required``.

        A live job for the same order is returned unchanged instead of
        creating a duplicate.
        """
        try:
            async with self._table_lock:
                existing = self._live_job_for_order(order_id)
                if existing is not None:
                    logger.info("payment_job_reused", job_id=existing.job_id, order_id=order_id)
                    return self._outcome(existing, success=True)

                job = self._new_job(
                    order_id=order_id,
                    amount_usd=amount_usd,
                    description=description,
                    resource=resource,
                    requires_manual_confirmation=requires_manual_confirmation,
                    pay_to=pay_to,
                )
                self._jobs[job.job_id] = job
                self._jobs_by_order[order_id] = job.job_id
                self._job_locks[job.job_id] = asyncio.Lock()
        except X402Error as e:
            logger.warning("payment_job_create_failed", order_id=order_id, error=e.reason)
            return JobOutcome(success=False, order_id=order_id, error=e.reason)

        logger.info(
            "payment_job_created",
            job_id=job.job_id,
            order_id=order_id,
            amount_usd=job.amount_usd,
            amount_atomic=job.amount_atomic,
            pay_to=job.requirements.payTo,
        )

        self.scheduler.arm(job.job_id, job.expires_at, self._on_deadline)
        self._notify(WebhookEventType.PAYMENT_REQUIRED, job)
        return self._outcome(job, success=True)

    def _new_job(
        self,
        order_id: str,
        amount_usd: Union[str, int, float, Decimal],
        description: str,
        resource: Optional[str],
        requires_manual_confirmation: bool,
        pay_to: Optional[str],
    ) -> PaymentJob:
        pay_to_address = pay_to or self.config.default_pay_to
        if not pay_to_address:
            raise ConfigurationError(
                "payTo address must be provided or PAY_TO_ADDRESS must be configured"
            )
        if not order_id:
            raise ValidationError("orderId is required")

        amount_atomic = usd_to_atomic(amount_usd)
        resource_url = resource or self.config.default_resource
        timeout = self.config.payment_timeout_seconds

        requirements = build_payment_requirements(
            amount_usd=amount_usd,
            amount_atomic=amount_atomic,
            resource=resource_url,
            pay_to=pay_to_address,
            description=description,
            network=self.config.network,
            scheme=self.config.scheme,
            asset=self.config.asset,
            timeout_seconds=timeout,
            fee_sponsorship=self.config.fee_sponsorship,
        )

        now = self._clock()
        return PaymentJob(
            job_id=f"x402_{uuid.uuid4()}",
            order_id=order_id,
            amount_usd=str(Decimal(str(amount_usd))),
            amount_atomic=amount_atomic,
            resource=resource_url,
            description=description,
            requirements=requirements,
            requires_manual_confirmation=requires_manual_confirmation,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(seconds=timeout),
        )

    def _live_job_for_order(self, order_id: str) -> Optional[PaymentJob]:
        job_id = self._jobs_by_order.get(order_id)
        job = self._jobs.get(job_id) if job_id else None
        if job is not None and job.is_live:
            return job
        return None

    # ===== PAYMENT SUBMISSION =====

    async def submit_payload(self, job_id: str, raw_payload: RawPayload) -> JobOutcome:
        """
        Accept a payment proof for a job and run verify-then-settle.

        Crypto payments are serialized through the submission queue since
        settlement signs with the facilitator key. Fiat proofs are checked
        inline with the fiat gateway.
        """
        job = self._jobs.get(job_id)
        if job is None:
            return JobOutcome(success=False, job_id=job_id, error="Payment job not found")

        async with self._lock_for(job_id):
            rejection = self._accept_payload(job, raw_payload)
        if rejection is not None:
            return rejection

        if job.payment_method == PaymentMethod.CRYPTO:
            return await self.queue.enqueue(lambda: self._verify_and_settle(job_id))
        return await self._verify_and_settle(job_id)

    def _accept_payload(self, job: PaymentJob, raw_payload: RawPayload) -> Optional[JobOutcome]:
        """Validate and record a payload; returns an outcome when rejected"""
        try:
            payload = self._parse_payload(raw_payload)
        except ValidationError as e:
            logger.warning("payment_payload_invalid", job_id=job.job_id, error=e.reason)
            return self._outcome(job, success=False, error=e.reason)

        if job.status == PaymentStatus.PAYMENT_REQUIRED and self._clock() > job.expires_at:
            self._expire(job)
            return self._rejection(job, ExpiryError(EXPIRED_MESSAGE, job.job_id))

        if job.payment_method is not None and job.payment_method != payload.method:
            return self._rejection(job, ConflictError(
                f"Payment method already locked to {job.payment_method.value} for this order",
                job.job_id,
            ))

        if job.status in SUCCESS_STATUSES:
            return self._outcome(job, success=True)

        if job.is_terminal:
            reason = job.error_message or f"Payment job is {job.status.value}"
            return self._outcome(job, success=False, error=reason)

        if job.status in IN_FLIGHT_STATUSES:
            return self._rejection(job, ConflictError("Payment already in progress", job.job_id))

        job.payment_payload = payload
        job.payment_method = payload.method
        self._transition(job, PaymentStatus.PAYMENT_RECEIVED)
        self._notify(WebhookEventType.PAYMENT_RECEIVED, job)
        return None

    @staticmethod
    def _parse_payload(raw_payload: RawPayload) -> Union[CryptoPaymentPayload, FiatPaymentPayload]:
        if isinstance(raw_payload, str):
            return decode_payment_header(raw_payload)
        return parse_payment_payload(raw_payload)

    async def _verify_and_settle(self, job_id: str) -> JobOutcome:
        """Verify then settle one job; runs inside the submission queue for crypto"""
        job = self._jobs.get(job_id)
        if job is None or job.payment_payload is None:
            return JobOutcome(success=False, job_id=job_id, error="Payment job not found")
        payload = job.payment_payload

        if not await self._apply(job, PaymentStatus.VERIFYING):
            return self._discard_late(job, "verify")

        try:
            verify_result = await self._verify(job, payload)
        except Exception as e:
            logger.error("payment_verification_error", job_id=job_id, error=str(e))
            verify_result = VerifyResponse(isValid=False, invalidReason=f"Verification error: {e}")

        async with self._lock_for(job_id):
            if job.is_terminal:
                return self._discard_late(job, "verify")
            job.verify_response = verify_result
            if not verify_result.isValid:
                reason = verify_result.invalidReason or "Verification failed"
                return self._fail(job, VerificationFailure(reason, job_id))
            self._transition(job, PaymentStatus.VERIFIED)
            self.scheduler.cancel(job_id)
        self._notify(WebhookEventType.PAYMENT_VERIFIED, job)

        if not await self._apply(job, PaymentStatus.SETTLING):
            return self._discard_late(job, "settle")

        try:
            settle_result = await self._settle(job, payload)
        except Exception as e:
            logger.error("payment_settlement_error", job_id=job_id, error=str(e))
            settle_result = SettleResponse(
                success=False,
                errorReason=f"Settlement error: {e}",
                network=self.config.network,
            )

        async with self._lock_for(job_id):
            if job.is_terminal:
                return self._discard_late(job, "settle")
            job.settle_response = settle_result
            if not settle_result.success:
                reason = settle_result.errorReason or "Settlement failed"
                return self._fail(job, SettlementFailure(reason, job_id))
            self._transition(job, PaymentStatus.SETTLED)
        self._notify(WebhookEventType.PAYMENT_SETTLED, job)

        if job.requires_manual_confirmation:
            logger.info(
                "payment_awaiting_confirmation",
                job_id=job_id,
                tx_hash=settle_result.transaction,
            )
            return self._outcome(job, success=True)

        async with self._lock_for(job_id):
            self._transition(job, PaymentStatus.COMPLETED)
        self._notify(WebhookEventType.PAYMENT_CONFIRMED, job)
        return self._outcome(job, success=True)

    async def _verify(
        self,
        job: PaymentJob,
        payload: Union[CryptoPaymentPayload, FiatPaymentPayload],
    ) -> VerifyResponse:
        if isinstance(payload, CryptoPaymentPayload):
            return await self.facilitator.verify(payload, job.requirements)
        if isinstance(payload, FiatPaymentPayload):
            return await self._verify_fiat(job, payload)
        raise TypeError(f"Unsupported payment payload: {type(payload).__name__}")

    async def _verify_fiat(self, job: PaymentJob, payload: FiatPaymentPayload) -> VerifyResponse:
        if self.fiat_gateway is None:
            return VerifyResponse(isValid=False, invalidReason="Fiat verification unavailable")
        details = payload.payload.glosa or job.description or job.order_id
        verified = await self.fiat_gateway.verify(job.order_id, details)
        if not verified:
            return VerifyResponse(isValid=False, invalidReason="Fiat payment could not be verified")
        return VerifyResponse(isValid=True)

    async def _settle(
        self,
        job: PaymentJob,
        payload: Union[CryptoPaymentPayload, FiatPaymentPayload],
    ) -> SettleResponse:
        if isinstance(payload, CryptoPaymentPayload):
            return await self.facilitator.settle(payload, job.requirements)
        if isinstance(payload, FiatPaymentPayload):
            # The bank already moved the funds; the reference is the settlement
            proof = payload.payload
            return SettleResponse(
                success=True,
                transaction=proof.transactionId or proof.time or "",
                network=f"fiat-{payload.currency.lower()}",
            )
        raise TypeError(f"Unsupported payment payload: {type(payload).__name__}")

    # ===== MANUAL CONFIRMATION =====

    async def confirm_manually(self, job_id: str, confirmed_by: Optional[str] = None) -> JobOutcome:
        """Complete a settled job after an operator has checked it"""
        job = self._jobs.get(job_id)
        if job is None:
            return JobOutcome(success=False, job_id=job_id, error="Payment job not found")

        async with self._lock_for(job_id):
            if job.status != PaymentStatus.SETTLED:
                return self._rejection(job, ConflictError(
                    f"Cannot confirm payment in status: {job.status.value}. Expected: settled",
                    job_id,
                ))
            job.manually_confirmed = True
            job.confirmed_at = self._clock()
            job.confirmed_by = confirmed_by
            self._transition(job, PaymentStatus.COMPLETED)

        logger.info("payment_manually_confirmed", job_id=job_id, confirmed_by=confirmed_by or "unknown")
        self._notify(WebhookEventType.PAYMENT_CONFIRMED, job)
        return self._outcome(job, success=True)

    # ===== EXPIRY & MAINTENANCE =====

    async def _on_deadline(self, job_id: str) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            return
        async with self._lock_for(job_id):
            if job.status not in EXPIRABLE_STATUSES:
                return
            self._expire(job)

    def _expire(self, job: PaymentJob) -> None:
        self._transition(job, PaymentStatus.EXPIRED, EXPIRED_MESSAGE)
        self.scheduler.cancel(job.job_id)
        logger.info("payment_job_expired", job_id=job.job_id, order_id=job.order_id)
        self._notify(WebhookEventType.PAYMENT_EXPIRED, job)

    async def sweep_expired(self) -> int:
        """Delete failed/expired jobs whose deadline is older than the retention window"""
        cutoff = self._clock() - timedelta(seconds=self.config.job_retention_seconds)
        async with self._table_lock:
            stale = [
                job for job in self._jobs.values()
                if job.status in (PaymentStatus.EXPIRED, PaymentStatus.FAILED)
                and job.expires_at < cutoff
            ]
            for job in stale:
                del self._jobs[job.job_id]
                self._job_locks.pop(job.job_id, None)
                self.scheduler.cancel(job.job_id)
                if self._jobs_by_order.get(job.order_id) == job.job_id:
                    del self._jobs_by_order[job.order_id]

        if stale:
            logger.info("payment_jobs_swept", count=len(stale))
        return len(stale)

    def record_fiat_quote(self, job_id: str, option: FiatAcceptOption) -> None:
        """Remember the last fiat option offered for a job"""
        job = self._jobs.get(job_id)
        if job is not None:
            job.fiat_amount = option.amountRequired
            job.fiat_qr_link = option.ipfsQrLink

    # ===== READ ACCESSORS =====

    def get_job(self, job_id: str) -> Optional[PaymentJob]:
        return self._jobs.get(job_id)

    def get_job_by_order_id(self, order_id: str) -> Optional[PaymentJob]:
        job_id = self._jobs_by_order.get(order_id)
        return self._jobs.get(job_id) if job_id else None

    def list_jobs(self, status: Optional[PaymentStatus] = None) -> List[PaymentJob]:
        jobs = list(self._jobs.values())
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        return jobs

    def list_jobs_by_status(self, status: PaymentStatus) -> List[PaymentJob]:
        return self.list_jobs(status)

    def count_by_status(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in PaymentStatus}
        for job in self._jobs.values():
            counts[job.status.value] += 1
        return counts

    # ===== INTERNALS =====

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        lock = self._job_locks.get(job_id)
        if lock is None:
            lock = self._job_locks[job_id] = asyncio.Lock()
        return lock

    async def _apply(self, job: PaymentJob, status: PaymentStatus, error: Optional[str] = None) -> bool:
        async with self._lock_for(job.job_id):
            return self._transition(job, status, error)

    def _transition(self, job: PaymentJob, new_status: PaymentStatus, error: Optional[str] = None) -> bool:
        """
        Apply a state transition.

        Returns False (and changes nothing) when the job is already terminal.
        Raises InvalidTransitionError for transitions the table forbids.
        """
        if job.is_terminal:
            logger.warning(
                "transition_on_terminal_job_ignored",
                job_id=job.job_id,
                status=job.status.value,
                requested=new_status.value,
            )
            return False
        if new_status not in ALLOWED_TRANSITIONS[job.status]:
            raise InvalidTransitionError(
                f"Illegal transition {job.status.value} -> {new_status.value}",
                job.job_id,
            )

        old_status = job.status
        job.status = new_status
        job.updated_at = self._clock()
        if error:
            job.error_message = error
        logger.info(
            "payment_job_transition",
            job_id=job.job_id,
            from_state=old_status.value,
            to_state=new_status.value,
        )
        return True

    def _fail(self, job: PaymentJob, error: X402Error) -> JobOutcome:
        self._transition(job, PaymentStatus.FAILED, error.reason)
        self.scheduler.cancel(job.job_id)
        logger.warning(
            "payment_job_failed",
            job_id=job.job_id,
            error_type=type(error).__name__,
            reason=error.reason,
        )
        self._notify(WebhookEventType.PAYMENT_FAILED, job)
        return self._outcome(job, success=False, error=error.reason)

    def _discard_late(self, job: PaymentJob, stage: str) -> JobOutcome:
        logger.warning("late_result_discarded", job_id=job.job_id, status=job.status.value, stage=stage)
        return self._outcome(
            job,
            success=False,
            error=job.error_message or f"Payment job is {job.status.value}",
        )

    def _rejection(self, job: PaymentJob, error: X402Error) -> JobOutcome:
        logger.info(
            "payment_submission_rejected",
            job_id=job.job_id,
            error_type=type(error).__name__,
            reason=error.reason,
        )
        return self._outcome(job, success=False, error=error.reason)

    def _outcome(self, job: PaymentJob, success: bool, error: Optional[str] = None) -> JobOutcome:
        return JobOutcome(
            success=success,
            job_id=job.job_id,
            order_id=job.order_id,
            status=job.status,
            method=job.payment_method,
            requirements=job.requirements,
            tx_hash=job.tx_hash,
            block_explorer_url=self._explorer_url(job),
            payer=job.payer,
            requires_manual_confirmation=job.requires_manual_confirmation,
            error=error,
        )

    def _explorer_url(self, job: PaymentJob) -> Optional[str]:
        if job.tx_hash and job.payment_method == PaymentMethod.CRYPTO:
            return self.facilitator.block_explorer_url(job.tx_hash)
        return None

    def _notify(self, event: WebhookEventType, job: PaymentJob) -> None:
        if self.notifier is None:
            return
        explorer = self._explorer_url(job)
        try:
            self.notifier.notify(event, job, build_event_data(event, job, explorer))
        except Exception as e:
            logger.error("notification_schedule_failed", event_type=event.value, job_id=job.job_id, error=str(e))

    async def close(self) -> None:
        """Stop timers and the queue worker, then flush pending notifications"""
        await self.scheduler.close()
        await self.queue.close()
        if self.notifier is not None:
            await self.notifier.aclose()
        logger.info("payment_registry_closed", jobs=len(self._jobs))
