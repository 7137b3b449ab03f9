"""
Payment job lifecycle: registry, sequential submission queue and
expiration timers.
"""

from src.jobs.models import JobOutcome, PaymentJob, PaymentStatus
from src.jobs.queue import SubmissionQueue
from src.jobs.registry import PaymentJobRegistry
from src.jobs.scheduler import ExpirationScheduler

__all__ = [
    "JobOutcome",
    "PaymentJob",
    "PaymentStatus",
    "SubmissionQueue",
    "PaymentJobRegistry",
    "ExpirationScheduler",
]
