"""
Outbound action queue — scanning, retry policy and scheduling.

Producers enqueue actions through ActionQueue; a TickScheduler fires
QueueScanner.tick on a fixed interval, single-flight. Failures are
classified once (classifier) and retried with exponential backoff
(backoff) or dead-lettered.
"""
from job_queue.backoff import delay_for, delay_minutes
from job_queue.classifier import Classification, classify
from job_queue.producer import ActionQueue, build_idempotency_key, default_seed
from job_queue.rate_limit import RateLimitSignal
from job_queue.scanner import MAX_RETRIES, QueueScanner
from job_queue.scheduler import SingleFlight, TickScheduler

__all__ = [
    "delay_for", "delay_minutes",
    "Classification", "classify",
    "ActionQueue", "build_idempotency_key", "default_seed",
    "RateLimitSignal",
    "MAX_RETRIES", "QueueScanner",
    "SingleFlight", "TickScheduler",
]
