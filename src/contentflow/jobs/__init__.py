"""Durable jobs: store, rate limiting and the processing-job state machine."""

from contentflow.jobs.models import (
    QUEUE_POLICIES,
    Job,
    JobCounts,
    JobHandle,
    JobResult,
    JobState,
    QueueName,
    QueuePolicy,
    backoff_delay,
)

__all__ = [
    "QUEUE_POLICIES",
    "Job",
    "JobCounts",
    "JobHandle",
    "JobResult",
    "JobState",
    "QueueName",
    "QueuePolicy",
    "backoff_delay",
]
