"""Processing-job state machine.

Illegal transitions raise :class:`InvalidTransitionError`; they are never
coerced into a nearby legal state.
"""

from __future__ import annotations

from contentflow.errors import InvalidTransitionError
from contentflow.jobs.models import QueueName, policy_for
from contentflow.models.processing import ProcessingEvent, ProcessingStatus

S = ProcessingStatus
E = ProcessingEvent

TRANSITIONS: dict[ProcessingStatus, dict[ProcessingEvent, ProcessingStatus]] = {
    S.IDLE: {E.START: S.PENDING},
    S.PENDING: {E.START: S.QUEUED, E.CANCEL: S.CANCELLED},
    S.QUEUED: {E.START: S.PROCESSING, E.CANCEL: S.CANCELLED},
    S.PROCESSING: {
        E.PROGRESS: S.PROCESSING,
        E.COMPLETE: S.COMPLETED,
        E.FAIL: S.FAILED,
        E.CANCEL: S.CANCELLED,
    },
    S.FAILED: {E.RETRY: S.RETRYING, E.MARK_PERMANENTLY_FAILED: S.PERMANENTLY_FAILED},
    S.RETRYING: {
        E.START: S.PROCESSING,
        E.MARK_PERMANENTLY_FAILED: S.PERMANENTLY_FAILED,
        E.CANCEL: S.CANCELLED,
    },
    S.COMPLETED: {},
    S.PERMANENTLY_FAILED: {},
    S.CANCELLED: {},
}


def allowed_events(status: ProcessingStatus) -> list[ProcessingEvent]:
    """Events legal in ``status``."""
    return list(TRANSITIONS[status])


def can_transition(status: ProcessingStatus, event: ProcessingEvent) -> bool:
    return event in TRANSITIONS[status]


def transition(status: ProcessingStatus, event: ProcessingEvent) -> ProcessingStatus:
    """Return the state reached by applying ``event`` in ``status``.

    Raises:
        InvalidTransitionError: If the event is not legal in ``status``.
    """
    try:
        return TRANSITIONS[status][event]
    except KeyError:
        raise InvalidTransitionError(
            status.value, event.value, [e.value for e in allowed_events(status)]
        ) from None


def retry_delay(job_type: QueueName | str, attempt_number: int) -> int:
    """Backoff in ms before the RETRY of ``attempt_number``, per job type."""
    return policy_for(job_type).backoff_delay(attempt_number)
