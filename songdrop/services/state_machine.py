import enum


class JobStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: [JobStatus.PROCESSING, JobStatus.PENDING],   # PENDING -> PENDING is a re-enqueue
    JobStatus.PROCESSING: [JobStatus.COMPLETED, JobStatus.PENDING, JobStatus.FAILED],
    JobStatus.COMPLETED: [],
    JobStatus.FAILED: [JobStatus.PENDING],                           # manual re-enqueue only
}


class InvalidTransition(ValueError):
    pass


def ensure_transition(current, target) -> None:
    try:
        current = JobStatus(current)
    except ValueError:
        raise InvalidTransition(f"Unknown state: {current}")
    try:
        target = JobStatus(target)
    except ValueError:
        raise InvalidTransition(f"Unknown target state: {target}")

    allowed = ALLOWED_TRANSITIONS.get(current, [])
    if target not in allowed:
        raise InvalidTransition(f"Invalid transition: {current.value} -> {target.value}")
