"""Enumerations for worker status, dispatch modes, and plan content."""

from enum import Enum


class WorkerStatus(str, Enum):
    """Status of one deployment as inferred from issue comments.

    ``CANCELLED`` is never produced by the classifier; it is only written
    locally after a cancellation marker has been posted.
    """

    WORKING = "working"
    IMPLEMENTING = "implementing"
    PLAN_READY = "plan_ready"
    PR_CREATED = "pr_created"
    DONE_NO_CHANGES = "done_no_changes"
    ERROR = "error"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value

    @property
    def is_final(self) -> bool:
        """Whether the deployment record may never change status again."""
        return self in FINAL_STATUSES

    @property
    def stops_polling(self) -> bool:
        """Whether polling for the deployment stops once this is observed."""
        return self in POLL_TERMINAL_STATUSES


FINAL_STATUSES = frozenset(
    {
        WorkerStatus.PR_CREATED,
        WorkerStatus.DONE_NO_CHANGES,
        WorkerStatus.ERROR,
        WorkerStatus.CANCELLED,
    }
)

# plan_ready also ends polling: the next move belongs to a human.
POLL_TERMINAL_STATUSES = FINAL_STATUSES | {WorkerStatus.PLAN_READY}

CANCELLABLE_STATUSES = frozenset({WorkerStatus.WORKING, WorkerStatus.IMPLEMENTING, WorkerStatus.UNKNOWN})


class DeployMode(str, Enum):
    """Whether the first dispatch asks for a plan or a full implementation."""

    PLAN = "plan"
    EXECUTE = "execute"

    def __str__(self) -> str:
        return self.value

    @property
    def initial_status(self) -> WorkerStatus:
        """Status a freshly dispatched deployment starts in."""
        if self == DeployMode.EXECUTE:
            return WorkerStatus.IMPLEMENTING
        return WorkerStatus.WORKING


class WorkerModel(str, Enum):
    """Models the worker accepts in ``/model/<name>`` directives."""

    OPUS = "opus"
    SONNET = "sonnet"
    HAIKU = "haiku"

    def __str__(self) -> str:
        return self.value


class ContentType(str, Enum):
    """Class of a generated planning document."""

    UNKNOWN = "unknown"
    QUESTIONS = "questions"
    PLAN = "plan"


class VersionDeployStatus(str, Enum):
    """Deployment state of one revision, derived from linked deployments."""

    NONE = "none"
    DISPATCHED = "dispatched"
    PR_CREATED = "pr_created"
