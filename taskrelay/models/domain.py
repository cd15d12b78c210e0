"""
Domain models for the deployment core.

These dataclasses are the normalized internal representation of tasks,
repository links, deployments, tracker comments, and planning records. Records
persisted by the stores convert to and from plain dicts with ``to_dict`` /
``from_dict`` so the JSON files stay readable.

Example:
    Building a deployment from a freshly created issue::

        deployment = Deployment(
            id=new_id(),
            task_id=task.id,
            repository_link_id=link.id,
            created_by=actor.id,
            issue_number=issue.number,
            issue_url=issue.html_url,
            status=WorkerStatus.WORKING,
            model="sonnet",
            mode=DeployMode.PLAN,
            plan_id=new_plan_id(),
        )
"""

import secrets
import string
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from taskrelay.enums import ContentType, DeployMode, VersionDeployStatus, WorkerStatus

_PLAN_ID_ALPHABET = string.digits + string.ascii_lowercase


def utcnow() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(UTC).isoformat()


def new_id() -> str:
    """Opaque record identifier."""
    return str(uuid.uuid4())


def new_plan_id() -> str:
    """Plan identifier embedded in command comments, e.g. ``PLN-k3x9q2``."""
    return "PLN-" + "".join(secrets.choice(_PLAN_ID_ALPHABET) for _ in range(6))


@dataclass
class Actor:
    """Authenticated user performing an operation.

    Supplied by the caller; the core only checks role and project scope.
    """

    id: str
    role: str = "member"
    project_ids: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class Task:
    """A unit of project work that can be delegated to the worker.

    The ``issue_number``/``issue_url``/``worker_status``/``pr_url`` fields are
    a cache of the task's most recently created deployment so list views need
    not join every deployment.
    """

    id: str
    project_id: str
    title: str
    description: str | None = None
    client_id: str | None = None
    issue_number: int | None = None
    issue_url: str | None = None
    worker_status: WorkerStatus | None = None
    pr_url: str | None = None
    updated_by: str | None = None
    updated_at: str = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["worker_status"] = self.worker_status.value if self.worker_status else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        values = dict(data)
        status = values.get("worker_status")
        values["worker_status"] = WorkerStatus(status) if status else None
        return cls(**values)


@dataclass
class RepositoryLink:
    """A tracker repository attached to a project."""

    id: str
    project_id: str
    owner: str
    name: str
    default_branch: str = "main"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RepositoryLink":
        return cls(**data)


@dataclass
class Deployment:
    """One worker run attached to one task and one repository link.

    ``status`` is written by the dispatcher at creation and right after a
    continue/cancel comment (provisional), and by the status resolver after
    every poll (authoritative). Records are never deleted.
    """

    id: str
    task_id: str
    repository_link_id: str
    created_by: str
    issue_number: int
    issue_url: str
    status: WorkerStatus
    model: str
    mode: DeployMode
    plan_id: str
    pr_url: str | None = None
    plan_thread_id: str | None = None
    plan_version: int | None = None
    prd_path: str | None = None
    command_posted: bool = False
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["mode"] = self.mode.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Deployment":
        values = dict(data)
        values["status"] = WorkerStatus(values["status"])
        values["mode"] = DeployMode(values["mode"])
        return cls(**values)


@dataclass
class CreatedIssue:
    """Issue reference returned by the tracker."""

    number: int
    html_url: str


@dataclass
class CreatedComment:
    """Comment reference returned by the tracker."""

    id: int
    html_url: str


@dataclass
class DirectoryEntry:
    """One entry of a repository directory listing."""

    name: str
    path: str
    type: str
    """Either ``"file"`` or ``"dir"``."""


@dataclass
class IssueComment:
    """A comment as read from the tracker. Read-only to this core."""

    id: int
    body: str
    author_login: str
    author_avatar_url: str
    created_at: datetime
    html_url: str


@dataclass
class WorkerComment:
    """An issue comment tagged with the status it implies.

    Non-bot comments always carry ``WorkerStatus.UNKNOWN``.
    """

    id: int
    body: str
    login: str
    avatar_url: str
    created_at: datetime
    html_url: str
    status: WorkerStatus
    is_bot: bool


@dataclass
class WorkerStatusResult:
    """Outcome of resolving one deployment against its issue."""

    comments: list[WorkerComment]
    """Bot-authored comments in chronological order."""

    pr_url: str | None
    latest_status: WorkerStatus | None
    """Status of the last bot comment, or None when the bot has not spoken."""

    deployment_status: WorkerStatus
    """Persisted deployment status after the resolve side effect."""

    awaiting_worker: bool = False
    """A human command to the bot is newer than the bot's last comment."""


@dataclass
class DispatchResult:
    """Outcome of starting a deployment."""

    deployment_id: str
    issue_number: int
    issue_url: str
    comment_url: str
    worker_status: WorkerStatus


@dataclass
class PlanningSession:
    """Groups the planning threads of one task."""

    id: str
    task_id: str
    repository_link_id: str
    created_by: str
    status: str = "active"
    created_at: str = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlanningSession":
        return cls(**data)


@dataclass
class PlanThread:
    """A sequence of revisions generated by one model inside a session."""

    id: str
    session_id: str
    model: str
    model_label: str
    current_version: int = 0
    """Cached latest revision number; 0 until the first revision is saved."""

    created_at: str = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlanThread":
        return cls(**data)


@dataclass
class PlanRevision:
    """Immutable snapshot of generated content for a thread."""

    id: str
    thread_id: str
    version: int
    content: str
    feedback: str | None = None
    created_at: str = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlanRevision":
        return cls(**data)


@dataclass
class PlanningSessionData:
    """A session together with its threads, as handed to the planning view."""

    session: PlanningSession
    threads: list[PlanThread]


@dataclass
class VersionMeta:
    """Display information for one revision in the navigator."""

    version: int
    label: str
    """``v1``, ``v2``, ... for plans; ``Q``, ``Q2``, ... for questions."""

    is_questions: bool
    deploy_status: VersionDeployStatus


@dataclass
class ActivityEvent:
    """Audit record written for every dispatch call."""

    verb: str
    summary: str
    actor_id: str
    actor_role: str
    target_type: str
    target_id: str
    target_project_id: str
    target_client_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PlanStreamRequest:
    """Input of one plan generation request."""

    thread_id: str
    repository_link_id: str
    task_title: str
    task_description: str | None
    model: str
    current_version: int
    feedback: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """JSON body understood by the generation endpoint."""
        payload: dict[str, Any] = {
            "threadId": self.thread_id,
            "repoLinkId": self.repository_link_id,
            "taskTitle": self.task_title,
            "taskDescription": self.task_description,
            "model": self.model,
            "currentVersion": self.current_version,
        }
        if self.feedback:
            payload["feedback"] = self.feedback
        return payload


@dataclass
class PlanStreamEvent:
    """One event surfaced by the plan stream controller."""

    type: str
    """``text-delta``, ``tool-call-start``, ``tool-call-resolved``, ``error`` or ``finish``."""

    text: str | None = None
    label: str | None = None
    tool_name: str | None = None
    error: str | None = None
    finish_reason: str | None = None


@dataclass
class PlanStreamState:
    """Observable state of the current (or last) generation."""

    content: str = ""
    content_type: ContentType = ContentType.UNKNOWN
    is_generating: bool = False
    tool_calls: list[str] = field(default_factory=list)
    error: str | None = None
    finished: bool = False
    """True only when the stream completed without error or cancellation."""

    cancelled: bool = False
    finish_reason: str | None = None
