"""Pytest configuration and shared fixtures."""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from taskrelay.access import AccessPolicy
from taskrelay.engine.classifier import DEFAULT_MARKERS
from taskrelay.engine.dispatcher import Dispatcher
from taskrelay.engine.planning import PlanningService
from taskrelay.engine.poller import DeploymentPoller
from taskrelay.engine.status_resolver import StatusResolver
from taskrelay.enums import DeployMode, WorkerStatus
from taskrelay.exceptions import UpstreamError
from taskrelay.models.domain import (
    Actor,
    CreatedComment,
    CreatedIssue,
    Deployment,
    DirectoryEntry,
    IssueComment,
    RepositoryLink,
    Task,
    new_id,
    new_plan_id,
)
from taskrelay.providers.base import IssueTracker
from taskrelay.rendering.comments import CommentComposer
from taskrelay.storage.activity import ActivityLog
from taskrelay.storage.deployments import DeploymentStore
from taskrelay.storage.planning import PlanningStore
from taskrelay.storage.state_store import JsonStateStore
from taskrelay.storage.tasks import TaskStore

BOT = "pts-worker[bot]"


class FakeTracker(IssueTracker):
    """In-memory issue tracker.

    Comments come back newest first so callers have to sort them.
    """

    def __init__(self) -> None:
        self.issues: dict[int, dict[str, str]] = {}
        self.comments: dict[int, list[IssueComment]] = {}
        self.directories: dict[str, list[DirectoryEntry]] = {}
        self.comment_error: UpstreamError | None = None
        self.list_error: UpstreamError | None = None
        self.issue_error: UpstreamError | None = None
        self.directory_error: UpstreamError | None = None
        self.closed = False
        self._next_issue = 100
        self._next_comment = 5000
        self._clock = datetime(2025, 1, 15, 10, 0, tzinfo=UTC)

    async def create_issue(self, owner: str, repo: str, title: str, body: str) -> CreatedIssue:
        if self.issue_error is not None:
            raise self.issue_error
        self._next_issue += 1
        number = self._next_issue
        self.issues[number] = {"repo": f"{owner}/{repo}", "title": title, "body": body}
        self.comments[number] = []
        return CreatedIssue(number=number, html_url=f"https://github.com/{owner}/{repo}/issues/{number}")

    async def create_issue_comment(self, owner: str, repo: str, issue_number: int, body: str) -> CreatedComment:
        if self.comment_error is not None:
            error, self.comment_error = self.comment_error, None
            raise error
        comment = self.add_comment(issue_number, "operator", body)
        return CreatedComment(id=comment.id, html_url=comment.html_url)

    async def list_issue_comments(self, owner: str, repo: str, issue_number: int) -> list[IssueComment]:
        if self.list_error is not None:
            raise self.list_error
        return list(reversed(self.comments.get(issue_number, [])))

    async def list_directory(self, owner: str, repo: str, path: str) -> list[DirectoryEntry]:
        if self.directory_error is not None:
            raise self.directory_error
        return list(self.directories.get(path, []))

    async def close(self) -> None:
        self.closed = True

    def add_comment(self, issue_number: int, login: str, body: str) -> IssueComment:
        self._next_comment += 1
        self._clock += timedelta(minutes=1)
        comment = IssueComment(
            id=self._next_comment,
            body=body,
            author_login=login,
            author_avatar_url=f"https://avatars.example.com/{login}",
            created_at=self._clock,
            html_url=f"https://github.com/acme/webapp/issues/{issue_number}#issuecomment-{self._next_comment}",
        )
        self.comments.setdefault(issue_number, []).append(comment)
        return comment

    def bot_says(self, issue_number: int, body: str) -> IssueComment:
        return self.add_comment(issue_number, BOT, body)

    def posted_bodies(self, issue_number: int) -> list[str]:
        return [c.body for c in self.comments.get(issue_number, []) if c.author_login != BOT]


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Temporary state directory."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def state_store(temp_state_dir: Path) -> JsonStateStore:
    return JsonStateStore(temp_state_dir)


@pytest.fixture
def deployment_store(state_store: JsonStateStore) -> DeploymentStore:
    return DeploymentStore(state_store)


@pytest.fixture
def task_store(state_store: JsonStateStore) -> TaskStore:
    return TaskStore(state_store)


@pytest.fixture
def planning_store(state_store: JsonStateStore) -> PlanningStore:
    return PlanningStore(state_store)


@pytest.fixture
def activity_log(state_store: JsonStateStore) -> ActivityLog:
    return ActivityLog(state_store)


@pytest.fixture
def access(task_store: TaskStore) -> AccessPolicy:
    return AccessPolicy(task_store)


@pytest.fixture
def composer() -> CommentComposer:
    return CommentComposer(DEFAULT_MARKERS)


@pytest.fixture
def tracker() -> FakeTracker:
    return FakeTracker()


@pytest.fixture
def admin() -> Actor:
    return Actor(id="admin-1", role="admin")


@pytest.fixture
def member() -> Actor:
    """Project member with access to proj-1 only."""
    return Actor(id="member-1", role="member", project_ids=frozenset({"proj-1"}))


@pytest.fixture
def outsider() -> Actor:
    return Actor(id="outsider-1", role="member", project_ids=frozenset({"proj-2"}))


@pytest.fixture
def sample_task() -> Task:
    return Task(
        id="task-1",
        project_id="proj-1",
        title="Add dark mode",
        description="Support a dark color scheme across the dashboard.",
        client_id="client-1",
    )


@pytest.fixture
def sample_link() -> RepositoryLink:
    return RepositoryLink(id="link-1", project_id="proj-1", owner="acme", name="webapp")


@pytest.fixture
async def task(task_store: TaskStore, sample_task: Task) -> Task:
    """Sample task, persisted."""
    return await task_store.add_task(sample_task)


@pytest.fixture
async def link(task_store: TaskStore, sample_link: RepositoryLink) -> RepositoryLink:
    """Sample repository link, persisted."""
    return await task_store.add_link(sample_link)


@pytest.fixture
async def foreign_link(task_store: TaskStore) -> RepositoryLink:
    """Repository link owned by another project."""
    return await task_store.add_link(RepositoryLink(id="link-2", project_id="proj-2", owner="other", name="repo"))


@pytest.fixture
def make_deployment():
    """Factory for deployment records with sensible defaults."""

    def _make(**overrides) -> Deployment:
        values = {
            "id": new_id(),
            "task_id": "task-1",
            "repository_link_id": "link-1",
            "created_by": "admin-1",
            "issue_number": 101,
            "issue_url": "https://github.com/acme/webapp/issues/101",
            "status": WorkerStatus.WORKING,
            "model": "sonnet",
            "mode": DeployMode.PLAN,
            "plan_id": new_plan_id(),
            "command_posted": True,
        }
        values.update(overrides)
        return Deployment(**values)

    return _make


@pytest.fixture
def resolver(tracker, deployment_store, task_store, access) -> StatusResolver:
    return StatusResolver(tracker, deployment_store, task_store, access)


@pytest.fixture
def dispatcher(tracker, deployment_store, task_store, planning_store, activity_log, access, composer) -> Dispatcher:
    return Dispatcher(
        tracker,
        deployment_store,
        task_store,
        planning_store,
        activity_log,
        access,
        composer,
        portal_url="https://portal.example.com/projects",
    )


@pytest.fixture
def poller(resolver, deployment_store) -> DeploymentPoller:
    """Poller that does not sleep between cycles."""
    return DeploymentPoller(resolver, deployment_store, interval=0, failure_warning_threshold=3)


@pytest.fixture
def planning_service(planning_store, task_store, access) -> PlanningService:
    return PlanningService(planning_store, task_store, access)
