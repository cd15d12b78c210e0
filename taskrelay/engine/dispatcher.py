"""
Dispatch service: every side effect against the issue tracker.

Entry points validate their input and authorize the actor before touching
the tracker, and write one audit event per dispatched command.

Status written here is provisional. The status resolver confirms or corrects
it on the next poll.

Partial dispatch:
    Once an issue exists it is never rolled back. If the command comment then
    fails, the deployment is kept with ``command_posted=False`` and
    ``PartialDispatchError`` names it, so the caller can ``retry_command``
    against the same issue instead of opening another one.
"""

import re
from typing import Any

import structlog

from taskrelay.access import AccessPolicy
from taskrelay.enums import CANCELLABLE_STATUSES, DeployMode, WorkerModel, WorkerStatus
from taskrelay.exceptions import NotFoundError, PartialDispatchError, UpstreamError, ValidationError
from taskrelay.models.domain import (
    Actor,
    CreatedComment,
    Deployment,
    DispatchResult,
    RepositoryLink,
    Task,
    new_id,
    new_plan_id,
)
from taskrelay.models.requests import (
    ContinueDeploymentRequest,
    DeploymentRef,
    DeployPlanRequest,
    StartDeploymentRequest,
    parse_request,
)
from taskrelay.providers.base import IssueTracker
from taskrelay.rendering.comments import CommentComposer
from taskrelay.storage import activity
from taskrelay.storage.activity import ActivityLog, EventSpec
from taskrelay.storage.deployments import DeploymentStore
from taskrelay.storage.planning import PlanningStore
from taskrelay.storage.tasks import TaskStore

log = structlog.get_logger(__name__)

PRD_ROOT = "docs/prds"
_PRD_DIR_PATTERN = re.compile(r"^(\d+)-")
_SLUG_MAX_LENGTH = 50


def slugify(title: str) -> str:
    """Lowercase, non-alphanumerics collapsed to ``-``, trimmed to 50 chars."""
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return slug[:_SLUG_MAX_LENGTH]


def next_prd_number(directory_names: list[str]) -> int:
    """One past the highest ``NNN-`` prefix among existing PRD directories."""
    numbers = []
    for name in directory_names:
        match = _PRD_DIR_PATTERN.match(name)
        if match and int(match.group(1)) > 0:
            numbers.append(int(match.group(1)))
    return max(numbers) + 1 if numbers else 1


def prd_path(number: int, title: str) -> str:
    return f"{PRD_ROOT}/{number:03d}-{slugify(title)}/README.md"


class Dispatcher:
    """Start, continue, cancel, and deploy worker runs."""

    def __init__(
        self,
        tracker: IssueTracker,
        deployments: DeploymentStore,
        tasks: TaskStore,
        planning: PlanningStore,
        activity_log: ActivityLog,
        access: AccessPolicy,
        composer: CommentComposer,
        portal_url: str = "",
    ) -> None:
        self.tracker = tracker
        self.deployments = deployments
        self.tasks = tasks
        self.planning = planning
        self.activity = activity_log
        self.access = access
        self.composer = composer
        self.portal_url = portal_url

    async def start(
        self,
        actor: Actor,
        task_id: str,
        repository_link_id: str,
        model: str,
        mode: str = DeployMode.PLAN,
    ) -> DispatchResult:
        """Open an issue for a task and post the initial worker command.

        Raises:
            ValidationError: Malformed input, or the link belongs to another project
            NotFoundError: Task or repository link missing
            ForbiddenError: Actor lacks task access
            UpstreamError: Issue creation failed; nothing was persisted
            PartialDispatchError: Issue exists but the command comment failed
        """
        request = parse_request(
            StartDeploymentRequest,
            task_id=task_id,
            repository_link_id=repository_link_id,
            model=model,
            mode=mode,
        )
        task = await self.access.ensure_task_access(actor, request.task_id)
        link = await self._require_project_link(task, request.repository_link_id)

        deployment = await self._open_issue_and_record(actor, task, link, model=request.model, mode=request.mode)
        comment = await self._post_command(actor, task, link, deployment)
        return self._result(deployment, comment)

    async def retry_command(self, actor: Actor, deployment_id: str) -> DispatchResult:
        """Re-post the initial command of a partially dispatched deployment.

        Raises:
            ValidationError: The command was already posted
            NotFoundError: Deployment, task, link, or linked revision missing
            PartialDispatchError: Posting failed again
        """
        request = parse_request(DeploymentRef, deployment_id=deployment_id)
        deployment = await self.deployments.require(request.deployment_id)
        task = await self.access.ensure_task_access(actor, deployment.task_id)
        link = await self.tasks.require_link(deployment.repository_link_id)

        if deployment.command_posted:
            raise ValidationError("Worker command was already posted for this deployment.")

        log.info("worker_command_retry", deployment_id=deployment.id, issue_number=deployment.issue_number)
        comment = await self._post_command(actor, task, link, deployment)
        return self._result(deployment, comment)

    async def continue_deployment(
        self,
        actor: Actor,
        deployment_id: str,
        model: str,
        custom_prompt: str | None = None,
    ) -> CreatedComment:
        """Ask the worker to implement, on the deployment's existing issue.

        Raises:
            ValidationError: Malformed input or a final deployment
            NotFoundError: Deployment, task, or repository link missing
            ForbiddenError: Actor lacks task access
            UpstreamError: Posting the comment failed; status unchanged
        """
        request = parse_request(
            ContinueDeploymentRequest,
            deployment_id=deployment_id,
            model=model,
            custom_prompt=custom_prompt,
        )
        deployment = await self.deployments.require(request.deployment_id)
        task = await self.access.ensure_task_access(actor, deployment.task_id)
        link = await self.tasks.require_link(deployment.repository_link_id)

        if deployment.status.is_final:
            raise ValidationError(f"Deployment is already {deployment.status}; start a new deployment instead.")

        body = self.composer.implement(request.model.value, task.title, request.custom_prompt)
        comment = await self.tracker.create_issue_comment(link.owner, link.name, deployment.issue_number, body)

        deployment = await self.deployments.update_status(deployment.id, WorkerStatus.IMPLEMENTING)
        await self.tasks.mirror_deployment(deployment, self.deployments, updated_by=actor.id)

        await self.activity.record(
            actor,
            task,
            activity.worker_implement_requested(
                task.title,
                request.model.value,
                link.full_name,
                deployment.issue_number,
                has_custom_prompt=bool(request.custom_prompt),
            ),
            {"deployment_id": deployment.id},
        )
        log.info("deployment_continued", deployment_id=deployment.id, issue_number=deployment.issue_number)
        return comment

    async def cancel(self, actor: Actor, deployment_id: str) -> CreatedComment:
        """Post the cancellation marker and record ``cancelled`` locally.

        Cancellation is a message to the worker, not a local abort.

        Raises:
            ValidationError: The deployment is not working, implementing, or unknown
            NotFoundError: Deployment, task, or repository link missing
            ForbiddenError: Actor lacks task access
            UpstreamError: Posting the marker failed; status unchanged
        """
        request = parse_request(DeploymentRef, deployment_id=deployment_id)
        deployment = await self.deployments.require(request.deployment_id)
        task = await self.access.ensure_task_access(actor, deployment.task_id)
        link = await self.tasks.require_link(deployment.repository_link_id)

        if deployment.status not in CANCELLABLE_STATUSES:
            raise ValidationError("Deployment is not in a cancellable state.")

        comment = await self.tracker.create_issue_comment(
            link.owner, link.name, deployment.issue_number, self.composer.cancel()
        )

        deployment = await self.deployments.update_status(deployment.id, WorkerStatus.CANCELLED)
        await self.tasks.mirror_deployment(deployment, self.deployments, updated_by=actor.id)

        await self.activity.record(
            actor,
            task,
            activity.worker_cancelled(task.title, link.full_name, deployment.issue_number),
            {"deployment_id": deployment.id},
        )
        log.info("deployment_cancelled", deployment_id=deployment.id, issue_number=deployment.issue_number)
        return comment

    async def deploy_plan(
        self,
        actor: Actor,
        thread_id: str,
        version: int,
        task_id: str,
        repository_link_id: str,
        model: str,
    ) -> DispatchResult:
        """Dispatch a stored plan revision as a new deployment.

        The comment carries the plan and asks the worker to save it under
        ``docs/prds/NNN-<slug>/README.md``. It has no plan directive, so the
        deployment starts as an execute run.

        Raises:
            ValidationError: Malformed input, or the link belongs to another project
            NotFoundError: Task, link, or revision missing
            ForbiddenError: Actor lacks task access
            UpstreamError: Issue creation failed; nothing was persisted
            PartialDispatchError: Issue exists but the comment failed
        """
        request = parse_request(
            DeployPlanRequest,
            thread_id=thread_id,
            version=version,
            task_id=task_id,
            repository_link_id=repository_link_id,
            model=model,
        )
        task = await self.access.ensure_task_access(actor, request.task_id)
        await self._require_revision(request.thread_id, request.version)
        link = await self._require_project_link(task, request.repository_link_id)

        path = prd_path(await self._next_prd_number(link), task.title)

        deployment = await self._open_issue_and_record(
            actor,
            task,
            link,
            model=request.model,
            mode=DeployMode.EXECUTE,
            plan_thread_id=request.thread_id,
            plan_version=request.version,
            prd_path=path,
        )
        comment = await self._post_command(actor, task, link, deployment)
        return self._result(deployment, comment)

    async def _require_project_link(self, task: Task, link_id: str) -> RepositoryLink:
        link = await self.tasks.require_link(link_id)
        if link.project_id != task.project_id:
            raise ValidationError("Repository does not belong to this project.")
        return link

    async def _require_revision(self, thread_id: str, version: int) -> str:
        revision = await self.planning.get_revision(thread_id, version)
        if revision is None:
            raise NotFoundError("plan_revision", f"{thread_id}@v{version}")
        return revision.content

    async def _open_issue_and_record(
        self,
        actor: Actor,
        task: Task,
        link: RepositoryLink,
        model: WorkerModel,
        mode: DeployMode,
        plan_thread_id: str | None = None,
        plan_version: int | None = None,
        prd_path: str | None = None,
    ) -> Deployment:
        """Create the issue, insert the deployment, and mirror it onto the task."""
        issue = await self.tracker.create_issue(
            link.owner,
            link.name,
            self.composer.issue_title(task.title),
            self.composer.issue_body(task.title, task.description, self.portal_url),
        )

        deployment = await self.deployments.create(
            Deployment(
                id=new_id(),
                task_id=task.id,
                repository_link_id=link.id,
                created_by=actor.id,
                issue_number=issue.number,
                issue_url=issue.html_url,
                status=mode.initial_status,
                model=model.value,
                mode=mode,
                plan_id=new_plan_id(),
                plan_thread_id=plan_thread_id,
                plan_version=plan_version,
                prd_path=prd_path,
            )
        )
        await self.tasks.mirror_deployment(deployment, self.deployments, updated_by=actor.id, include_issue=True)
        return deployment

    async def _compose_command(self, task: Task, deployment: Deployment) -> str:
        if deployment.plan_thread_id is not None and deployment.plan_version is not None:
            content = await self._require_revision(deployment.plan_thread_id, deployment.plan_version)
            return self.composer.plan_deploy(deployment.model, content, deployment.prd_path or "", deployment.plan_id)
        return self.composer.worker_command(
            deployment.mode, deployment.model, task.title, task.description, deployment.plan_id
        )

    def _command_event(self, task: Task, link: RepositoryLink, deployment: Deployment) -> EventSpec:
        if deployment.mode == DeployMode.EXECUTE and deployment.plan_thread_id is None:
            return activity.worker_implement_requested(
                task.title, deployment.model, link.full_name, deployment.issue_number, has_custom_prompt=False
            )
        return activity.worker_plan_requested(task.title, deployment.model, link.full_name, deployment.issue_number)

    async def _post_command(
        self,
        actor: Actor,
        task: Task,
        link: RepositoryLink,
        deployment: Deployment,
    ) -> CreatedComment:
        """Post a deployment's initial command and record the audit event.

        The event is recorded whether or not the comment lands.

        Raises:
            PartialDispatchError: The comment could not be posted
        """
        body = await self._compose_command(task, deployment)
        metadata: dict[str, Any] = {"deployment_id": deployment.id, "plan_id": deployment.plan_id}
        if deployment.plan_thread_id is not None:
            metadata.update(
                thread_id=deployment.plan_thread_id,
                version=deployment.plan_version,
                prd_path=deployment.prd_path,
            )
        event = self._command_event(task, link, deployment)

        try:
            comment = await self.tracker.create_issue_comment(link.owner, link.name, deployment.issue_number, body)
        except UpstreamError as e:
            log.error(
                "worker_command_failed",
                deployment_id=deployment.id,
                issue_number=deployment.issue_number,
                error=str(e),
            )
            await self.activity.record(actor, task, event, {**metadata, "comment_posted": False})
            raise PartialDispatchError(
                f"Issue #{deployment.issue_number} was created but the worker command could not be posted: "
                f"{e.message}",
                deployment_id=deployment.id,
                issue_number=deployment.issue_number,
                status_code=e.status_code,
            ) from e

        await self.deployments.update(deployment.id, command_posted=True)
        deployment.command_posted = True
        await self.activity.record(actor, task, event, {**metadata, "comment_posted": True})
        return comment

    async def _next_prd_number(self, link: RepositoryLink) -> int:
        try:
            entries = await self.tracker.list_directory(link.owner, link.name, PRD_ROOT)
        except UpstreamError as e:
            log.warning("prd_directory_unavailable", repo=link.full_name, error=str(e))
            return 1
        return next_prd_number([e.name for e in entries if e.type == "dir"])

    @staticmethod
    def _result(deployment: Deployment, comment: CreatedComment) -> DispatchResult:
        return DispatchResult(
            deployment_id=deployment.id,
            issue_number=deployment.issue_number,
            issue_url=deployment.issue_url,
            comment_url=comment.html_url,
            worker_status=deployment.status,
        )
