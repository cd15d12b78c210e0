"""Tasks and repository links as read by the deployment core.

Only the worker cache fields of a task are written here. ``mirror_deployment``
is the single path that writes them and it re-checks, under the task lock,
that the deployment is still the task's most recent one.
"""

import structlog

from taskrelay.exceptions import NotFoundError
from taskrelay.models.domain import Deployment, RepositoryLink, Task, utcnow
from taskrelay.storage.deployments import DeploymentStore
from taskrelay.storage.state_store import JsonStateStore

log = structlog.get_logger(__name__)

TASKS = "tasks"
LINKS = "repository_links"


class TaskStore:
    """Persisted tasks and repository links."""

    def __init__(self, state: JsonStateStore) -> None:
        self.state = state

    async def add_task(self, task: Task) -> Task:
        async with self.state.transaction(TASKS) as records:
            records[task.id] = task.to_dict()
        log.info("task_registered", task_id=task.id, project_id=task.project_id)
        return task

    async def get_task(self, task_id: str) -> Task | None:
        data = await self.state.get(TASKS, task_id)
        return Task.from_dict(data) if data else None

    async def require_task(self, task_id: str) -> Task:
        task = await self.get_task(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    async def add_link(self, link: RepositoryLink) -> RepositoryLink:
        async with self.state.transaction(LINKS) as records:
            records[link.id] = link.to_dict()
        log.info("repository_linked", link_id=link.id, project_id=link.project_id, repo=link.full_name)
        return link

    async def get_link(self, link_id: str) -> RepositoryLink | None:
        data = await self.state.get(LINKS, link_id)
        return RepositoryLink.from_dict(data) if data else None

    async def require_link(self, link_id: str) -> RepositoryLink:
        link = await self.get_link(link_id)
        if link is None:
            raise NotFoundError("repository_link", link_id)
        return link

    async def list_links(self, project_id: str) -> list[RepositoryLink]:
        records = await self.state.load(LINKS)
        return [RepositoryLink.from_dict(r) for r in records.values() if r["project_id"] == project_id]

    async def mirror_deployment(
        self,
        deployment: Deployment,
        deployments: DeploymentStore,
        updated_by: str | None = None,
        include_issue: bool = False,
    ) -> bool:
        """Copy a deployment's status onto its task's cached worker fields.

        Skipped when a newer deployment exists for the task.

        Args:
            deployment: Deployment whose state should be mirrored
            deployments: Store used to re-check recency
            updated_by: Actor id recorded on the task
            include_issue: Also copy the issue number and URL

        Returns:
            True when the task was updated
        """
        async with self.state.transaction(TASKS) as records:
            data = records.get(deployment.task_id)
            if data is None:
                raise NotFoundError("task", deployment.task_id)

            if not await deployments.is_latest(deployment):
                log.debug(
                    "task_mirror_skipped",
                    task_id=deployment.task_id,
                    deployment_id=deployment.id,
                )
                return False

            task = Task.from_dict(data)
            task.worker_status = deployment.status
            if deployment.pr_url:
                task.pr_url = deployment.pr_url
            if include_issue:
                task.issue_number = deployment.issue_number
                task.issue_url = deployment.issue_url
                task.pr_url = deployment.pr_url
            if updated_by:
                task.updated_by = updated_by
            task.updated_at = utcnow()
            records[task.id] = task.to_dict()

        log.debug("task_mirrored", task_id=deployment.task_id, status=str(deployment.status))
        return True
