"""Deployment store: the append-only arena of worker runs per task.

Deployments are never deleted. Insertion order is creation order, so the
last deployment inserted for a task is that task's most recent one. Status
writes go through ``update_status`` which refuses to move a deployment out
of a final status.
"""

from typing import Any

import structlog

from taskrelay.enums import WorkerStatus
from taskrelay.exceptions import NotFoundError
from taskrelay.models.domain import Deployment, utcnow
from taskrelay.storage.state_store import JsonStateStore

log = structlog.get_logger(__name__)

COLLECTION = "deployments"

# Fields fixed at creation; update() refuses to touch them.
_IMMUTABLE_FIELDS = frozenset({"id", "task_id", "repository_link_id", "created_by", "issue_number", "issue_url", "created_at"})


class DeploymentStore:
    """Persisted deployment records."""

    def __init__(self, state: JsonStateStore) -> None:
        self.state = state

    async def create(self, deployment: Deployment) -> Deployment:
        async with self.state.transaction(COLLECTION) as records:
            if deployment.id in records:
                raise ValueError(f"Deployment {deployment.id} already exists")
            records[deployment.id] = deployment.to_dict()

        log.info(
            "deployment_created",
            deployment_id=deployment.id,
            task_id=deployment.task_id,
            issue_number=deployment.issue_number,
            status=str(deployment.status),
            mode=str(deployment.mode),
        )
        return deployment

    async def get(self, deployment_id: str) -> Deployment | None:
        data = await self.state.get(COLLECTION, deployment_id)
        return Deployment.from_dict(data) if data else None

    async def require(self, deployment_id: str) -> Deployment:
        """Load a deployment or raise NotFoundError."""
        deployment = await self.get(deployment_id)
        if deployment is None:
            raise NotFoundError("deployment", deployment_id)
        return deployment

    async def list_for_task(self, task_id: str) -> list[Deployment]:
        """All deployments of a task, oldest first."""
        records = await self.state.load(COLLECTION)
        return [Deployment.from_dict(r) for r in records.values() if r["task_id"] == task_id]

    async def latest_for_task(self, task_id: str) -> Deployment | None:
        deployments = await self.list_for_task(task_id)
        return deployments[-1] if deployments else None

    async def is_latest(self, deployment: Deployment) -> bool:
        """Whether no newer deployment exists for the same task."""
        latest = await self.latest_for_task(deployment.task_id)
        return latest is not None and latest.id == deployment.id

    async def list_for_thread(self, thread_id: str) -> list[Deployment]:
        """Deployments dispatched from revisions of a planning thread."""
        records = await self.state.load(COLLECTION)
        return [Deployment.from_dict(r) for r in records.values() if r.get("plan_thread_id") == thread_id]

    async def update(self, deployment_id: str, **changes: Any) -> Deployment:
        """Apply field changes to a deployment.

        Raises:
            NotFoundError: If the deployment does not exist
            ValueError: If an immutable field is targeted
        """
        forbidden = _IMMUTABLE_FIELDS.intersection(changes)
        if forbidden:
            raise ValueError(f"Cannot modify immutable deployment fields: {sorted(forbidden)}")

        async with self.state.transaction(COLLECTION) as records:
            data = records.get(deployment_id)
            if data is None:
                raise NotFoundError("deployment", deployment_id)
            deployment = Deployment.from_dict(data)
            for key, value in changes.items():
                setattr(deployment, key, value)
            deployment.updated_at = utcnow()
            records[deployment_id] = deployment.to_dict()

        return deployment

    async def update_status(
        self,
        deployment_id: str,
        status: WorkerStatus,
        pr_url: str | None = None,
    ) -> Deployment:
        """Write a status (and PR URL, when known) unless the deployment is final.

        A final deployment is returned unchanged.

        Raises:
            NotFoundError: If the deployment does not exist
        """
        async with self.state.transaction(COLLECTION) as records:
            data = records.get(deployment_id)
            if data is None:
                raise NotFoundError("deployment", deployment_id)
            deployment = Deployment.from_dict(data)

            if deployment.status.is_final:
                if status != deployment.status:
                    log.info(
                        "deployment_status_frozen",
                        deployment_id=deployment_id,
                        status=str(deployment.status),
                        ignored_status=str(status),
                    )
                return deployment

            previous = deployment.status
            deployment.status = status
            if pr_url:
                deployment.pr_url = pr_url
            deployment.updated_at = utcnow()
            records[deployment_id] = deployment.to_dict()

        if previous != status:
            log.info(
                "deployment_status_changed",
                deployment_id=deployment_id,
                previous=str(previous),
                status=str(status),
                pr_url=deployment.pr_url,
            )
        return deployment
