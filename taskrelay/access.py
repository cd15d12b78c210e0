"""Task-scoped access checks.

Admins reach every task. Other actors reach a task only when its project is
in their ``project_ids``.
"""

import structlog

from taskrelay.exceptions import ForbiddenError
from taskrelay.models.domain import Actor, Task
from taskrelay.storage.tasks import TaskStore

log = structlog.get_logger(__name__)


class AccessPolicy:
    """Authorize actors against tasks."""

    def __init__(self, tasks: TaskStore) -> None:
        self.tasks = tasks

    def check(self, actor: Actor, task: Task) -> None:
        """Raise ForbiddenError unless the actor may act on the task."""
        if actor.is_admin or task.project_id in actor.project_ids:
            return
        log.warning("access_denied", actor_id=actor.id, task_id=task.id, project_id=task.project_id)
        raise ForbiddenError()

    async def ensure_task_access(self, actor: Actor, task_id: str) -> Task:
        """Load a task and authorize the actor against it.

        Raises:
            NotFoundError: If the task does not exist
            ForbiddenError: If the actor lacks access
        """
        task = await self.tasks.require_task(task_id)
        self.check(actor, task)
        return task
