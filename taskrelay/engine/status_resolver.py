"""Derive a deployment's status from its issue comments.

``resolve`` is the authoritative writer of ``status`` and ``pr_url`` after a
deployment exists. Each call:

1. loads the deployment, authorizes the actor, loads the repository link
2. fetches every comment of the issue and classifies the feed
3. persists the last bot status, unless the deployment is final or the
   worker has not answered the newest plan or implement command yet (a
   final bot status is persisted regardless)
4. mirrors the result onto the task when the deployment is still the task's
   most recent one
"""

import structlog

from taskrelay.access import AccessPolicy
from taskrelay.engine.classifier import DEFAULT_MARKERS, WorkerMarkers, awaiting_worker, classify_feed, extract_pr_url
from taskrelay.enums import WorkerStatus
from taskrelay.models.domain import Actor, WorkerStatusResult
from taskrelay.providers.base import IssueTracker
from taskrelay.storage.deployments import DeploymentStore
from taskrelay.storage.tasks import TaskStore

log = structlog.get_logger(__name__)


class StatusResolver:
    """Refresh deployments from the tracker."""

    def __init__(
        self,
        tracker: IssueTracker,
        deployments: DeploymentStore,
        tasks: TaskStore,
        access: AccessPolicy,
        markers: WorkerMarkers = DEFAULT_MARKERS,
    ) -> None:
        self.tracker = tracker
        self.deployments = deployments
        self.tasks = tasks
        self.access = access
        self.markers = markers

    async def resolve(self, actor: Actor, deployment_id: str) -> WorkerStatusResult:
        """Fetch, classify, and persist the worker status of one deployment.

        Args:
            actor: Caller, checked against the owning task
            deployment_id: Deployment to refresh

        Returns:
            Bot comments, latest PR URL, latest bot status, persisted status

        Raises:
            NotFoundError: If the deployment, task, or repository link is missing
            ForbiddenError: If the actor lacks access to the task
            UpstreamError: If listing comments fails; nothing is written
        """
        deployment = await self.deployments.require(deployment_id)
        await self.access.ensure_task_access(actor, deployment.task_id)
        link = await self.tasks.require_link(deployment.repository_link_id)

        raw_comments = await self.tracker.list_issue_comments(link.owner, link.name, deployment.issue_number)

        feed = classify_feed(raw_comments, self.markers)
        bot_comments = [c for c in feed if c.is_bot]
        pr_url = extract_pr_url(bot_comments, self.markers)
        latest_status = bot_comments[-1].status if bot_comments else None
        pending = awaiting_worker(feed, self.markers)

        # A pending command only holds back non-final progress
        known = latest_status is not None and latest_status != WorkerStatus.UNKNOWN
        if known and (not pending or latest_status.is_final):
            if not deployment.status.is_final:
                deployment = await self.deployments.update_status(deployment.id, latest_status, pr_url)
                if deployment.status == latest_status:
                    await self.tasks.mirror_deployment(deployment, self.deployments)

        log.debug(
            "deployment_resolved",
            deployment_id=deployment.id,
            issue_number=deployment.issue_number,
            comments=len(feed),
            bot_comments=len(bot_comments),
            latest_status=str(latest_status) if latest_status else None,
            status=str(deployment.status),
            awaiting_worker=pending,
        )

        return WorkerStatusResult(
            comments=bot_comments,
            pr_url=pr_url,
            latest_status=latest_status,
            deployment_status=deployment.status,
            awaiting_worker=pending,
        )
