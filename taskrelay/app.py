"""Wiring of stores, tracker, and services from settings.

``Relay`` is the single object the CLI (and any embedding application)
builds. Collaborators can be injected for tests.
"""

from taskrelay.access import AccessPolicy
from taskrelay.config.settings import RelaySettings
from taskrelay.engine.classifier import WorkerMarkers
from taskrelay.engine.dispatcher import Dispatcher
from taskrelay.engine.plan_stream import PlanStreamController
from taskrelay.engine.planning import PlanningService
from taskrelay.engine.poller import DeploymentPoller
from taskrelay.engine.status_resolver import StatusResolver
from taskrelay.models.domain import Actor
from taskrelay.providers.base import IssueTracker
from taskrelay.providers.github_rest import GitHubIssueTracker
from taskrelay.providers.plan_stream import PlanStreamClient
from taskrelay.rendering.comments import CommentComposer
from taskrelay.storage.activity import ActivityLog
from taskrelay.storage.deployments import DeploymentStore
from taskrelay.storage.planning import PlanningStore
from taskrelay.storage.state_store import JsonStateStore
from taskrelay.storage.tasks import TaskStore


class Relay:
    """All deployment-core services sharing one state directory and tracker."""

    def __init__(
        self,
        settings: RelaySettings,
        tracker: IssueTracker | None = None,
        stream_client: PlanStreamClient | None = None,
    ) -> None:
        self.settings = settings
        self.markers = WorkerMarkers.from_config(settings.worker)

        if tracker is None:
            tracker = GitHubIssueTracker(
                token=settings.tracker.api_token.get_secret_value(),
                base_url=str(settings.tracker.base_url),
                read_attempts=settings.tracker.read_attempts,
            )
        self.tracker = tracker

        if stream_client is None:
            planning = settings.planning
            stream_client = PlanStreamClient(
                base_url=planning.stream_base_url,
                path=planning.stream_path,
                timeout=planning.timeout_seconds,
                token=planning.api_token.get_secret_value() if planning.api_token else None,
            )
        self.stream_client = stream_client

        self.state = JsonStateStore(settings.state_dir)
        self.deployments = DeploymentStore(self.state)
        self.tasks = TaskStore(self.state)
        self.planning_store = PlanningStore(self.state)
        self.activity = ActivityLog(self.state)
        self.access = AccessPolicy(self.tasks)
        self.composer = CommentComposer(self.markers)

        self.resolver = StatusResolver(self.tracker, self.deployments, self.tasks, self.access, self.markers)
        self.dispatcher = Dispatcher(
            self.tracker,
            self.deployments,
            self.tasks,
            self.planning_store,
            self.activity,
            self.access,
            self.composer,
            portal_url=settings.portal.projects_url,
        )
        self.poller = DeploymentPoller(
            self.resolver,
            self.deployments,
            interval=settings.polling.interval_seconds,
            failure_warning_threshold=settings.polling.failure_warning_threshold,
        )
        self.planning = PlanningService(
            self.planning_store,
            self.tasks,
            self.access,
            default_model=settings.planning.default_model,
            default_model_label=settings.planning.default_model_label,
        )

    def operator(self) -> Actor:
        """Actor configured for CLI use."""
        operator = self.settings.operator
        return Actor(id=operator.id, role=operator.role, project_ids=frozenset(operator.project_ids))

    def stream_controller(self) -> PlanStreamController:
        return PlanStreamController(self.stream_client, self.markers)

    async def close(self) -> None:
        await self.poller.stop_all()
        await self.stream_client.close()
        await self.tracker.close()
