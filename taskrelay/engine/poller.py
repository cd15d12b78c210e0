"""
Fixed-interval status polling per deployment.

Each watched deployment gets its own loop that calls the status resolver,
sleeps ``interval`` seconds, and repeats until the persisted status stops
polling (``plan_ready`` or a final status) and no command is waiting for the
worker's answer. A deployment already in such a status is fetched once.

Failure Handling:
    ``UpstreamError`` counts as "no update this cycle" and the loop keeps
    going. After ``failure_warning_threshold`` consecutive failures the poll
    state carries a warning until the next success. ``NotFoundError`` and
    ``ForbiddenError`` end the loop.

Stopping a loop only stops watching. To stop the worker, use
``Dispatcher.cancel``.

Example:
    >>> poller = DeploymentPoller(resolver, deployments, interval=10.0)
    >>> poller.start(actor, deployment_id, on_update=print)
    >>> state = await poller.wait(deployment_id)
"""

import asyncio
import inspect
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

import structlog

from taskrelay.engine.status_resolver import StatusResolver
from taskrelay.exceptions import ForbiddenError, NotFoundError, UpstreamError
from taskrelay.models.domain import Actor, WorkerStatusResult
from taskrelay.storage.deployments import DeploymentStore

log = structlog.get_logger(__name__)

UpdateCallback = Callable[["PollState"], Any]


@dataclass
class PollState:
    """What a watcher knows about one deployment."""

    deployment_id: str
    result: WorkerStatusResult | None = None
    """Last successful resolve, kept across failed cycles."""

    polls: int = 0
    consecutive_failures: int = 0
    last_error: str | None = None
    warning: str | None = None
    """Set once failures reach the warning threshold; cleared on success."""

    stopped_reason: str | None = None
    """Why polling ended (``terminal``, ``not_found``, ``forbidden``, ``stopped``,
    ``fetched_once``); None while active."""

    @property
    def is_done(self) -> bool:
        return self.stopped_reason is not None


class DeploymentPoller:
    """Run and track per-deployment polling loops."""

    def __init__(
        self,
        resolver: StatusResolver,
        deployments: DeploymentStore,
        interval: float = 10.0,
        failure_warning_threshold: int = 3,
    ) -> None:
        self.resolver = resolver
        self.deployments = deployments
        self.interval = interval
        self.failure_warning_threshold = failure_warning_threshold
        self._tasks: dict[str, asyncio.Task[PollState]] = {}
        self._states: dict[str, PollState] = {}

    def get_state(self, deployment_id: str) -> PollState | None:
        return self._states.get(deployment_id)

    def is_polling(self, deployment_id: str) -> bool:
        task = self._tasks.get(deployment_id)
        return task is not None and not task.done()

    async def watch(
        self,
        actor: Actor,
        deployment_id: str,
        on_update: UpdateCallback | None = None,
    ) -> PollState:
        """Poll one deployment in the current task until it stops.

        Args:
            actor: Caller, checked on every resolve
            deployment_id: Deployment to watch
            on_update: Called (and awaited, if it returns an awaitable)
                after every cycle, successful or not

        Returns:
            Final poll state with ``stopped_reason`` set
        """
        state = PollState(deployment_id=deployment_id)
        self._states[deployment_id] = state
        return await self._watch(actor, state, on_update)

    async def _watch(self, actor: Actor, state: PollState, on_update: UpdateCallback | None) -> PollState:
        deployment_id = state.deployment_id
        log.info("deployment_poll_started", deployment_id=deployment_id, interval=self.interval)

        try:
            while not await self._poll_once(actor, state, on_update):
                await asyncio.sleep(self.interval)
        except asyncio.CancelledError:
            state.stopped_reason = "stopped"
            log.info("deployment_poll_cancelled", deployment_id=deployment_id, polls=state.polls)
            raise

        log.info(
            "deployment_poll_finished",
            deployment_id=deployment_id,
            reason=state.stopped_reason,
            polls=state.polls,
            status=str(state.result.deployment_status) if state.result else None,
        )
        return state

    def start(
        self,
        actor: Actor,
        deployment_id: str,
        on_update: UpdateCallback | None = None,
    ) -> asyncio.Task[PollState]:
        """Watch a deployment in a background task.

        A deployment already being polled keeps its existing loop.
        """
        existing = self._tasks.get(deployment_id)
        if existing is not None and not existing.done():
            return existing

        state = PollState(deployment_id=deployment_id)
        self._states[deployment_id] = state
        task = asyncio.create_task(self._watch(actor, state, on_update), name=f"poll-{deployment_id}")
        self._tasks[deployment_id] = task
        return task

    async def stop(self, deployment_id: str) -> bool:
        """Stop watching a deployment. Returns True if a loop was running."""
        task = self._tasks.pop(deployment_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.wait({task})
        return True

    async def stop_all(self) -> None:
        for deployment_id in list(self._tasks):
            await self.stop(deployment_id)

    async def wait(self, deployment_id: str) -> PollState:
        """Wait for a background loop to end and return its state.

        Raises:
            KeyError: If the deployment was never started
        """
        task = self._tasks[deployment_id]
        await asyncio.wait({task})
        return self._states[deployment_id]

    async def poll_task(
        self,
        actor: Actor,
        task_id: str,
        expanded: Iterable[str] = (),
        on_update: UpdateCallback | None = None,
    ) -> dict[str, PollState]:
        """Watch a task's deployments with bounded fan-out.

        Only the most recent deployment that still needs polling is polled
        continuously, together with any ``expanded`` deployment ids. Every
        other deployment is fetched once, and any loop left running for it is
        stopped.

        Returns:
            Poll state per deployment id, oldest deployment first
        """
        await self.resolver.access.ensure_task_access(actor, task_id)
        deployments = await self.deployments.list_for_task(task_id)
        expanded_ids = set(expanded)

        active_id = None
        for deployment in reversed(deployments):
            if not deployment.status.stops_polling:
                active_id = deployment.id
                break

        states: dict[str, PollState] = {}
        for deployment in deployments:
            if deployment.id == active_id or deployment.id in expanded_ids:
                self.start(actor, deployment.id, on_update)
                states[deployment.id] = self._states[deployment.id]
                continue

            await self.stop(deployment.id)
            state = PollState(deployment_id=deployment.id)
            await self._poll_once(actor, state, on_update)
            state.stopped_reason = state.stopped_reason or "fetched_once"
            self._states[deployment.id] = state
            states[deployment.id] = state

        log.info(
            "task_poll_planned",
            task_id=task_id,
            deployments=len(deployments),
            active_deployment_id=active_id,
            expanded=sorted(expanded_ids),
        )
        return states

    async def _poll_once(self, actor: Actor, state: PollState, on_update: UpdateCallback | None) -> bool:
        """Run one resolve cycle. Returns True when polling should stop."""
        stop = False
        try:
            result = await self.resolver.resolve(actor, state.deployment_id)
        except UpstreamError as e:
            state.consecutive_failures += 1
            state.last_error = str(e)
            log.warning(
                "deployment_poll_failed",
                deployment_id=state.deployment_id,
                consecutive_failures=state.consecutive_failures,
                error=str(e),
            )
            if state.consecutive_failures >= self.failure_warning_threshold:
                state.warning = (
                    f"Worker status could not be refreshed {state.consecutive_failures} times in a row: {e.message}"
                )
        except NotFoundError as e:
            state.last_error = e.message
            state.stopped_reason = "not_found"
            stop = True
        except ForbiddenError as e:
            state.last_error = e.message
            state.stopped_reason = "forbidden"
            stop = True
        else:
            state.result = result
            state.polls += 1
            state.consecutive_failures = 0
            state.last_error = None
            state.warning = None
            status = result.deployment_status
            if status.is_final or (status.stops_polling and not result.awaiting_worker):
                state.stopped_reason = "terminal"
                stop = True

        if on_update is not None:
            outcome = on_update(state)
            if inspect.isawaitable(outcome):
                await outcome
        return stop
