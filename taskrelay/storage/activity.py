"""Audit log for dispatch calls.

Every dispatch writes one ``ActivityEvent``: appended to the ``activity``
collection and emitted through structlog. Recording is not best-effort; a
failed write propagates to the caller.
"""

from dataclasses import dataclass, field
from typing import Any

import structlog

from taskrelay.models.domain import ActivityEvent, Actor, Task, new_id
from taskrelay.storage.state_store import JsonStateStore

log = structlog.get_logger(__name__)

COLLECTION = "activity"

WORKER_PLAN_REQUESTED = "worker.plan_requested"
WORKER_IMPLEMENT_REQUESTED = "worker.implement_requested"
WORKER_CANCELLED = "worker.cancelled"


@dataclass
class EventSpec:
    """Verb, summary and metadata of an event before actor and target are attached."""

    verb: str
    summary: str
    metadata: dict[str, Any] = field(default_factory=dict)


def worker_plan_requested(task_title: str, model: str, repo_full_name: str, issue_number: int) -> EventSpec:
    return EventSpec(
        verb=WORKER_PLAN_REQUESTED,
        summary=f'Requested worker plan for "{task_title}" on {repo_full_name}#{issue_number}',
        metadata={"model": model, "repo_full_name": repo_full_name, "issue_number": issue_number},
    )


def worker_implement_requested(
    task_title: str,
    model: str,
    repo_full_name: str,
    issue_number: int,
    has_custom_prompt: bool,
) -> EventSpec:
    return EventSpec(
        verb=WORKER_IMPLEMENT_REQUESTED,
        summary=f'Requested worker implementation for "{task_title}" on {repo_full_name}#{issue_number}',
        metadata={
            "model": model,
            "repo_full_name": repo_full_name,
            "issue_number": issue_number,
            "has_custom_prompt": has_custom_prompt,
        },
    )


def worker_cancelled(task_title: str, repo_full_name: str, issue_number: int) -> EventSpec:
    return EventSpec(
        verb=WORKER_CANCELLED,
        summary=f'Cancelled worker deployment for "{task_title}" on {repo_full_name}#{issue_number}',
        metadata={"repo_full_name": repo_full_name, "issue_number": issue_number},
    )


class ActivityLog:
    """Append-only audit store."""

    def __init__(self, state: JsonStateStore) -> None:
        self.state = state

    async def record(
        self,
        actor: Actor,
        task: Task,
        spec: EventSpec,
        extra: dict[str, Any] | None = None,
    ) -> ActivityEvent:
        """Persist and log one event targeting a task.

        Args:
            actor: User who performed the dispatch
            task: Target task
            spec: Event produced by one of the factories above
            extra: Additional metadata merged over the factory's

        Returns:
            The stored event
        """
        event = ActivityEvent(
            verb=spec.verb,
            summary=spec.summary,
            actor_id=actor.id,
            actor_role=actor.role,
            target_type="task",
            target_id=task.id,
            target_project_id=task.project_id,
            target_client_id=task.client_id,
            metadata={**spec.metadata, **(extra or {})},
        )

        async with self.state.transaction(COLLECTION) as records:
            records[new_id()] = event.to_dict()

        log.info(
            "activity_recorded",
            verb=event.verb,
            summary=event.summary,
            actor_id=event.actor_id,
            task_id=event.target_id,
            **event.metadata,
        )
        return event

    async def list_for_task(self, task_id: str) -> list[ActivityEvent]:
        records = await self.state.load(COLLECTION)
        return [ActivityEvent(**r) for r in records.values() if r["target_id"] == task_id]
