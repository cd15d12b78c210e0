"""
Planning sessions, threads, and revision generation.

A task has at most one active planning session. The session owns one thread
per model the human picked; the first call creates a default thread. Each
thread holds gapless, immutable revisions ``v1..vN``.

``generate_revision`` ties the stream controller to storage: it requests
version ``current_version + 1`` and saves the buffer only when the stream
finished cleanly. A failed or cancelled generation writes nothing.
"""

import asyncio

import structlog

from taskrelay.access import AccessPolicy
from taskrelay.engine.plan_stream import EventCallback, PlanStreamController
from taskrelay.exceptions import ValidationError
from taskrelay.models.domain import (
    Actor,
    PlanningSessionData,
    PlanRevision,
    PlanStreamRequest,
    PlanStreamState,
    PlanThread,
    Task,
)
from taskrelay.models.requests import AddThreadRequest, SaveRevisionRequest, SessionRequest, parse_request
from taskrelay.storage.planning import PlanningStore
from taskrelay.storage.tasks import TaskStore

log = structlog.get_logger(__name__)

DEFAULT_THREAD_MODEL = "claude-sonnet-4.6"
DEFAULT_THREAD_LABEL = "Sonnet 4.6"


class PlanningService:
    """Session, thread, and revision operations."""

    def __init__(
        self,
        store: PlanningStore,
        tasks: TaskStore,
        access: AccessPolicy,
        default_model: str = DEFAULT_THREAD_MODEL,
        default_model_label: str = DEFAULT_THREAD_LABEL,
    ) -> None:
        self.store = store
        self.tasks = tasks
        self.access = access
        self.default_model = default_model
        self.default_model_label = default_model_label
        self._session_lock = asyncio.Lock()

    async def get_or_create_session(self, actor: Actor, task_id: str, repository_link_id: str) -> PlanningSessionData:
        """Return the task's active session, creating it with a default thread.

        Serialized, so concurrent callers never create two sessions for one
        task and never see a new session before its default thread exists.

        Raises:
            ValidationError: Malformed input, or the link belongs to another project
            NotFoundError: Task or repository link missing
            ForbiddenError: Actor lacks task access
        """
        request = parse_request(SessionRequest, task_id=task_id, repository_link_id=repository_link_id)
        task = await self.access.ensure_task_access(actor, request.task_id)
        link = await self.tasks.require_link(request.repository_link_id)
        if link.project_id != task.project_id:
            raise ValidationError("Repository does not belong to this project.")

        async with self._session_lock:
            session, created = await self.store.get_or_create_session(task.id, link.id, actor.id)
            threads = await self.store.list_threads(session.id)
            if not threads:
                threads = [await self.store.add_thread(session.id, self.default_model, self.default_model_label)]

        if created:
            log.info("planning_session_opened", session_id=session.id, task_id=task.id)
        return PlanningSessionData(session=session, threads=threads)

    async def add_thread(self, actor: Actor, session_id: str, model: str, model_label: str) -> PlanThread:
        """Add an empty thread (``current_version = 0``) to a session."""
        request = parse_request(AddThreadRequest, session_id=session_id, model=model, model_label=model_label)
        session = await self.store.require_session(request.session_id)
        await self.access.ensure_task_access(actor, session.task_id)
        return await self.store.add_thread(session.id, request.model, request.model_label)

    async def fetch_revisions(self, actor: Actor, thread_id: str) -> list[PlanRevision]:
        """All revisions of a thread, ascending by version."""
        await self._authorize_thread(actor, thread_id)
        return await self.store.list_revisions(thread_id)

    async def get_revision(self, thread_id: str, version: int) -> PlanRevision | None:
        return await self.store.get_revision(thread_id, version)

    async def save_revision(
        self, thread_id: str, version: int, content: str, feedback: str | None = None
    ) -> PlanRevision:
        """Store revision ``version`` of a thread.

        Raises:
            ValidationError: Malformed input
            RevisionConflictError: ``version`` is not ``latest + 1``
        """
        request = parse_request(
            SaveRevisionRequest, thread_id=thread_id, version=version, content=content, feedback=feedback
        )
        return await self.store.append_revision(request.thread_id, request.version, request.content, request.feedback)

    async def generate_revision(
        self,
        actor: Actor,
        controller: PlanStreamController,
        thread_id: str,
        feedback: str | None = None,
        on_event: EventCallback | None = None,
    ) -> tuple[PlanStreamState, PlanRevision | None]:
        """Stream the next revision of a thread and save it on clean completion.

        Returns:
            Final stream state and the saved revision (None unless finished)

        Raises:
            NotFoundError: Thread, session, task, or link missing
            ForbiddenError: Actor lacks task access
            RevisionConflictError: Another revision landed while streaming
        """
        thread, task = await self._authorize_thread(actor, thread_id)
        session = await self.store.require_session(thread.session_id)
        revisions = await self.store.list_revisions(thread.id)
        current_version = revisions[-1].version if revisions else 0

        request = PlanStreamRequest(
            thread_id=thread.id,
            repository_link_id=session.repository_link_id,
            task_title=task.title,
            task_description=task.description,
            model=thread.model,
            current_version=current_version,
            feedback=feedback if current_version else None,
        )
        state = await controller.generate(request, on_event)

        if not state.finished or state.cancelled or state.error or not state.content.strip():
            log.info(
                "plan_revision_discarded",
                thread_id=thread.id,
                cancelled=state.cancelled,
                error=state.error,
            )
            return state, None

        revision = await self.save_revision(thread.id, current_version + 1, state.content, request.feedback)
        return state, revision

    async def _authorize_thread(self, actor: Actor, thread_id: str) -> tuple[PlanThread, Task]:
        thread = await self.store.require_thread(thread_id)
        session = await self.store.require_session(thread.session_id)
        task = await self.access.ensure_task_access(actor, session.task_id)
        return thread, task
