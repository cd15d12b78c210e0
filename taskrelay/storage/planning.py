"""Planning sessions, threads, and revisions.

Revisions are immutable. For each thread the stored versions are exactly
``1..N``; ``append_revision`` only accepts ``N + 1`` and checks it while
holding the revisions lock, so two generations racing on one thread cannot
both land.
"""

import structlog

from taskrelay.exceptions import NotFoundError, RevisionConflictError
from taskrelay.models.domain import PlanningSession, PlanRevision, PlanThread, new_id
from taskrelay.storage.state_store import JsonStateStore

log = structlog.get_logger(__name__)

SESSIONS = "planning_sessions"
THREADS = "plan_threads"
REVISIONS = "plan_revisions"


class PlanningStore:
    """Persisted planning records."""

    def __init__(self, state: JsonStateStore) -> None:
        self.state = state

    # Sessions

    async def find_active_session(self, task_id: str) -> PlanningSession | None:
        records = await self.state.load(SESSIONS)
        for data in records.values():
            if data["task_id"] == task_id and data["status"] == "active":
                return PlanningSession.from_dict(data)
        return None

    async def get_or_create_session(
        self, task_id: str, repository_link_id: str, created_by: str
    ) -> tuple[PlanningSession, bool]:
        """Return the task's active session, creating it when absent.

        Returns:
            ``(session, created)``
        """
        async with self.state.transaction(SESSIONS) as records:
            for data in records.values():
                if data["task_id"] == task_id and data["status"] == "active":
                    return PlanningSession.from_dict(data), False

            session = PlanningSession(
                id=new_id(),
                task_id=task_id,
                repository_link_id=repository_link_id,
                created_by=created_by,
            )
            records[session.id] = session.to_dict()

        log.info("planning_session_created", session_id=session.id, task_id=task_id)
        return session, True

    async def require_session(self, session_id: str) -> PlanningSession:
        data = await self.state.get(SESSIONS, session_id)
        if data is None:
            raise NotFoundError("planning_session", session_id)
        return PlanningSession.from_dict(data)

    # Threads

    async def add_thread(self, session_id: str, model: str, model_label: str) -> PlanThread:
        thread = PlanThread(id=new_id(), session_id=session_id, model=model, model_label=model_label)
        async with self.state.transaction(THREADS) as records:
            records[thread.id] = thread.to_dict()
        log.info("plan_thread_added", thread_id=thread.id, session_id=session_id, model=model)
        return thread

    async def require_thread(self, thread_id: str) -> PlanThread:
        data = await self.state.get(THREADS, thread_id)
        if data is None:
            raise NotFoundError("plan_thread", thread_id)
        return PlanThread.from_dict(data)

    async def list_threads(self, session_id: str) -> list[PlanThread]:
        records = await self.state.load(THREADS)
        return [PlanThread.from_dict(r) for r in records.values() if r["session_id"] == session_id]

    # Revisions

    async def list_revisions(self, thread_id: str) -> list[PlanRevision]:
        """All revisions of a thread, ascending by version."""
        records = await self.state.load(REVISIONS)
        revisions = [PlanRevision.from_dict(r) for r in records.values() if r["thread_id"] == thread_id]
        return sorted(revisions, key=lambda r: r.version)

    async def get_revision(self, thread_id: str, version: int) -> PlanRevision | None:
        for revision in await self.list_revisions(thread_id):
            if revision.version == version:
                return revision
        return None

    async def append_revision(
        self, thread_id: str, version: int, content: str, feedback: str | None = None
    ) -> PlanRevision:
        """Store the next revision of a thread.

        Raises:
            NotFoundError: If the thread does not exist
            RevisionConflictError: If ``version`` is not ``latest + 1``
        """
        await self.require_thread(thread_id)

        async with self.state.transaction(REVISIONS) as records:
            latest = max(
                (r["version"] for r in records.values() if r["thread_id"] == thread_id),
                default=0,
            )
            if version != latest + 1:
                log.warning(
                    "plan_revision_conflict",
                    thread_id=thread_id,
                    expected_version=latest + 1,
                    attempted_version=version,
                )
                raise RevisionConflictError(thread_id, latest + 1, version)

            revision = PlanRevision(
                id=new_id(),
                thread_id=thread_id,
                version=version,
                content=content,
                feedback=feedback,
            )
            records[revision.id] = revision.to_dict()

            async with self.state.transaction(THREADS) as threads:
                threads[thread_id]["current_version"] = version

        log.info("plan_revision_saved", thread_id=thread_id, version=version, length=len(content))
        return revision
