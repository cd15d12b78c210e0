"""Revision browsing and deploy linkage for planning threads.

Labels count plans and question documents independently: a thread whose
revisions are ``[plan, questions, plan]`` reads ``v1, Q, v2``. The first
question document is ``Q``, later ones ``Q2``, ``Q3``, ...
"""

from collections.abc import Sequence

from taskrelay.engine.classifier import DEFAULT_MARKERS, WorkerMarkers, detect_content_type
from taskrelay.enums import ContentType, VersionDeployStatus, WorkerStatus
from taskrelay.models.domain import Deployment, PlanRevision, VersionMeta


def deploy_status_for_version(
    deployments: Sequence[Deployment], thread_id: str, version: int
) -> VersionDeployStatus:
    """Deploy status of one revision, derived from the deployments that reference it."""
    matching = [d for d in deployments if d.plan_thread_id == thread_id and d.plan_version == version]
    if not matching:
        return VersionDeployStatus.NONE
    if any(d.pr_url or d.status == WorkerStatus.PR_CREATED for d in matching):
        return VersionDeployStatus.PR_CREATED
    return VersionDeployStatus.DISPATCHED


def _questions_label(count: int) -> str:
    return "Q" if count == 1 else f"Q{count}"


def build_version_meta(
    revisions: Sequence[PlanRevision],
    deployments: Sequence[Deployment],
    thread_id: str,
    generating_version: int | None = None,
    generating_content_type: ContentType = ContentType.UNKNOWN,
    markers: WorkerMarkers = DEFAULT_MARKERS,
) -> list[VersionMeta]:
    """Label each revision and attach its deploy status.

    A version still being generated is appended with the label its stream
    content implies so far; it is never deployed.
    """
    meta: list[VersionMeta] = []
    plans = 0
    questions = 0

    for revision in sorted(revisions, key=lambda r: r.version):
        is_questions = detect_content_type(revision.content, markers) == ContentType.QUESTIONS
        if is_questions:
            questions += 1
            label = _questions_label(questions)
        else:
            plans += 1
            label = f"v{plans}"
        meta.append(
            VersionMeta(
                version=revision.version,
                label=label,
                is_questions=is_questions,
                deploy_status=deploy_status_for_version(deployments, thread_id, revision.version),
            )
        )

    if generating_version is not None and all(m.version != generating_version for m in meta):
        is_questions = generating_content_type == ContentType.QUESTIONS
        if is_questions:
            questions += 1
            label = _questions_label(questions)
        else:
            plans += 1
            label = f"v{plans}"
        meta.append(
            VersionMeta(
                version=generating_version,
                label=label,
                is_questions=is_questions,
                deploy_status=VersionDeployStatus.NONE,
            )
        )

    return meta


class RevisionNavigator:
    """Cursor over the revisions of one thread.

    ``current_version`` is always within ``[1, latest_version]`` once the
    thread has revisions, and 0 while it has none.
    """

    def __init__(
        self,
        thread_id: str,
        revisions: Sequence[PlanRevision] = (),
        deployments: Sequence[Deployment] = (),
        markers: WorkerMarkers = DEFAULT_MARKERS,
    ) -> None:
        self.thread_id = thread_id
        self.markers = markers
        self.revisions: list[PlanRevision] = []
        self.deployments: list[Deployment] = list(deployments)
        self.current_version = 0
        self.generating_version: int | None = None
        self.generating_content_type = ContentType.UNKNOWN
        self.refresh(revisions)

    @property
    def latest_version(self) -> int:
        return self.revisions[-1].version if self.revisions else 0

    def refresh(self, revisions: Sequence[PlanRevision], deployments: Sequence[Deployment] | None = None) -> None:
        """Replace the revision list and jump to the newest revision."""
        self.revisions = sorted(revisions, key=lambda r: r.version)
        if deployments is not None:
            self.deployments = list(deployments)
        self.current_version = self.latest_version

    def navigate_to(self, version: int) -> int:
        """Move to ``version``, clamped to ``[1, latest_version]``."""
        if self.latest_version == 0:
            self.current_version = 0
        else:
            self.current_version = max(1, min(version, self.latest_version))
        return self.current_version

    def previous(self) -> int:
        return self.navigate_to(self.current_version - 1)

    def next(self) -> int:
        return self.navigate_to(self.current_version + 1)

    @property
    def has_previous(self) -> bool:
        return self.current_version > 1

    @property
    def has_next(self) -> bool:
        return self.current_version < self.latest_version

    @property
    def current_revision(self) -> PlanRevision | None:
        for revision in self.revisions:
            if revision.version == self.current_version:
                return revision
        return None

    @property
    def is_viewing_old_version(self) -> bool:
        return self.generating_version is None and 0 < self.current_version < self.latest_version

    def version_meta(self) -> list[VersionMeta]:
        return build_version_meta(
            self.revisions,
            self.deployments,
            self.thread_id,
            self.generating_version,
            self.generating_content_type,
            self.markers,
        )

    @property
    def current_meta(self) -> VersionMeta | None:
        for meta in self.version_meta():
            if meta.version == self.current_version:
                return meta
        return None

    @property
    def current_label(self) -> str:
        meta = self.current_meta
        return meta.label if meta else f"v{self.current_version}"

    @property
    def current_version_dispatched(self) -> bool:
        meta = self.current_meta
        return meta is not None and meta.deploy_status != VersionDeployStatus.NONE

    def begin_generation(self) -> int:
        """Reserve the next version for an in-flight generation."""
        self.generating_version = self.latest_version + 1
        self.generating_content_type = ContentType.UNKNOWN
        return self.generating_version

    def update_generation(self, content_type: ContentType) -> None:
        self.generating_content_type = content_type

    def end_generation(self, revisions: Sequence[PlanRevision] | None = None) -> None:
        """Clear the in-flight version; refresh when a revision was saved."""
        self.generating_version = None
        self.generating_content_type = ContentType.UNKNOWN
        if revisions is not None:
            self.refresh(revisions)
