"""Comment classification for worker status inference.

The worker reports progress only through free-text issue comments. This
module is the single place that turns comment text into a ``WorkerStatus``.
The marker strings it matches live in ``WorkerMarkers``, which the comment
composer also reads, so the strings we write and the strings we expect back
stay one contract.

Classification priority (first match wins):
    1. error marker          -> ERROR
    2. ``**Pull request:**``  -> PR_CREATED
    3. done marker           -> DONE_NO_CHANGES
    4. plan heading          -> PLAN_READY
    5. working marker        -> WORKING
    6. anything else         -> UNKNOWN

Example:
    >>> classify("**Agent failed** ... **Pull request:** https://github.com/o/r/pull/1")
    <WorkerStatus.ERROR: 'error'>
"""

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from taskrelay.config.settings import WorkerConfig
from taskrelay.enums import ContentType, WorkerStatus
from taskrelay.models.domain import IssueComment, WorkerComment

PR_URL_PATTERN = re.compile(r"\*\*Pull request:\*\*\s+(https://\S+)")

# Below this many characters a non-questions buffer is still undecided.
PLAN_MIN_LENGTH = 50


@dataclass(frozen=True)
class WorkerMarkers:
    """Marker strings shared by the classifier and the comment composer."""

    bot_login: str = "pts-worker[bot]"
    bot_handle: str = "@pts-worker"
    plan_directive: str = "/plan"
    cancel_directive: str = "/cancel"
    model_directive: str = "/model/"
    plan_heading: str = "## Implementation Plan"
    questions_heading: str = "## Clarifying Questions"
    error_markers: tuple[str, ...] = ("**Agent failed**", "**Budget limit**", "❌ Agent failed", "❌ Budget")
    working_markers: tuple[str, ...] = ("Agent working", "Planning...", "🔄", "Working on")
    done_markers: tuple[str, ...] = ("**No changes made**", "**Changes committed**")
    pr_url_pattern: re.Pattern[str] = field(default=PR_URL_PATTERN, compare=False)

    @classmethod
    def from_config(cls, config: WorkerConfig) -> "WorkerMarkers":
        return cls(
            bot_login=config.bot_login,
            bot_handle=config.bot_handle,
            plan_directive=config.plan_directive,
            cancel_directive=config.cancel_directive,
            model_directive=config.model_directive,
            plan_heading=config.plan_heading,
            questions_heading=config.questions_heading,
            error_markers=tuple(config.error_markers),
            working_markers=tuple(config.working_markers),
            done_markers=tuple(config.done_markers),
        )

    def is_bot(self, login: str) -> bool:
        return login == self.bot_login

    def is_command(self, body: str) -> bool:
        """Whether a human comment addresses the worker."""
        return self.bot_handle in body

    def directives(self, body: str) -> list[str]:
        """Slash tokens following the handle on the first line that mentions it."""
        for line in body.splitlines():
            if self.bot_handle in line:
                tail = line.split(self.bot_handle, 1)[1]
                return [token for token in tail.split() if token.startswith("/")]
        return []

    def expects_reply(self, body: str) -> bool:
        """Whether a human comment is a plan or implement command.

        Cancellation and casual mentions carry no model token.
        """
        return any(token.startswith(self.model_directive) for token in self.directives(body))


DEFAULT_MARKERS = WorkerMarkers()


def classify(body: str, markers: WorkerMarkers = DEFAULT_MARKERS) -> WorkerStatus:
    """Map one comment body to the status it implies.

    Pure and total: never raises and never returns ``CANCELLED``. The caller
    decides whether the author is trusted.
    """
    if any(marker in body for marker in markers.error_markers):
        return WorkerStatus.ERROR
    if markers.pr_url_pattern.search(body):
        return WorkerStatus.PR_CREATED
    if any(marker in body for marker in markers.done_markers):
        return WorkerStatus.DONE_NO_CHANGES
    if markers.plan_heading in body:
        return WorkerStatus.PLAN_READY
    if any(marker in body for marker in markers.working_markers):
        return WorkerStatus.WORKING
    return WorkerStatus.UNKNOWN


def sort_comments(comments: Iterable[IssueComment]) -> list[IssueComment]:
    """Chronological order; ties broken by comment id."""
    return sorted(comments, key=lambda c: (c.created_at, c.id))


def classify_feed(
    comments: Iterable[IssueComment], markers: WorkerMarkers = DEFAULT_MARKERS
) -> list[WorkerComment]:
    """Tag every comment of an issue feed with a status.

    Comments are sorted before tagging. Human comments are always
    ``UNKNOWN``. A bot ``WORKING`` comment becomes ``IMPLEMENTING`` when the
    nearest earlier human comment addressed to the bot did not ask for a plan,
    since the worker uses the same progress text for planning and for
    implementation.

    Args:
        comments: Raw issue comments in any order
        markers: Marker contract to classify with

    Returns:
        All comments, chronological, with ``status`` and ``is_bot`` set
    """
    feed: list[WorkerComment] = []
    for comment in sort_comments(comments):
        is_bot = markers.is_bot(comment.author_login)
        feed.append(
            WorkerComment(
                id=comment.id,
                body=comment.body,
                login=comment.author_login,
                avatar_url=comment.author_avatar_url,
                created_at=comment.created_at,
                html_url=comment.html_url,
                status=classify(comment.body, markers) if is_bot else WorkerStatus.UNKNOWN,
                is_bot=is_bot,
            )
        )

    last_command: str | None = None
    for item in feed:
        if not item.is_bot:
            if markers.is_command(item.body):
                last_command = item.body
            continue
        if item.status == WorkerStatus.WORKING and last_command is not None:
            if markers.plan_directive not in markers.directives(last_command):
                item.status = WorkerStatus.IMPLEMENTING

    return feed


def extract_pr_url(comments: Sequence[WorkerComment], markers: WorkerMarkers = DEFAULT_MARKERS) -> str | None:
    """URL from the last comment carrying a pull request reference.

    Independent of that comment's own classification, so an error comment
    that still links a PR yields the URL.
    """
    for comment in reversed(comments):
        match = markers.pr_url_pattern.search(comment.body)
        if match:
            return match.group(1)
    return None


def awaiting_worker(feed: Sequence[WorkerComment], markers: WorkerMarkers = DEFAULT_MARKERS) -> bool:
    """Whether a plan or implement command is newer than the worker's last comment."""
    for item in reversed(feed):
        if item.is_bot:
            return False
        if markers.expects_reply(item.body):
            return True
    return False


def detect_content_type(content: str, markers: WorkerMarkers = DEFAULT_MARKERS) -> ContentType:
    """Classify a planning document as questions, plan, or undecided."""
    if not content:
        return ContentType.UNKNOWN
    if content.lstrip().startswith(markers.questions_heading):
        return ContentType.QUESTIONS
    if len(content.strip()) > PLAN_MIN_LENGTH:
        return ContentType.PLAN
    return ContentType.UNKNOWN
