"""GitHub issue tracker implementation using PyGithub and REST API."""

import asyncio
from collections.abc import Callable
from typing import TypeVar

import structlog
from github import Auth, Github, GithubException, UnknownObjectException  # type: ignore[import-not-found]
from github.ContentFile import ContentFile as GHContentFile  # type: ignore[import-not-found]
from github.IssueComment import IssueComment as GHComment  # type: ignore[import-not-found]
from github.Repository import Repository as GHRepository  # type: ignore[import-not-found]

from taskrelay.exceptions import UpstreamError
from taskrelay.models.domain import CreatedComment, CreatedIssue, DirectoryEntry, IssueComment
from taskrelay.providers.base import IssueTracker
from taskrelay.utils.retry import async_retry

log = structlog.get_logger(__name__)

T = TypeVar("T")


async def _run_sync(func: Callable[[], T]) -> T:
    """Run a synchronous function in a thread pool.

    This prevents blocking the event loop when calling synchronous
    PyGithub methods.
    """
    return await asyncio.to_thread(func)


def _upstream_error(action: str, error: GithubException) -> UpstreamError:
    return UpstreamError(
        f"GitHub API error: {action} failed",
        status_code=error.status,
        response_text=str(error.data) if error.data else None,
    )


class GitHubIssueTracker(IssueTracker):
    """GitHub implementation using PyGithub library.

    Repository handles are looked up lazily and cached per ``owner/repo``.
    """

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.github.com",
        read_attempts: int = 3,
        client: Github | None = None,
    ):
        """Initialize GitHub tracker.

        Args:
            token: GitHub personal access token or App token
            base_url: GitHub API base URL (for GitHub Enterprise)
            read_attempts: Attempts for comment and directory listings
            client: Preconfigured PyGithub client (tests)
        """
        self.token = token.strip() if token else token
        # Normalize base_url by removing trailing slash (Pydantic HttpUrl adds it)
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._repos: dict[str, GHRepository] = {}

        retry = async_retry(max_attempts=read_attempts, exceptions=(GithubException,))
        self._fetch_comments = retry(self._fetch_comments_once)
        self._fetch_directory = retry(self._fetch_directory_once)

    @property
    def client(self) -> Github:
        if self._client is None:
            self._client = Github(auth=Auth.Token(self.token), base_url=self.base_url)
        return self._client

    async def _get_repo(self, owner: str, repo: str) -> GHRepository:
        full_name = f"{owner}/{repo}"
        if full_name not in self._repos:
            self._repos[full_name] = await _run_sync(lambda: self.client.get_repo(full_name))
        return self._repos[full_name]

    async def close(self) -> None:
        """Close GitHub client."""
        if self._client:
            await _run_sync(self._client.close)
            self._client = None
            self._repos.clear()

    async def create_issue(self, owner: str, repo: str, title: str, body: str) -> CreatedIssue:
        """Create a new issue."""
        log.info("create_issue", repo=f"{owner}/{repo}", title=title)

        try:
            gh_repo = await self._get_repo(owner, repo)
            gh_issue = await _run_sync(lambda: gh_repo.create_issue(title=title, body=body))
        except GithubException as e:
            log.error("github_create_issue_failed", repo=f"{owner}/{repo}", status=e.status, error=str(e))
            raise _upstream_error("create issue", e) from e

        return CreatedIssue(number=gh_issue.number, html_url=gh_issue.html_url)

    async def create_issue_comment(self, owner: str, repo: str, issue_number: int, body: str) -> CreatedComment:
        """Add comment to issue."""
        log.info("add_comment", repo=f"{owner}/{repo}", number=issue_number)

        try:
            gh_repo = await self._get_repo(owner, repo)

            def _add_comment() -> GHComment:
                gh_issue = gh_repo.get_issue(issue_number)
                return gh_issue.create_comment(body)

            gh_comment = await _run_sync(_add_comment)
        except GithubException as e:
            log.error("github_add_comment_failed", number=issue_number, status=e.status, error=str(e))
            raise _upstream_error("post comment", e) from e

        return CreatedComment(id=gh_comment.id, html_url=gh_comment.html_url)

    async def list_issue_comments(self, owner: str, repo: str, issue_number: int) -> list[IssueComment]:
        """Retrieve all comments for an issue."""
        log.debug("get_comments", repo=f"{owner}/{repo}", number=issue_number)

        try:
            gh_comments = await self._fetch_comments(owner, repo, issue_number)
        except GithubException as e:
            log.error("github_get_comments_failed", number=issue_number, status=e.status, error=str(e))
            raise _upstream_error("list comments", e) from e

        return [self._convert_comment(c) for c in gh_comments]

    async def _fetch_comments_once(self, owner: str, repo: str, issue_number: int) -> list[GHComment]:
        gh_repo = await self._get_repo(owner, repo)

        def _get_comments() -> list[GHComment]:
            gh_issue = gh_repo.get_issue(issue_number)
            return list(gh_issue.get_comments())

        return await _run_sync(_get_comments)

    async def list_directory(self, owner: str, repo: str, path: str) -> list[DirectoryEntry]:
        """List directory contents; a missing directory is empty."""
        log.debug("list_directory", repo=f"{owner}/{repo}", path=path)

        try:
            contents = await self._fetch_directory(owner, repo, path)
        except GithubException as e:
            log.error("github_list_directory_failed", path=path, status=e.status, error=str(e))
            raise _upstream_error("list directory", e) from e

        return [DirectoryEntry(name=c.name, path=c.path, type=c.type) for c in contents]

    async def _fetch_directory_once(self, owner: str, repo: str, path: str) -> list[GHContentFile]:
        gh_repo = await self._get_repo(owner, repo)

        def _get_contents() -> list[GHContentFile]:
            try:
                contents = gh_repo.get_contents(path)
            except UnknownObjectException:
                return []
            # A file path yields a single ContentFile, not a listing
            if not isinstance(contents, list):
                return []
            return contents

        return await _run_sync(_get_contents)

    def _convert_comment(self, gh_comment: GHComment) -> IssueComment:
        """Convert GitHub Comment to our IssueComment model."""
        user = gh_comment.user
        return IssueComment(
            id=gh_comment.id,
            body=gh_comment.body or "",
            author_login=user.login if user else "unknown",
            author_avatar_url=user.avatar_url if user else "",
            created_at=gh_comment.created_at,
            html_url=gh_comment.html_url,
        )
