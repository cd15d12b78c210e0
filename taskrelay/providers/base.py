"""
Abstract issue tracker interface.

The deployment core talks to the tracker only through ``IssueTracker``. Every
call is scoped by ``owner``/``repo`` because one tracker client serves every
repository link.
"""

from abc import ABC, abstractmethod

from taskrelay.models.domain import CreatedComment, CreatedIssue, DirectoryEntry, IssueComment


class IssueTracker(ABC):
    """Contract for issue tracker clients.

    Implementations raise ``UpstreamError`` for any failed API call, with the
    HTTP status code attached when one is known. Reads may be retried
    internally; creates are never retried.
    """

    @abstractmethod
    async def create_issue(self, owner: str, repo: str, title: str, body: str) -> CreatedIssue:
        """Open a new issue.

        Returns:
            Issue number and browser URL

        Raises:
            UpstreamError: If the API request fails
        """
        pass

    @abstractmethod
    async def create_issue_comment(self, owner: str, repo: str, issue_number: int, body: str) -> CreatedComment:
        """Post a comment on an existing issue.

        Raises:
            UpstreamError: If the API request fails
        """
        pass

    @abstractmethod
    async def list_issue_comments(self, owner: str, repo: str, issue_number: int) -> list[IssueComment]:
        """Return every comment of an issue, in the order the API delivers them.

        Callers sort before classification; no ordering is guaranteed here.

        Raises:
            UpstreamError: If the API request fails
        """
        pass

    @abstractmethod
    async def list_directory(self, owner: str, repo: str, path: str) -> list[DirectoryEntry]:
        """List a repository directory on the default branch.

        Returns:
            Entries of the directory, or an empty list if it does not exist

        Raises:
            UpstreamError: If the API request fails
        """
        pass

    async def close(self) -> None:
        """Release client resources."""
        return None
