"""Custom exception hierarchy for the task-relay deployment core.

Every failure in this package is scoped to one deployment, one revision
generation, or one dispatch call. Nothing here is fatal to the process.

Exception Hierarchy:
    TaskRelayError (base)
    ├── ConfigurationError
    ├── NotFoundError
    ├── ForbiddenError
    ├── ValidationError
    │   └── RevisionConflictError
    └── UpstreamError
        └── PartialDispatchError

Example Usage:
    >>> from taskrelay.exceptions import NotFoundError
    >>> try:
    ...     deployment = await store.require(deployment_id)
    ... except NotFoundError as e:
    ...     click.echo(f"Error: {e.message}", err=True)
"""


class TaskRelayError(Exception):
    """Base exception for all task-relay errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(TaskRelayError):
    """Configuration file is missing, unreadable, or invalid."""

    pass


class NotFoundError(TaskRelayError):
    """A deployment, task, repository link, thread, or revision is missing.

    Surfaced to the caller as-is. Retrying will not help.

    Attributes:
        resource: Kind of record that was missing (e.g. "deployment")
        resource_id: Identifier that was looked up
    """

    def __init__(self, resource: str, resource_id: str | int | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        label = resource.replace("_", " ").capitalize()
        super().__init__(f"{label} not found.")


class ForbiddenError(TaskRelayError):
    """The actor lacks access to the task that owns the record."""

    def __init__(self, message: str = "Permission denied.") -> None:
        super().__init__(message)


class ValidationError(TaskRelayError):
    """Malformed input or a request the current record state does not allow.

    Always raised before any external side effect.

    Attributes:
        errors: Optional field-level details from request parsing
    """

    def __init__(self, message: str = "Invalid payload.", errors: list[dict] | None = None) -> None:
        self.errors = errors or []
        super().__init__(message)


class RevisionConflictError(ValidationError):
    """A revision write did not target ``latest_version + 1`` for its thread.

    Raised when two generations race on the same thread. The losing write is
    rejected; nothing is overwritten.

    Attributes:
        thread_id: Thread the write targeted
        expected_version: Version the store would have accepted
        attempted_version: Version the caller tried to write
    """

    def __init__(self, thread_id: str, expected_version: int, attempted_version: int) -> None:
        self.thread_id = thread_id
        self.expected_version = expected_version
        self.attempted_version = attempted_version
        super().__init__(
            f"Revision v{attempted_version} conflicts with thread {thread_id} "
            f"(next version is v{expected_version})"
        )


class UpstreamError(TaskRelayError):
    """The issue tracker or the plan stream service call failed.

    Deployment and revision state is left unchanged, so retrying is safe.

    Attributes:
        status_code: HTTP status code (if applicable)
        response_text: Response body text (if applicable)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            status_code: HTTP status code (if applicable)
            response_text: Response body text (if applicable)
        """
        self.status_code = status_code
        self.response_text = response_text

        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"

        super().__init__(full_message)
        # Preserve original message
        self.message = message


class PartialDispatchError(UpstreamError):
    """The issue exists but the command comment could not be posted.

    The deployment row is kept with ``command_posted=False``; callers retry by
    re-posting the comment against the existing issue rather than creating a
    new one.

    Attributes:
        deployment_id: Deployment created for the issue
        issue_number: Tracker issue that already exists
    """

    def __init__(
        self,
        message: str,
        deployment_id: str,
        issue_number: int,
        status_code: int | None = None,
    ) -> None:
        self.deployment_id = deployment_id
        self.issue_number = issue_number
        super().__init__(message, status_code=status_code)
