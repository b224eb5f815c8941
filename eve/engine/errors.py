"""Exception hierarchy for the workspace server.

Every error that can reach a client is an EveError subclass whose
str() is the user-facing message. The websocket hub turns these into
a single ``error`` (or ``file_error``) frame.
"""
from __future__ import annotations


class EveError(Exception):
    """Base exception for all workspace server errors."""


class SessionNotFoundError(EveError):
    """Requested session is neither live nor on disk."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class ProjectNotFoundError(EveError):
    """Requested project is not registered."""
    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"Project not found: {project_id}")


class TaskNotFoundError(EveError):
    """Requested task is not in the project's manifest."""
    def __init__(self, project_id: str, task_id: str):
        self.project_id = project_id
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found in project {project_id}")


class AttachmentValidationError(EveError):
    """One or more attachments on a user turn were rejected."""
    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("Invalid attachments: " + "; ".join(errors))


class ProviderDisabledError(EveError):
    """The provider serving a model is switched off in settings."""
    def __init__(self, provider_name: str, model: str):
        self.provider_name = provider_name
        self.model = model
        super().__init__(
            f"Provider '{provider_name}' is disabled (model {model})"
        )


class SessionBusyError(EveError):
    """A turn is already in flight on the session."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(
            "Please wait for the current response to complete"
        )


class SessionTransferredError(EveError):
    """The session's conversation now lives in a CLI terminal."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(
            "This session was transferred to a CLI terminal. "
            "Use /clear to start a new web conversation."
        )


class ProviderSpawnError(EveError):
    """A provider backend could not be started or reached."""
    def __init__(self, provider_name: str, reason: str):
        self.provider_name = provider_name
        self.reason = reason
        super().__init__(f"Failed to start {provider_name}: {reason}")


class FileServiceError(EveError):
    """A file operation was refused or failed."""


class PathValidationError(FileServiceError):
    """A path resolved outside the project root."""
    def __init__(self, path: str):
        self.path = path
        super().__init__("Path traversal not allowed")


class TaskTimeoutError(EveError):
    """A headless task run exceeded its time budget."""
    def __init__(self, task_id: str, timeout_seconds: float):
        self.task_id = task_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Task {task_id} timed out after {timeout_seconds:g}s"
        )


class PermissionTimeoutError(EveError):
    """Nobody answered a tool permission prompt in time."""
    def __init__(self, request_id: str, timeout_seconds: float):
        self.request_id = request_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Permission request {request_id} timed out "
            f"after {timeout_seconds:g}s"
        )


class TerminalSpawnError(EveError):
    """A pseudo-terminal child could not be started."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to start terminal '{command}': {reason}")
