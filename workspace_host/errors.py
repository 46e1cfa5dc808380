"""Failure taxonomy for command execution and proxying.

Every error carries the exit code reported to the client. The orchestrator
and the gateway convert these into failed results; nothing here should reach
the client as a traceback.
"""


class WorkspaceHostError(Exception):
    exit_code = 1

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.message = message
        if exit_code is not None:
            self.exit_code = exit_code


class ValidationError(WorkspaceHostError):
    """Missing or malformed command / repository id."""


class PathError(WorkspaceHostError):
    """``cd`` target does not exist or is not a directory."""


class SpawnError(WorkspaceHostError):
    """The OS refused to create the child process."""


class ExecutionTimeout(WorkspaceHostError):
    """Wall-clock cap exceeded; the process group was killed."""

    exit_code = 124


class GuardRejection(WorkspaceHostError):
    """Server launch refused for a missing or empty repository."""


class UpstreamUnreachable(WorkspaceHostError):
    """Nothing answered on the proxied port."""

    def __init__(self, port: int, reason: str = ""):
        message = f"Cannot reach server on port {port}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, exit_code=1)
        self.port = port


class DeploymentError(WorkspaceHostError):
    """Full-preview build or rollout failed."""
