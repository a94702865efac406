"""
Exceptions raised by personaflow.

Role failures inside a run are captured into StageResult.role_errors;
these exceptions cover loading, validation and lookup problems.
"""


class PersonaFlowError(Exception):
    """Base class for all personaflow errors."""


class WorkflowValidationError(PersonaFlowError, ValueError):
    """Raised when a workflow definition is structurally invalid."""

    def __init__(self, message: str, errors=None):
        self.errors = list(errors or [])
        super().__init__(message)


class ContextError(PersonaFlowError):
    """Raised on invalid shared context operations."""


class MarketplaceError(PersonaFlowError):
    """Raised when a marketplace or plugin cannot be loaded."""


class CommandNotFoundError(PersonaFlowError, KeyError):
    """Raised when a slash-command is not registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown command: /{name}")

    def __str__(self) -> str:
        return f"Unknown command: /{self.name}"


class AgentNotFoundError(PersonaFlowError):
    """Raised when no agent can serve a role."""

    def __init__(self, role: str):
        self.role = role
        super().__init__(f"No agent registered for role: {role}")


class RoleTimeoutError(PersonaFlowError, TimeoutError):
    """Raised when a role does not answer within the stage timeout."""

    def __init__(self, role: str, stage: str, timeout_seconds: float):
        self.role = role
        self.stage = stage
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Role '{role}' timed out after {timeout_seconds}s in stage '{stage}'"
        )


class RemoteTaskError(PersonaFlowError):
    """Raised when a remote role answers a task with an ERROR message."""

    def __init__(self, code: str, message: str, retryable: bool = False, details=None):
        self.code = code
        self.retryable = retryable
        self.details = details or {}
        super().__init__(f"{code}: {message}")
