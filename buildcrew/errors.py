"""
BUILDCREW Errors

One taxonomy for every failure the engine can surface.
Callers branch on the class, never on the message.
"""

from __future__ import annotations


class BuildCrewError(Exception):
    """Root of every error raised by the engine."""


class ValidationFailedError(BuildCrewError):
    """Bad task, agent, tool or model input. Raised before any side effect."""

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = list(errors or [message])
        super().__init__(message)


class NotFoundError(BuildCrewError):
    """Unknown task, tool, model, agent or memory entry."""


class AttemptTimeoutError(BuildCrewError, TimeoutError):
    """A single attempt exceeded its deadline."""


class RateLimitError(BuildCrewError):
    """The sliding window for a model is full."""


class ExecutionError(BuildCrewError):
    """A tool, shell or model backend failed."""

    def __init__(
        self,
        message: str,
        stdout: str = "",
        stderr: str = "",
        exit_code: int | None = None,
    ):
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code
        super().__init__(message)


class DegradedParseError(BuildCrewError):
    """The model did not return well-formed structured output."""

    def __init__(self, message: str, raw: str = ""):
        self.raw = raw
        super().__init__(message)


class ConfigurationError(BuildCrewError):
    """Unknown agent kind or an inconsistent configuration."""


class AgentNotInitializedError(BuildCrewError):
    pass


class AgentShutdownError(BuildCrewError):
    pass


class InvalidTransitionError(BuildCrewError):
    """A task status change that would move backwards."""


# Errors that no amount of retrying will fix.
NON_RETRYABLE = (ValidationFailedError, NotFoundError, ConfigurationError, AgentShutdownError)
