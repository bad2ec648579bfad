"""Errors raised while preparing, launching and supervising a database."""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class AgentError(RuntimeError):
    """Base class for agent lifecycle failures."""


class UnknownBackend(AgentError):
    """Raised when no template is registered for a backend name."""

    def __init__(self, backend: str) -> None:
        super().__init__(f"no template registered for backend {backend!r}")
        self.backend = backend


class TemplateError(AgentError):
    """Raised when a backend spec lacks fields its template requires."""


class MissingBinary(AgentError):
    """Raised when the executable a backend needs does not exist."""

    def __init__(self, backend: str, path: Path) -> None:
        super().__init__(f"{backend} binary {str(path)!r} does not exist")
        self.backend = backend
        self.path = path


class AlreadyRunning(AgentError):
    """Raised when a start is requested while one is live or in progress."""


class LaunchFailure(AgentError):
    """Raised when the operating system refuses to create the process."""


class PrepareFailure(AgentError):
    """Raised when the data directory or config cannot be written."""


class InvalidTransition(AgentError):
    """Raised when an operation is not valid in the current state."""


class StartCancelled(AgentError):
    """Raised when a stop request interrupts a start attempt."""


class UnexpectedExit(AgentError):
    """Raised when a running database exits without a stop request."""

    def __init__(self, pid: int, returncode: Optional[int]) -> None:
        super().__init__(f"database process {pid} exited unexpectedly (code {returncode})")
        self.pid = pid
        self.returncode = returncode
