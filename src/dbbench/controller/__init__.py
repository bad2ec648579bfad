"""Agent lifecycle controller and backend templates."""

from .controller import AgentController
from .errors import (
    AgentError,
    AlreadyRunning,
    InvalidTransition,
    LaunchFailure,
    MissingBinary,
    PrepareFailure,
    StartCancelled,
    TemplateError,
    UnexpectedExit,
    UnknownBackend,
)
from .models import AgentProcess, AgentState, BackendSpec, ExitStatus, PeerDescriptor
from .templates import BackendTemplate, RenderedBackend, TemplateRegistry, build_peers, build_registry

__all__ = [
    "AgentController",
    "AgentError",
    "AgentProcess",
    "AgentState",
    "AlreadyRunning",
    "BackendSpec",
    "BackendTemplate",
    "ExitStatus",
    "InvalidTransition",
    "LaunchFailure",
    "MissingBinary",
    "PeerDescriptor",
    "PrepareFailure",
    "RenderedBackend",
    "StartCancelled",
    "TemplateError",
    "TemplateRegistry",
    "UnexpectedExit",
    "UnknownBackend",
    "build_peers",
    "build_registry",
]
