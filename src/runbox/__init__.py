"""Time-bounded execution of untrusted source code."""

__version__ = "0.1.0"

from .config import RunnerLimits, RunnerSettings, load_settings
from .coordinator import ExecutionCoordinator, ExecutionPhase
from .errors import (
    ConfigurationError,
    MissingField,
    ProvisioningFailed,
    RunboxError,
    RunnerBusy,
    RunnerFailure,
    SourceTooLarge,
    UnsupportedLanguage,
    ValidationError,
)
from .models import ExecutionRequest, ExecutionResult
from .process import LAUNCH_FAILED_EXIT_CODE, TIMEOUT_MESSAGE, ProcessRunner
from .registry import RuntimeDescriptor, RuntimeRegistry
from .workspace import Workspace, WorkspaceProvisioner

__all__ = [
    "__version__",
    "ConfigurationError",
    "ExecutionCoordinator",
    "ExecutionPhase",
    "ExecutionRequest",
    "ExecutionResult",
    "LAUNCH_FAILED_EXIT_CODE",
    "MissingField",
    "ProcessRunner",
    "ProvisioningFailed",
    "RunboxError",
    "RunnerBusy",
    "RunnerFailure",
    "RunnerLimits",
    "RunnerSettings",
    "RuntimeDescriptor",
    "RuntimeRegistry",
    "SourceTooLarge",
    "TIMEOUT_MESSAGE",
    "UnsupportedLanguage",
    "ValidationError",
    "Workspace",
    "WorkspaceProvisioner",
    "load_settings",
]
