"""Public package entrypoint for the omnibuild orchestrator."""

from .assembler import ProjectAssembler, RunReport
from .config import BuildConfig, load_config
from .definitions import load_component, load_definitions, load_project
from .environment import build_environment
from .errors import (
    BuildCancelledError,
    BuildStepFailedError,
    CyclicDependencyError,
    DefinitionError,
    DuplicateComponentError,
    FetchError,
    MismatchError,
    OmnibuildError,
    PatchConflictError,
    PolicyError,
    RunAbortedError,
    UnknownComponentError,
    UnknownDependencyError,
    ValidationError,
)
from .executor import BuildExecutor
from .fetch import SourceFetcher, verify
from .graph import DependencyGraph
from .models import (
    CommandStep,
    Component,
    CopyStep,
    EnvOverride,
    EnvStep,
    MkdirStep,
    PatchRef,
    Project,
    ProjectDependency,
    ShellStep,
    SourceDescriptor,
)
from .patches import PatchApplier
from .policy import Policy
from .prefix import InstallPrefix

__all__ = [
    "BuildCancelledError",
    "BuildConfig",
    "BuildExecutor",
    "BuildStepFailedError",
    "CommandStep",
    "Component",
    "CopyStep",
    "CyclicDependencyError",
    "DefinitionError",
    "DependencyGraph",
    "DuplicateComponentError",
    "EnvOverride",
    "EnvStep",
    "FetchError",
    "InstallPrefix",
    "MismatchError",
    "MkdirStep",
    "OmnibuildError",
    "PatchApplier",
    "PatchConflictError",
    "PatchRef",
    "Policy",
    "PolicyError",
    "Project",
    "ProjectAssembler",
    "ProjectDependency",
    "RunAbortedError",
    "RunReport",
    "ShellStep",
    "SourceDescriptor",
    "SourceFetcher",
    "UnknownComponentError",
    "UnknownDependencyError",
    "ValidationError",
    "build_environment",
    "load_component",
    "load_config",
    "load_definitions",
    "load_project",
    "verify",
]
