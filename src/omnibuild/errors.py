"""Typed build error model with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from enum import StrEnum


class ErrorCode(StrEnum):
    """Stable error identifiers used across API surfaces."""

    DEFINITION = "E_DEFINITION"
    UNKNOWN_COMPONENT = "E_UNKNOWN_COMPONENT"
    DUPLICATE_COMPONENT = "E_DUPLICATE_COMPONENT"
    CYCLIC_DEPENDENCY = "E_CYCLIC_DEPENDENCY"
    UNKNOWN_DEPENDENCY = "E_UNKNOWN_DEPENDENCY"
    FETCH = "E_FETCH"
    DIGEST_MISMATCH = "E_DIGEST_MISMATCH"
    PATCH_CONFLICT = "E_PATCH_CONFLICT"
    BUILD_STEP = "E_BUILD_STEP"
    CANCELLED = "E_CANCELLED"
    POLICY = "E_POLICY"
    RUN_ABORTED = "E_RUN_ABORTED"


class OmnibuildError(Exception):
    """Base error class that carries code, optional hint, and context."""

    code: str
    hint: str | None
    context: Mapping[str, str]

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code.value
        self.hint = hint
        self.context = dict(context or {})

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        if self.context:
            for k, v in self.context.items():
                if v:
                    parts.append(f"  {k}: {v}")
        return "\n".join(parts)

    @property
    def message(self) -> str:
        return super().__str__()

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "message": self.message,
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class ValidationError(OmnibuildError):
    """Raised before any fetch or build when inputs are inconsistent."""


class DefinitionError(ValidationError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.DEFINITION, hint=hint, context=context)


class UnknownComponentError(ValidationError):
    def __init__(self, name: str, *, hint: str | None = None) -> None:
        super().__init__(
            f"Unknown component `{name}`.",
            code=ErrorCode.UNKNOWN_COMPONENT,
            hint=hint or "Check the requested name against the loaded definitions.",
            context={"component": name},
        )
        self.name = name


class DuplicateComponentError(ValidationError):
    def __init__(self, name: str) -> None:
        super().__init__(
            f"Component `{name}` is defined more than once.",
            code=ErrorCode.DUPLICATE_COMPONENT,
            hint="Each component name must map to exactly one definition.",
            context={"component": name},
        )
        self.name = name


class CyclicDependencyError(ValidationError):
    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = tuple(cycle)
        chain = " -> ".join(self.cycle)
        super().__init__(
            f"Dependency cycle detected: {chain}",
            code=ErrorCode.CYCLIC_DEPENDENCY,
            hint="Remove one of the dependency edges in the cycle.",
            context={"cycle": chain},
        )


class UnknownDependencyError(ValidationError):
    def __init__(self, component: str, dependency: str) -> None:
        super().__init__(
            f"Component `{component}` depends on unknown component `{dependency}`.",
            code=ErrorCode.UNKNOWN_DEPENDENCY,
            hint="Add a definition for the dependency or drop the edge.",
            context={"component": component, "dependency": dependency},
        )
        self.component = component
        self.dependency = dependency


class FetchError(OmnibuildError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.FETCH, hint=hint, context=context)


class MismatchError(OmnibuildError):
    def __init__(self, *, path: str, expected: str, actual: str) -> None:
        super().__init__(
            "Content digest mismatch.",
            code=ErrorCode.DIGEST_MISMATCH,
            hint="Update the expected digest or source URL to a trusted immutable artifact.",
            context={"path": path, "expected": expected, "actual": actual},
        )
        self.path = path
        self.expected = expected
        self.actual = actual


class PatchConflictError(OmnibuildError):
    def __init__(
        self,
        patch: str,
        *,
        index: int,
        hint: str | None = None,
        output: str = "",
    ) -> None:
        super().__init__(
            f"Patch `{patch}` does not apply cleanly.",
            code=ErrorCode.PATCH_CONFLICT,
            hint=hint or "Refresh the patch against the current upstream source.",
            context={"patch": patch, "index": str(index), "output": output[:2000]},
        )
        self.patch = patch
        self.index = index


class BuildStepFailedError(OmnibuildError):
    def __init__(
        self,
        *,
        component: str,
        step_index: int,
        exit_status: int,
        command: str = "",
        log_path: str = "",
        output: str = "",
    ) -> None:
        super().__init__(
            f"Component `{component}` failed at build step {step_index} "
            f"(exit status {exit_status}).",
            code=ErrorCode.BUILD_STEP,
            hint="Inspect the build log, then fix the recipe or source and re-run.",
            context={
                "component": component,
                "step": str(step_index),
                "exit_status": str(exit_status),
                "command": command,
                "log": log_path,
                "output": output[-2000:],
            },
        )
        self.component = component
        self.step_index = step_index
        self.exit_status = exit_status


class BuildCancelledError(OmnibuildError):
    def __init__(self, component: str | None = None, *, step_index: int | None = None) -> None:
        context: dict[str, str] = {}
        if component is not None:
            context["component"] = component
        if step_index is not None:
            context["step"] = str(step_index)
        super().__init__(
            "Build was cancelled.",
            code=ErrorCode.CANCELLED,
            hint="Cancelled components are rebuilt from scratch on the next run.",
            context=context,
        )
        self.component = component
        self.step_index = step_index


class PolicyError(OmnibuildError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.POLICY, hint=hint, context=context)


class RunAbortedError(OmnibuildError):
    """A run stopped on its first component failure.

    ``failure`` is the original error raised for ``component``. ``blocked``
    lists every unbuilt component that transitively depends on it and
    ``not_attempted`` the remaining unbuilt components.
    """

    def __init__(
        self,
        *,
        component: str,
        failure: OmnibuildError,
        completed: Sequence[str] = (),
        blocked: Sequence[str] = (),
        not_attempted: Sequence[str] = (),
    ) -> None:
        self.component = component
        self.failure = failure
        self.completed = tuple(completed)
        self.blocked = tuple(blocked)
        self.not_attempted = tuple(not_attempted)
        super().__init__(
            f"Run aborted: component `{component}` failed.",
            code=ErrorCode.RUN_ABORTED,
            hint=failure.hint,
            context={
                "component": component,
                "cause": failure.message,
                "blocked": ", ".join(self.blocked),
            },
        )

    @property
    def chain(self) -> tuple[str, ...]:
        """Failed component followed by everything that could not complete because of it."""
        return (self.component, *self.blocked)

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload["failure"] = self.failure.to_dict()
        payload["completed"] = list(self.completed)
        payload["blocked"] = list(self.blocked)
        payload["not_attempted"] = list(self.not_attempted)
        return payload


__all__ = [
    "BuildCancelledError",
    "BuildStepFailedError",
    "CyclicDependencyError",
    "DefinitionError",
    "DuplicateComponentError",
    "ErrorCode",
    "FetchError",
    "MismatchError",
    "OmnibuildError",
    "PatchConflictError",
    "PolicyError",
    "RunAbortedError",
    "UnknownComponentError",
    "UnknownDependencyError",
    "ValidationError",
]
