"""Core error types shared across stackrun."""

from stackrun.core.errors import (
    CycleError,
    DependencyUnresolvedError,
    ExitCode,
    ProviderError,
    ReplacementForbiddenError,
    ResolutionConflictError,
    StackDefinitionError,
    StackrunError,
)

__all__ = [
    "CycleError",
    "DependencyUnresolvedError",
    "ExitCode",
    "ProviderError",
    "ReplacementForbiddenError",
    "ResolutionConflictError",
    "StackDefinitionError",
    "StackrunError",
]
