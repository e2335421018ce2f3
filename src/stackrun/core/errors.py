"""
Unified error handling for stackrun.

This module provides the engine's error taxonomy, exit codes, and the
error-handling wrapper used by every CLI command.

Exit Codes:
- 0: Success (every node Applied/Deleted)
- 1: Failed (one or more nodes Failed, Blocked or cancelled)
- 2: Validation error (cycle, malformed stack) before any provider call
- 10: Configuration error (settings, state file)
- 127: Unknown/internal error
- 130: Interrupted
"""

from __future__ import annotations

import functools
import sys
import traceback
from enum import IntEnum
from typing import Any, Callable, TypeVar

import structlog

logger = structlog.get_logger()


class ExitCode(IntEnum):
    """Standardized exit codes for CLI commands."""

    SUCCESS = 0
    FAILED = 1
    VALIDATION_ERROR = 2
    CONFIG_ERROR = 10
    UNKNOWN_ERROR = 127
    INTERRUPTED = 130


class StackrunError(Exception):
    """Base exception for stackrun errors with exit code support."""

    exit_code: ExitCode = ExitCode.UNKNOWN_ERROR
    show_traceback: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(StackrunError):
    """Raised for configuration-related errors."""

    exit_code = ExitCode.CONFIG_ERROR


class StateError(StackrunError):
    """Raised when recorded state cannot be read or written."""

    exit_code = ExitCode.CONFIG_ERROR


class ValidationError(StackrunError):
    """Raised for static validation failures before any provider call."""

    exit_code = ExitCode.VALIDATION_ERROR


class CycleError(ValidationError):
    """Raised when the dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(cycle)}",
            details={"cycle": cycle},
        )
        self.cycle = cycle


class StackDefinitionError(ValidationError):
    """Raised for malformed resource declarations or stack files."""


class ResolutionConflictError(StackrunError):
    """A value cell was resolved twice. Programming error, never recovered."""

    show_traceback = True


class DependencyUnresolvedError(StackrunError):
    """A runnable node referenced a cell that is not resolved. Engine bug."""

    show_traceback = True


class ProviderError(StackrunError):
    """Raised when a provider adapter operation fails."""

    exit_code = ExitCode.FAILED

    def __init__(
        self,
        message: str,
        *,
        resource_id: str | None = None,
        kind: str | None = None,
        operation: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        merged = dict(details or {})
        if resource_id is not None:
            merged["resource_id"] = resource_id
        if kind is not None:
            merged["kind"] = kind
        if operation is not None:
            merged["operation"] = operation
        super().__init__(message, details=merged)
        self.resource_id = resource_id
        self.kind = kind
        self.operation = operation


class ReplacementForbiddenError(StackrunError):
    """A replace-only field changed on a kind that disallows replacement."""

    exit_code = ExitCode.FAILED


class InputTransformError(StackrunError):
    """A derived cell's transform raised while resolving a node's inputs."""

    exit_code = ExitCode.FAILED


FATAL_ERRORS = (ResolutionConflictError, DependencyUnresolvedError)

# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., int])


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator for CLI main functions that provides unified error handling.

    Catches exceptions and converts them to appropriate exit codes with
    consistent error reporting.

    Exit codes:
        - StackrunError subclasses: Uses the error's exit_code
        - KeyboardInterrupt: Returns 130 (standard for SIGINT)
        - Other exceptions: Returns 127 (unknown error)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except StackrunError as e:
                if log_errors:
                    logger.error(
                        "command_error",
                        error_type=type(e).__name__,
                        message=e.message,
                        exit_code=e.exit_code,
                        **e.details,
                    )
                from stackrun.cli.ux import error as print_error

                print_error(format_error_message(e))
                if e.show_traceback or show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return e.exit_code
            except KeyboardInterrupt:
                if log_errors:
                    logger.info("command_interrupted")
                return ExitCode.INTERRUPTED
            except Exception as e:
                if log_errors:
                    logger.error(
                        "unexpected_error",
                        error_type=type(e).__name__,
                        message=str(e),
                        exit_code=ExitCode.UNKNOWN_ERROR,
                    )
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return ExitCode.UNKNOWN_ERROR

        return wrapper  # type: ignore[return-value]

    return decorator


def format_error_message(error: StackrunError) -> str:
    """Format an error message for display to users."""
    msg = error.message
    if error.details:
        detail_str = ", ".join(f"{k}={v}" for k, v in error.details.items())
        msg = f"{msg} ({detail_str})"
    return msg
