"""
Error handling framework for LagZero Core.

This module provides error handling with:
- Hierarchical exception classes mirroring the core failure taxonomy
- Error context preservation
- Operator-facing hints attached to every surfaced error
- Structured error payloads for the event bus
"""

from typing import Optional, Dict, Any, List, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import traceback
from contextlib import contextmanager

from .logging import get_logger


logger = get_logger("lagzero.errors")


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"
    FATAL = "fatal"


class ErrorCategory(Enum):
    """Error categories for classification."""
    SYSTEM = "system"
    NETWORK = "network"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    PROCESS = "process"
    INSTALL = "install"
    INTERNAL = "internal"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Context information for an error."""
    timestamp: datetime = field(default_factory=datetime.utcnow)
    component: Optional[str] = None
    operation: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None


class LagZeroError(Exception):
    """Base exception for all LagZero Core errors."""

    code: str = "LAGZERO_ERROR"
    default_message: str = "An error occurred in LagZero Core"
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.UNKNOWN
    is_retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[BaseException] = None,
        hints: Optional[Sequence[str]] = None,
        **kwargs
    ):
        self.message = message or self.default_message
        self.context = context or ErrorContext()
        self.cause = cause
        self.hints: List[str] = list(hints or [])
        self.kwargs = kwargs

        if not self.context.stack_trace and cause is not None:
            self.context.stack_trace = "".join(
                traceback.format_exception(type(cause), cause, cause.__traceback__)
            )

        super().__init__(self.message)

    @property
    def summary(self) -> str:
        """First line of the message."""
        return self.message.splitlines()[0] if self.message else ""

    def suggestions(self) -> List[str]:
        """Get error resolution suggestions."""
        return list(self.hints)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for event payloads and JSON serialization."""
        return {
            "code": self.code,
            "summary": self.summary,
            "hints": self.suggestions(),
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "is_retryable": self.is_retryable,
            "context": {
                "timestamp": self.context.timestamp.isoformat(),
                "component": self.context.component,
                "operation": self.context.operation,
                "metadata": self.context.metadata,
            },
        }


class ConfigurationError(LagZeroError):
    """Settings file or settings value errors."""
    code = "CONFIG_ERROR"
    default_message = "Configuration error"
    category = ErrorCategory.CONFIGURATION

    def suggestions(self) -> List[str]:
        return self.hints or [
            "Check your settings file syntax",
            "Ensure all required settings are set",
            "Verify settings file permissions",
        ]


# Core process errors

class CoreProcessError(LagZeroError):
    """Errors raised by the supervised core process."""
    code = "CORE_ERROR"
    default_message = "Core process error"
    category = ErrorCategory.PROCESS

    def __init__(
        self,
        message: Optional[str] = None,
        exit_code: Optional[int] = None,
        log_tail: Optional[Sequence[str]] = None,
        **kwargs
    ):
        self.exit_code = exit_code
        self.log_tail: List[str] = list(log_tail or [])
        super().__init__(message, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["exit_code"] = self.exit_code
        data["log_tail"] = self.log_tail
        return data


class ConfigInvalidError(CoreProcessError):
    """The core rejected the configuration in check mode."""
    code = "CONFIG_INVALID"
    default_message = "Core configuration check failed"
    category = ErrorCategory.VALIDATION


class SpawnFailureError(CoreProcessError):
    """The operating system refused to execute the core binary."""
    code = "SPAWN_FAILURE"
    default_message = "Failed to spawn the core binary"
    severity = ErrorSeverity.CRITICAL


class EarlyExitError(CoreProcessError):
    """The core exited inside the startup window."""
    code = "EARLY_EXIT"
    default_message = "Core exited during startup"
    is_retryable = True


class RuntimeCrashError(CoreProcessError):
    """The core exited after it had been running."""
    code = "RUNTIME_CRASH"
    default_message = "Core exited unexpectedly"
    is_retryable = True


class CrashLoopExhaustedError(CoreProcessError):
    """Crash retries were used up."""
    code = "CRASH_LOOP_EXHAUSTED"
    default_message = "Core kept crashing; automatic restarts stopped"
    severity = ErrorSeverity.CRITICAL


# Installer errors

class InstallFailureError(LagZeroError):
    """Core binary installation errors."""
    code = "INSTALL_FAILURE"
    default_message = "Failed to install the core binary"
    category = ErrorCategory.INSTALL


class NetworkError(InstallFailureError):
    """Transient network failure (DNS, reset, timeout)."""
    code = "NETWORK_ERROR"
    default_message = "Network error occurred"
    category = ErrorCategory.NETWORK
    is_retryable = True

    def suggestions(self) -> List[str]:
        return self.hints or [
            "Check your network connection",
            "Verify that GitHub is reachable from this machine",
            "Check proxy and firewall settings",
        ]


class HttpStatusError(InstallFailureError):
    """Unexpected HTTP status code."""
    code = "HTTP_STATUS"
    default_message = "Unexpected HTTP status"

    def __init__(self, status: int, url: str, **kwargs):
        self.status = status
        self.url = url
        super().__init__(f"HTTP {status} while fetching {url}", **kwargs)


class RedirectLimitError(InstallFailureError):
    """Too many HTTP redirects."""
    code = "REDIRECT_LIMIT"
    default_message = "Too many redirects"

    def __init__(self, url: str, limit: int, **kwargs):
        self.url = url
        self.limit = limit
        super().__init__(f"Too many redirects (limit {limit}) while fetching {url}", **kwargs)


class AssetNotFoundError(InstallFailureError):
    """The release has no archive for this platform."""
    code = "ASSET_NOT_FOUND"
    default_message = "No matching release asset"

    def __init__(self, asset_name: str, version: str, **kwargs):
        self.asset_name = asset_name
        self.version = version
        super().__init__(
            f"Release {version} has no asset named {asset_name}", **kwargs
        )


class ArchiveError(InstallFailureError):
    """The downloaded archive could not be extracted."""
    code = "ARCHIVE_ERROR"
    default_message = "Failed to extract the downloaded archive"


class BinaryNotFoundError(InstallFailureError):
    """The executable was not present in the extracted archive."""
    code = "BINARY_NOT_FOUND"
    default_message = "Core executable not found after extraction"


class UnsupportedPlatformError(InstallFailureError):
    """No release exists for this platform or architecture."""
    code = "UNSUPPORTED_PLATFORM"
    default_message = "Unsupported platform"


@contextmanager
def error_context(
    component: str,
    operation: str,
    reraise: bool = True,
    **metadata
):
    """
    Context manager for error handling with context.

    Args:
        component: Component name
        operation: Operation name
        reraise: Whether to reraise exceptions
        **metadata: Additional context metadata
    """
    context = ErrorContext(
        component=component,
        operation=operation,
        metadata=metadata
    )

    try:
        yield context
    except LagZeroError as e:
        e.context.component = e.context.component or component
        e.context.operation = e.context.operation or operation
        e.context.metadata.update(metadata)
        logger.error(
            "lagzero_error_in_context",
            code=e.code,
            error=e.message,
            component=component,
            operation=operation,
        )
        if reraise:
            raise
    except Exception as e:
        wrapped = LagZeroError(
            message=str(e) or type(e).__name__,
            context=context,
            cause=e
        )
        logger.error(
            "unexpected_error_in_context",
            error=str(e),
            error_type=type(e).__name__,
            component=component,
            operation=operation,
            exc_info=True
        )
        if reraise:
            raise wrapped from e


__all__ = [
    'ErrorSeverity',
    'ErrorCategory',
    'ErrorContext',
    'LagZeroError',
    'ConfigurationError',
    'CoreProcessError',
    'ConfigInvalidError',
    'SpawnFailureError',
    'EarlyExitError',
    'RuntimeCrashError',
    'CrashLoopExhaustedError',
    'InstallFailureError',
    'NetworkError',
    'HttpStatusError',
    'RedirectLimitError',
    'AssetNotFoundError',
    'ArchiveError',
    'BinaryNotFoundError',
    'UnsupportedPlatformError',
    'error_context',
]
