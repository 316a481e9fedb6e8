"""Error handling framework for reconciliation runs."""

from typing import Optional, Dict, Any, List
from enum import Enum
from dataclasses import dataclass
from botocore.exceptions import ClientError, NoCredentialsError, PartialCredentialsError
from converge.utils.sensitive import redact


class ErrorCategory(Enum):
    """Categories of errors that can occur during a run."""
    CONFIGURATION = "configuration"
    DEPENDENCY = "dependency"
    REFERENCE = "reference"
    PROVIDER = "provider"
    STATE = "state"
    APPLY = "apply"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Run cannot continue
    ERROR = "error"  # Resource failed but independent branches continue
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"  # Informational message


@dataclass
class ErrorContext:
    """Context information for an error."""
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    operation: Optional[str] = None
    location: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


class ConvergeError(Exception):
    """Base exception for converge errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize error.

        Args:
            message: Human-readable error message
            category: Error category
            severity: Error severity
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
        """
        message = redact(message)
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []

    def to_user_message(self) -> str:
        """Convert error to user-friendly message.

        Returns:
            Formatted error message for display to user
        """
        lines = [f"{self.severity.value.upper()}: {self.message}"]

        if self.context.resource_id:
            lines.append(f"   Resource: {self.context.resource_id}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")
        if self.context.location:
            lines.append(f"   Location: {self.context.location}")

        if self.cause:
            lines.append(f"   Cause: {redact(str(self.cause))}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization.

        Returns:
            Dictionary representation of the error
        """
        return {
            'type': type(self).__name__,
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'context': {
                'resource_id': self.context.resource_id,
                'resource_type': self.context.resource_type,
                'operation': self.context.operation,
                'location': self.context.location,
                'request_id': self.context.request_id,
                'additional_info': self.context.additional_info
            },
            'cause': redact(str(self.cause)) if self.cause else None,
            'suggestions': self.suggestions
        }


class ConfigurationError(ConvergeError):
    """Error in the configuration document or settings."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.CRITICAL)
        super().__init__(message, category=ErrorCategory.CONFIGURATION, **kwargs)


class ParseError(ConfigurationError):
    """The document is not valid YAML or does not have the expected shape."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None, **kwargs):
        self.errors = errors or []
        if self.errors:
            lines = [message]
            for error in self.errors:
                location = " -> ".join(str(loc) for loc in error.get("loc", []))
                lines.append(f"  - {location}: {error.get('msg', 'Unknown error')}")
            message = "\n".join(lines)
        super().__init__(message, **kwargs)


class UndeclaredVariableError(ConfigurationError):
    """A value references a variable that is never declared."""

    def __init__(self, name: str, message: Optional[str] = None, **kwargs):
        self.name = name
        super().__init__(message or f"Reference to undeclared variable '{name}'", **kwargs)


class UndeclaredResourceError(ConfigurationError):
    """A value references a resource that is never declared."""

    def __init__(self, address: str, message: Optional[str] = None, **kwargs):
        self.address = address
        super().__init__(message or f"Reference to undeclared resource '{address}'", **kwargs)


class VariableValueError(ConfigurationError):
    """A variable has no value or a value of the wrong type."""


class DependencyError(ConvergeError):
    """Error related to resource dependencies."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.CRITICAL)
        super().__init__(message, category=ErrorCategory.DEPENDENCY, **kwargs)


class CyclicDependencyError(DependencyError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: List[str], **kwargs):
        self.cycle = cycle
        super().__init__(
            f"Circular dependency detected: {' -> '.join(cycle)}",
            **kwargs
        )


class ReferenceResolutionError(ConvergeError):
    """An expression could not be resolved against known state."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.REFERENCE, **kwargs)


class ProviderError(ConvergeError):
    """Error reported by a provider operation."""

    retryable = False

    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.PROVIDER, **kwargs)


class ProviderTransientError(ProviderError):
    """Provider failure worth retrying (rate limits, read-after-write gaps)."""

    retryable = True

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.WARNING)
        super().__init__(message, **kwargs)


class ProviderFatalError(ProviderError):
    """Provider failure that retrying will not fix."""


class StateError(ConvergeError):
    """Error related to state management."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.CRITICAL)
        super().__init__(message, category=ErrorCategory.STATE, **kwargs)


class StateLockError(StateError):
    """State file cannot be locked."""


class StateNotFoundError(StateError):
    """State file does not exist."""


class PartialApplyError(ConvergeError):
    """Raised at the end of a run in which some resources were not applied."""

    def __init__(
        self,
        applied: List[str],
        failed: Dict[str, str],
        skipped: List[str],
        result: Any = None
    ):
        self.applied = applied
        self.failed = failed
        self.skipped = skipped
        self.result = result
        summary = (
            f"Apply incomplete: {len(applied)} applied, {len(failed)} failed, "
            f"{len(skipped)} skipped"
        )
        super().__init__(summary, category=ErrorCategory.APPLY, severity=ErrorSeverity.ERROR)

    def to_user_message(self) -> str:
        lines = [super().to_user_message()]
        if self.applied:
            lines.append("   Applied: " + ", ".join(self.applied))
        for address, reason in self.failed.items():
            lines.append(f"   Failed: {address}: {reason}")
        if self.skipped:
            lines.append("   Skipped: " + ", ".join(self.skipped))
        return "\n".join(lines)


class ErrorHandler:
    """Classifies botocore errors into transient and fatal provider errors."""

    # Error codes worth retrying
    TRANSIENT_ERROR_CODES = {
        'RequestTimeout',
        'ServiceUnavailable',
        'ThrottlingException',
        'Throttling',
        'TooManyRequestsException',
        'RequestLimitExceeded',
        'RequestThrottled',
        'SlowDown',
        'InternalError',
        'InternalFailure',
        'ConcurrentModification',
        'OperationAborted',
    }

    # Error codes reported right after a write, before the write is visible
    EVENTUAL_CONSISTENCY_CODES = {
        'NoSuchEntity',
        'NoSuchBucket',
        'ApplicationDoesNotExistException',
        'InvalidRoleException',
    }

    SUGGESTIONS = {
        'AccessDenied': [
            'Check IAM policies attached to your user/role',
            'Verify you have the required permissions for this operation',
        ],
        'BucketAlreadyExists': [
            'S3 bucket names are global; choose a different bucket name',
        ],
        'EntityAlreadyExists': [
            'A resource with this name exists outside the state file; rename it',
        ],
        'ValidationError': [
            'Review the attribute values declared for this resource',
        ],
    }

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None,
        after_write: bool = False
    ) -> ConvergeError:
        """Convert an exception raised by a provider SDK into a ProviderError.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred
            after_write: Whether the call followed a write to the same resource

        Returns:
            ProviderTransientError or ProviderFatalError
        """
        context = context or ErrorContext()

        if isinstance(error, ConvergeError):
            return error

        if isinstance(error, ClientError):
            return self._handle_client_error(error, context, after_write)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return ProviderFatalError(
                f'Credential error: {error}',
                context=context,
                cause=error,
                suggestions=['Configure credentials for the selected profile']
            )

        if isinstance(error, (ConnectionError, TimeoutError)):
            return ProviderTransientError(
                f'Network error: {error}',
                context=context,
                cause=error
            )

        return ProviderFatalError(str(error), context=context, cause=error)

    def _handle_client_error(
        self,
        error: ClientError,
        context: ErrorContext,
        after_write: bool
    ) -> ProviderError:
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')
        error_message = error.response.get('Error', {}).get('Message', str(error))
        context.request_id = error.response.get('ResponseMetadata', {}).get('RequestId')

        message = f"{error_code}: {error_message}"
        if error_code in self.TRANSIENT_ERROR_CODES:
            return ProviderTransientError(message, context=context, cause=error)
        if after_write and error_code in self.EVENTUAL_CONSISTENCY_CODES:
            return ProviderTransientError(message, context=context, cause=error)

        return ProviderFatalError(
            message,
            context=context,
            cause=error,
            suggestions=self.SUGGESTIONS.get(error_code, [])
        )


# Global error handler instance
error_handler = ErrorHandler()
