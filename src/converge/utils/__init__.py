"""Utility modules for logging, errors, retry and redaction."""

from converge.utils.retry import RetryStrategy
from converge.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    ConvergeError,
    ConfigurationError,
    ParseError,
    UndeclaredVariableError,
    UndeclaredResourceError,
    VariableValueError,
    DependencyError,
    CyclicDependencyError,
    ReferenceResolutionError,
    ProviderError,
    ProviderTransientError,
    ProviderFatalError,
    StateError,
    StateLockError,
    StateNotFoundError,
    PartialApplyError,
    ErrorHandler,
    error_handler
)
from converge.utils.logging import get_logger, setup_logging
from converge.utils.sensitive import Sensitive, redact, secret_registry

__all__ = [
    # Retry
    'RetryStrategy',

    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'ConvergeError',
    'ConfigurationError',
    'ParseError',
    'UndeclaredVariableError',
    'UndeclaredResourceError',
    'VariableValueError',
    'DependencyError',
    'CyclicDependencyError',
    'ReferenceResolutionError',
    'ProviderError',
    'ProviderTransientError',
    'ProviderFatalError',
    'StateError',
    'StateLockError',
    'StateNotFoundError',
    'PartialApplyError',
    'ErrorHandler',
    'error_handler',

    # Logging
    'get_logger',
    'setup_logging',

    # Redaction
    'Sensitive',
    'redact',
    'secret_registry',
]
