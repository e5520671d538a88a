"""Public observability primitives: structured JSON-lines logging and correlation."""

from phasegate.observability.logging import (
    CORRELATION_KEYS,
    LoggingConfig,
    LogRedactor,
    StructuredLoggingHandle,
    configure_run_logging,
    configure_structlog,
    correlation_scope,
    default_log_redactor,
    get_active_logging_handle,
    get_correlation_context,
    setup_structured_logging,
    shutdown_logging,
)

__all__ = [
    "CORRELATION_KEYS",
    "LogRedactor",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_run_logging",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_structured_logging",
    "shutdown_logging",
]
