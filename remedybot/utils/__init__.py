"""Utility functions for remedybot."""

from remedybot.utils.helpers import (
    camel_to_snake,
    ensure_dir,
    get_data_path,
    now_ms,
    snake_to_camel,
    truncate,
    utc_now,
    utc_now_iso,
)
from remedybot.utils.exceptions import (
    AgentError,
    ConfigurationError,
    ErrorCategory,
    InvalidTransition,
    NotFoundError,
    PlanInvalid,
    PolicyViolation,
    QueueExhausted,
    RemedyBotError,
    SandboxFailed,
    SandboxTimeout,
    SandboxUnavailable,
    UnknownAgentKind,
    classify_exception,
    sanitize_error_message,
)

__all__ = [
    "camel_to_snake",
    "snake_to_camel",
    "ensure_dir",
    "get_data_path",
    "now_ms",
    "truncate",
    "utc_now",
    "utc_now_iso",
    "AgentError",
    "ConfigurationError",
    "ErrorCategory",
    "InvalidTransition",
    "NotFoundError",
    "PlanInvalid",
    "PolicyViolation",
    "QueueExhausted",
    "RemedyBotError",
    "SandboxFailed",
    "SandboxTimeout",
    "SandboxUnavailable",
    "UnknownAgentKind",
    "classify_exception",
    "sanitize_error_message",
]
