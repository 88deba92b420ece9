"""
Exception hierarchy and error handling utilities for remedybot.

Provides:
- Custom exception classes with error codes
- Error categorization (policy, timeout, retryable, fatal, ...)
- Safe error message formatting (no sensitive data leak)
"""

from __future__ import annotations

import asyncio
import json
import re
from enum import Enum
from typing import Any


class ErrorCategory(Enum):
    """Error categories for classification."""
    RECOVERABLE = "recoverable"
    RETRYABLE = "retryable"
    FATAL = "fatal"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    POLICY = "policy"


class RemedyBotError(Exception):
    """Base exception for all remedybot errors."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        category: ErrorCategory = ErrorCategory.FATAL,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "category": self.category.value,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class PolicyViolation(RemedyBotError):
    """Subtask denied by the execution policy; no agent is invoked."""

    def __init__(self, message: str, agent: str | None = None, keyword: str | None = None):
        details: dict[str, Any] = {}
        if agent:
            details["agent"] = agent
        if keyword:
            details["keyword"] = keyword
        super().__init__(message, code="POLICY_VIOLATION", category=ErrorCategory.POLICY, details=details)


class SandboxUnavailable(RemedyBotError):
    """Mandatory container isolation requested but no container engine is reachable."""

    def __init__(self, message: str = "Container isolation required but no container engine is reachable"):
        super().__init__(message, code="SANDBOX_UNAVAILABLE", category=ErrorCategory.FATAL)


class SandboxTimeout(RemedyBotError):
    """Sandbox command exceeded its wall-clock budget and was killed."""

    def __init__(self, timeout_ms: int, method: str | None = None):
        super().__init__(
            f"Sandbox execution timed out after {timeout_ms}ms",
            code="SANDBOX_TIMEOUT",
            category=ErrorCategory.TIMEOUT,
            details={"timeout_ms": timeout_ms, "method": method},
        )


class SandboxFailed(RemedyBotError):
    """Sandbox run finished with a non-success outcome under failMode=fail."""

    def __init__(self, message: str, exit_code: int | None = None, phase: str | None = None):
        super().__init__(
            message,
            code="SANDBOX_FAILED",
            category=ErrorCategory.FATAL,
            details={"exit_code": exit_code, "phase": phase},
        )


class AgentError(RemedyBotError):
    """Agent invocation failed; recorded on the task result."""

    def __init__(self, agent: str, message: str, code: str = "AGENT_ERROR"):
        super().__init__(
            f"Agent '{agent}' error: {message}",
            code=code,
            category=ErrorCategory.RECOVERABLE,
            details={"agent": agent},
        )
        self.agent = agent


class UnknownAgentKind(AgentError):
    """No handler registered for the subtask's agent kind."""

    def __init__(self, agent: str):
        super().__init__(agent, "no handler registered for this agent kind", code="UNKNOWN_AGENT")


class PlanInvalid(RemedyBotError):
    """Planner output could not be turned into a Plan."""

    def __init__(self, message: str, raw: str | None = None):
        details = {"raw_preview": raw[:200]} if raw else {}
        super().__init__(message, code="PLAN_INVALID", category=ErrorCategory.VALIDATION, details=details)


class QueueExhausted(RemedyBotError):
    """Retries exhausted; the task was routed to the dead-letter stream."""

    def __init__(self, task_id: str, attempts: int, last_error: str):
        super().__init__(
            f"Task {task_id} exhausted {attempts} attempts: {last_error}",
            code="QUEUE_EXHAUSTED",
            category=ErrorCategory.FATAL,
            details={"task_id": task_id, "attempts": attempts, "last_error": last_error},
        )


class InvalidTransition(RemedyBotError):
    """Orchestration state machine transition not allowed from the current status."""

    def __init__(self, orchestration_id: str, current: str, action: str):
        super().__init__(
            f"Cannot {action} orchestration {orchestration_id} in status '{current}'",
            code="INVALID_TRANSITION",
            category=ErrorCategory.VALIDATION,
            details={"orchestration_id": orchestration_id, "status": current, "action": action},
        )


class NotFoundError(RemedyBotError):
    """Resource not found error."""

    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            f"{resource_type} not found: {resource_id}",
            code="NOT_FOUND",
            category=ErrorCategory.NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": resource_id},
        )


class ConfigurationError(RemedyBotError):
    """Startup configuration is inconsistent (e.g. agent handler table)."""

    def __init__(self, message: str, field: str | None = None):
        details = {"field": field} if field else {}
        super().__init__(message, code="CONFIGURATION_ERROR", category=ErrorCategory.VALIDATION, details=details)


_SENSITIVE_PATTERNS = [
    re.compile(r"(api[_-]?key|token|secret|password|auth)[=:]\s*['\"]?([^\s'\"]+)['\"]?", re.IGNORECASE),
    re.compile(r"bearer\s+[a-zA-Z0-9\-._~+/]+=*", re.IGNORECASE),
    re.compile(r"gh[pousr]_[a-zA-Z0-9]{20,}"),
    re.compile(r"sk-[a-zA-Z0-9]{20,}"),
    re.compile(r"[a-zA-Z0-9]{40,}"),
]


def sanitize_error_message(message: str, replacement: str = "[REDACTED]") -> str:
    """Remove sensitive information from error messages."""
    sanitized = message
    for pattern in _SENSITIVE_PATTERNS:
        sanitized = pattern.sub(replacement, sanitized)
    return sanitized


def classify_exception(exc: Exception) -> tuple[str, ErrorCategory, bool]:
    """
    Classify an exception and return (error_code, category, should_retry).

    Returns:
        Tuple of (error_code, category, should_retry)
    """
    if isinstance(exc, RemedyBotError):
        return exc.code, exc.category, exc.category == ErrorCategory.RETRYABLE

    if isinstance(exc, FileNotFoundError):
        return "FILE_NOT_FOUND", ErrorCategory.NOT_FOUND, False

    if isinstance(exc, asyncio.TimeoutError):
        return "TIMEOUT", ErrorCategory.TIMEOUT, True

    if isinstance(exc, ConnectionError):
        return "CONNECTION_ERROR", ErrorCategory.RETRYABLE, True

    if isinstance(exc, json.JSONDecodeError):
        return "JSON_PARSE_ERROR", ErrorCategory.VALIDATION, False

    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return "INVALID_VALUE", ErrorCategory.VALIDATION, False

    exc_str = str(exc).lower()
    if "rate limit" in exc_str or "429" in exc_str:
        return "RATE_LIMIT", ErrorCategory.RETRYABLE, True
    if "timeout" in exc_str or "timed out" in exc_str:
        return "TIMEOUT", ErrorCategory.TIMEOUT, True
    if "connection" in exc_str or "network" in exc_str:
        return "CONNECTION_ERROR", ErrorCategory.RETRYABLE, True

    return "INTERNAL_ERROR", ErrorCategory.FATAL, False
