"""Structured audit events for orchestration start/finish, task failures and incident mitigation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Protocol

from loguru import logger

from remedybot.utils.exceptions import sanitize_error_message
from remedybot.utils.helpers import utc_now

AuditSeverity = Literal["info", "warn", "error"]


@dataclass
class AuditEvent:
    action: str  # orchestration.start, task.failed, mitigation.status, ...
    severity: AuditSeverity = "info"
    message: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=utc_now)


class AuditSink(Protocol):
    async def emit(self, event: AuditEvent) -> None: ...


class LoguruAuditSink:
    """Writes audit events as structured loguru records (extra: audit=True, action=...)."""

    _LEVELS = {"info": "INFO", "warn": "WARNING", "error": "ERROR"}

    async def emit(self, event: AuditEvent) -> None:
        logger.bind(audit=True, action=event.action, metadata=event.metadata).log(
            self._LEVELS.get(event.severity, "INFO"),
            f"[audit] {event.action}: {sanitize_error_message(event.message)}",
        )


async def emit_safely(sink: AuditSink | None, event: AuditEvent) -> None:
    """Send event to sink; a failing sink is logged and never propagates."""
    if sink is None:
        return
    try:
        await sink.emit(event)
    except Exception as e:
        logger.warning(f"Audit sink failed for {event.action}: {e}")
