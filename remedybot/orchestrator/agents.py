"""Agent handler table and the collaborator contracts the orchestrator consumes.

Agents, the planner and the incident reproducer are external: the orchestrator
only sees the async callables registered here and the JSON-like values they
return.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol

from remedybot.orchestrator.models import OrchestrationContext, Plan, ReproductionReport
from remedybot.sandbox.models import SandboxConfig
from remedybot.utils.exceptions import AgentError, ConfigurationError, RemedyBotError, UnknownAgentKind

KNOWN_AGENT_KINDS: frozenset[str] = frozenset(
    {"advisor", "operator", "executor", "reviewer", "advisor-impact", "twin-builder"}
)


@dataclass
class AgentInput:
    """Task-scoped input handed to an agent."""

    task_id: str
    agent: str
    description: str
    repo_path: str | None = None
    dependency_context: dict[str, Any] = field(default_factory=dict)
    incident_context: dict[str, Any] | None = None
    priority: str = "medium"
    context: OrchestrationContext | None = None
    reproduction: ReproductionReport | None = None


AgentHandler = Callable[[AgentInput], Awaitable[Any]]


class Planner(Protocol):
    async def plan(
        self,
        request: str,
        context: OrchestrationContext,
        reproduction: ReproductionReport | None,
    ) -> Plan | dict[str, Any] | str: ...


class IncidentReproducer(Protocol):
    async def reproduce(
        self,
        incident: dict[str, Any],
        repo_path: str,
        sandbox: SandboxConfig | None,
    ) -> ReproductionReport: ...


class AgentRegistry:
    """
    Agent kind -> async handler, validated once at construction.

    Unknown kinds, or required kinds without a handler, raise
    ConfigurationError so a bad table fails at startup rather than mid-run.
    """

    def __init__(
        self,
        handlers: Mapping[str, AgentHandler],
        *,
        required: Iterable[str] | None = None,
        known: Iterable[str] = KNOWN_AGENT_KINDS,
    ):
        known_set = frozenset(known)
        unknown = sorted(set(handlers) - known_set)
        if unknown:
            raise ConfigurationError(f"Unknown agent kinds in handler table: {', '.join(unknown)}", field="agents")
        missing = sorted(set(required or ()) - set(handlers))
        if missing:
            raise ConfigurationError(f"No handler registered for required agent kinds: {', '.join(missing)}", field="agents")
        for kind, handler in handlers.items():
            if not callable(handler):
                raise ConfigurationError(f"Handler for agent kind '{kind}' is not callable", field="agents")
        self._handlers: dict[str, AgentHandler] = dict(handlers)

    @property
    def kinds(self) -> list[str]:
        return sorted(self._handlers)

    def has(self, kind: str) -> bool:
        return kind in self._handlers

    def require(self, kind: str) -> AgentHandler:
        handler = self._handlers.get(kind)
        if handler is None:
            raise UnknownAgentKind(kind)
        return handler

    async def dispatch(self, kind: str, agent_input: AgentInput) -> Any:
        """Run the handler for kind; foreign exceptions come back as AgentError."""
        handler = self.require(kind)
        try:
            return await handler(agent_input)
        except RemedyBotError:
            raise
        except Exception as e:
            raise AgentError(kind, str(e) or type(e).__name__) from e


def output_type(output: Any) -> str | None:
    """Conventional type tag of an agent output (`type`, else `role`)."""
    if isinstance(output, Mapping):
        tag = output.get("type") or output.get("role")
        return str(tag) if tag else None
    return getattr(output, "type", None) or getattr(output, "role", None)


def review_approved(output: Any) -> bool | None:
    """The reviewer's `approved` flag, or None when the output carries none."""
    if isinstance(output, Mapping):
        value = output.get("approved")
    else:
        value = getattr(output, "approved", None)
    return value if isinstance(value, bool) else None
