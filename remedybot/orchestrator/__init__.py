"""Orchestration engine: plans, waves, policy, agents, events and run store."""

from remedybot.orchestrator.agents import AgentInput, AgentRegistry, IncidentReproducer, Planner
from remedybot.orchestrator.engine import Orchestrator, find_rollback_plan, format_results
from remedybot.orchestrator.events import EventChannel, OrchestrationEvent
from remedybot.orchestrator.models import (
    ExecutionPolicy,
    OrchestrationContext,
    OrchestrationState,
    Plan,
    ReproductionReport,
    Subtask,
    TaskResult,
    parse_plan,
)
from remedybot.orchestrator.store import OrchestrationRun, OrchestrationStore
from remedybot.orchestrator.waves import compute_waves

__all__ = [
    "AgentInput",
    "AgentRegistry",
    "EventChannel",
    "ExecutionPolicy",
    "IncidentReproducer",
    "OrchestrationContext",
    "OrchestrationEvent",
    "OrchestrationRun",
    "OrchestrationState",
    "OrchestrationStore",
    "Orchestrator",
    "Plan",
    "Planner",
    "ReproductionReport",
    "Subtask",
    "TaskResult",
    "compute_waves",
    "find_rollback_plan",
    "format_results",
    "parse_plan",
]
