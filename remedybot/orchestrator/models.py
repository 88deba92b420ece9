"""Plan, subtask, result and run-state models shared by the orchestrator, worker and CLI."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Literal

from pydantic import Field, ValidationError, model_validator

from remedybot.sandbox.models import HarnessCommands, SandboxConfig, SandboxPhase, SandboxResult
from remedybot.utils.exceptions import PlanInvalid
from remedybot.utils.helpers import utc_now
from remedybot.utils.wire import WireModel

RiskLevel = Literal["low", "medium", "high", "critical"]
Priority = Literal["low", "medium", "high"]
TaskStatus = Literal["running", "completed", "failed"]
OrchestrationStatus = Literal["planning", "executing", "awaiting-approval", "completed", "failed"]

HIGH_RISK_LEVELS: frozenset[str] = frozenset({"high", "critical"})
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})


class Subtask(WireModel):
    """One unit of work delegated to an agent kind."""
    id: str
    type: str = "analyze"
    description: str = ""
    agent: str = "advisor"
    dependencies: list[str] = Field(default_factory=list)
    priority: Priority = "medium"
    estimated_complexity: int = 5
    sandbox_phase: SandboxPhase | None = None
    incident_context: dict[str, Any] | None = None


class Plan(WireModel):
    """Subtask graph for one orchestration request."""
    id: str
    original_request: str = ""
    summary: str = ""
    subtasks: list[Subtask] = Field(default_factory=list)
    estimated_time: str = "unknown"
    risk_level: RiskLevel = "medium"
    requires_approval: bool = False

    @model_validator(mode="after")
    def _unique_subtask_ids(self) -> "Plan":
        self.check_unique_ids()
        return self

    def check_unique_ids(self) -> None:
        """Raise PlanInvalid when two subtasks share an id; results are keyed by id."""
        ids = [task.id for task in self.subtasks]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise PlanInvalid(f"Duplicate subtask ids: {', '.join(duplicates)}")

    @property
    def is_high_risk(self) -> bool:
        return self.risk_level in HIGH_RISK_LEVELS

    def subtask(self, task_id: str) -> Subtask | None:
        for task in self.subtasks:
            if task.id == task_id:
                return task
        return None


class ExecutionPolicy(WireModel):
    """Allow/deny rules checked before any agent runs."""
    allowed_agents: list[str] | None = None
    forbidden_keywords: list[str] = Field(default_factory=list)
    require_approval_for: list[str] = Field(default_factory=lambda: ["executor"])


class ReproductionReport(WireModel):
    """What the incident-reproduction collaborator learned before planning."""
    status: str
    twin_id: str | None = None
    harness: HarnessCommands | None = None
    warnings: list[str] = Field(default_factory=list)
    risk: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class OrchestrationContext(WireModel):
    """Caller-supplied context for one run."""
    repo_path: str | None = None
    summary: str | None = None
    repo_info: dict[str, Any] | None = None
    incident: dict[str, Any] | None = None
    incident_id: str | None = None
    task_id: str | None = None
    orchestration_id: str | None = None
    sandbox: SandboxConfig | None = None
    execution_policy: ExecutionPolicy | None = None
    safe_mode: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def resolved_incident_id(self) -> str | None:
        if self.incident_id:
            return self.incident_id
        if self.incident and self.incident.get("id") is not None:
            return str(self.incident["id"])
        return None


class TaskResult(WireModel):
    """Outcome of one subtask. Written once per task id."""
    task_id: str
    status: TaskStatus
    agent: str
    output: Any = None
    error: str | None = None
    error_code: str | None = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    sandbox_phase: SandboxPhase | None = None
    sandbox: SandboxResult | None = None


class OrchestrationState(WireModel):
    """Mutable state of one orchestration, retained in the store while suspended."""
    id: str
    plan: Plan
    results: dict[str, TaskResult] = Field(default_factory=dict)
    current_wave: int = 0
    status: OrchestrationStatus = "planning"
    logs: list[str] = Field(default_factory=list)
    approval_granted: bool = False
    reproduction: ReproductionReport | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def requires_approval(self) -> bool:
        return self.plan.requires_approval

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def record(self, result: TaskResult) -> None:
        """Store a resolved result; an already-resolved task id is never overwritten."""
        if result.status == "running":
            raise ValueError(f"Refusing to record unresolved result for task {result.task_id}")
        if result.task_id in self.results:
            raise ValueError(f"Result for task {result.task_id} is already recorded")
        self.results[result.task_id] = result
        self.touch()

    def touch(self) -> None:
        self.updated_at = utc_now()


def enforce_risk_approval(plan: Plan) -> Plan:
    """High or critical risk always requires approval, whatever the planner said."""
    if plan.is_high_risk and not plan.requires_approval:
        return plan.model_copy(update={"requires_approval": True})
    return plan


def _coerce_subtask(raw: Any, idx: int) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise PlanInvalid(f"Subtask #{idx + 1} is not an object")
    data = dict(raw)
    data["id"] = str(data.get("id") or idx + 1)
    data["dependencies"] = [str(d) for d in (data.get("dependencies") or [])]
    for key, default in (("type", "analyze"), ("agent", "advisor"), ("priority", "medium")):
        if not data.get(key):
            data[key] = default
    if not data.get("estimatedComplexity") and not data.get("estimated_complexity"):
        data["estimatedComplexity"] = 5
    return data


def parse_plan(raw: str | dict[str, Any], *, request: str = "", plan_id: str | None = None) -> Plan:
    """
    Build a Plan from planner output (JSON text or decoded object).

    Missing fields take planner defaults. Raises PlanInvalid for unparsable
    JSON, a non-object payload, bad field values or duplicate subtask ids.
    """
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise PlanInvalid(f"Planner returned invalid JSON: {e}", raw=raw) from e
    else:
        data = raw
    if not isinstance(data, dict):
        raise PlanInvalid("Planner output must be a JSON object", raw=str(raw))

    subtasks_raw = data.get("subtasks") or []
    if not isinstance(subtasks_raw, list):
        raise PlanInvalid("Planner output 'subtasks' must be a list")
    subtasks = [_coerce_subtask(st, idx) for idx, st in enumerate(subtasks_raw)]

    payload = {
        "id": data.get("id") or plan_id or f"plan-{utc_now().strftime('%Y%m%d%H%M%S%f')}",
        "originalRequest": data.get("originalRequest") or data.get("original_request") or request,
        "summary": data.get("summary") or "Generated plan",
        "subtasks": subtasks,
        "estimatedTime": data.get("estimatedTime") or data.get("estimated_time") or "unknown",
        "riskLevel": data.get("riskLevel") or data.get("risk_level") or "medium",
        "requiresApproval": bool(data.get("requiresApproval", data.get("requires_approval", False))),
    }
    try:
        return Plan.model_validate(payload)
    except ValidationError as e:
        raise PlanInvalid(f"Planner output failed validation: {e.error_count()} error(s): {e}") from e
