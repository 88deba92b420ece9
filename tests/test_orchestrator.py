"""Tests for the orchestrator: waves, approval gate, policy, sandbox phases, events and audit."""

from __future__ import annotations

import asyncio
import shutil
from typing import Any

import pytest

from remedybot.audit import AuditEvent
from remedybot.orchestrator.agents import AgentInput, AgentRegistry
from remedybot.orchestrator.engine import Orchestrator, find_rollback_plan, format_results
from remedybot.orchestrator.models import (
    ExecutionPolicy,
    OrchestrationContext,
    OrchestrationState,
    Plan,
    ReproductionReport,
    Subtask,
    TaskResult,
)
from remedybot.orchestrator.store import OrchestrationRun
from remedybot.sandbox.models import HarnessCommands, SandboxConfig
from remedybot.utils.exceptions import InvalidTransition, NotFoundError, PlanInvalid

needs_sh = pytest.mark.skipif(shutil.which("sh") is None, reason="POSIX shell not available")


class StaticPlanner:
    def __init__(self, plan: Any):
        self.plan_value = plan
        self.calls: list[tuple[str, OrchestrationContext, ReproductionReport | None]] = []

    async def plan(self, request, context, reproduction):
        self.calls.append((request, context, reproduction))
        return self.plan_value


class Agents:
    """Handler table that records every invocation."""

    def __init__(self, outputs: dict[str, Any] | None = None, failing: set[str] | None = None):
        self.outputs = outputs or {}
        self.failing = failing or set()
        self.calls: list[AgentInput] = []

    def handler(self, kind: str):
        async def _run(agent_input: AgentInput) -> Any:
            self.calls.append(agent_input)
            if agent_input.task_id in self.failing:
                raise RuntimeError(f"{kind} exploded")
            return self.outputs.get(agent_input.task_id, {"type": kind, "ok": True})

        return _run

    def registry(self, *kinds: str) -> AgentRegistry:
        return AgentRegistry({kind: self.handler(kind) for kind in kinds})

    def count(self, task_id: str) -> int:
        return sum(1 for c in self.calls if c.task_id == task_id)


class RecordingAudit:
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def emit(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> list[str]:
        return [e.action for e in self.events]


class FakeProbe:
    def __init__(self, container: bool = False, runsc: bool = False):
        self.container = container
        self.runsc = runsc

    async def container_available(self) -> bool:
        return self.container

    async def runsc_available(self) -> bool:
        return self.runsc


ALL_KINDS = ("advisor", "operator", "executor", "reviewer")


def _plan(*subtasks: dict[str, Any], risk: str = "low", requires_approval: bool = False) -> dict[str, Any]:
    return {
        "id": "plan-1",
        "summary": "Fix the incident",
        "riskLevel": risk,
        "requiresApproval": requires_approval,
        "subtasks": list(subtasks),
    }


def _orchestrator(plan: Any, agents: Agents, kinds=ALL_KINDS, **kwargs: Any) -> Orchestrator:
    return Orchestrator(planner=StaticPlanner(plan), registry=agents.registry(*kinds), **kwargs)


@pytest.mark.asyncio
async def test_execute_runs_waves_and_passes_dependency_context() -> None:
    """A then B (depends on A): both complete; B sees A's output."""
    agents = Agents(outputs={"1": {"type": "advice", "finding": "null deref"}})
    orch = _orchestrator(
        _plan(
            {"id": "1", "agent": "advisor", "description": "analyze"},
            {"id": "2", "agent": "operator", "description": "patch", "dependencies": ["1"]},
        ),
        agents,
    )
    state = await orch.execute("fix the crash")

    assert state.status == "completed"
    assert [r.status for r in state.results.values()] == ["completed", "completed"]
    op_call = next(c for c in agents.calls if c.task_id == "2")
    assert op_call.dependency_context == {"1": {"type": "advice", "finding": "null deref"}}
    assert state.id not in orch.store


@pytest.mark.asyncio
async def test_high_risk_plan_waits_for_approval_then_resumes_once() -> None:
    """Risk high forces approval: executor waits, then runs exactly once after resume."""
    agents = Agents()
    orch = _orchestrator(
        _plan(
            {"id": "1", "agent": "advisor", "description": "analyze"},
            {"id": "2", "agent": "executor", "description": "restart service", "dependencies": ["1"]},
            risk="high",
            requires_approval=False,
        ),
        agents,
    )
    state = await orch.execute("restart it")

    assert state.status == "awaiting-approval"
    assert state.plan.requires_approval is True
    assert list(state.results) == ["1"]
    assert agents.count("2") == 0
    assert orch.get_state(state.id) is state

    resumed = await orch.resume_after_approval(state.id)
    assert resumed.status == "completed"
    assert resumed.approval_granted is True
    assert agents.count("1") == 1
    assert agents.count("2") == 1

    with pytest.raises(NotFoundError):
        await orch.resume_after_approval(state.id)


@pytest.mark.asyncio
async def test_resume_unknown_or_running_orchestration() -> None:
    agents = Agents()
    orch = _orchestrator(_plan(), agents)
    with pytest.raises(NotFoundError):
        await orch.resume_after_approval("orch-missing")

    state = OrchestrationState(id="orch-busy", plan=Plan(id="p"), status="executing")
    orch.store.put(OrchestrationRun(state=state, context=OrchestrationContext()))
    with pytest.raises(InvalidTransition) as exc_info:
        await orch.resume_after_approval("orch-busy")
    assert exc_info.value.details["status"] == "executing"


@pytest.mark.asyncio
async def test_approval_required_event_carries_gated_task() -> None:
    agents = Agents()
    orch = _orchestrator(_plan({"id": "x", "agent": "executor"}, requires_approval=True), agents)
    seen = []
    orch.events.subscribe(lambda e: seen.append(e))
    state = await orch.execute("do it")

    gated = [e for e in seen if e.kind == "approval_required"]
    assert len(gated) == 1
    assert gated[0].payload["task"]["id"] == "x"
    assert gated[0].orchestration_id == state.id


@pytest.mark.asyncio
async def test_allow_list_blocks_agent_without_invoking_it() -> None:
    agents = Agents()
    orch = _orchestrator(_plan({"id": "1", "agent": "operator", "description": "patch"}), agents)
    ctx = OrchestrationContext(execution_policy=ExecutionPolicy(allowed_agents=["advisor"]))
    state = await orch.execute("patch", ctx)

    result = state.results["1"]
    assert result.status == "failed"
    assert result.error_code == "POLICY_VIOLATION"
    assert agents.calls == []


@pytest.mark.asyncio
async def test_forbidden_keyword_from_default_policy() -> None:
    agents = Agents()
    orch = _orchestrator(
        _plan({"id": "1", "agent": "operator", "description": "DROP TABLE users"}),
        agents,
        policy=ExecutionPolicy(forbidden_keywords=["drop"]),
    )
    state = await orch.execute("clean db")
    assert state.results["1"].error_code == "POLICY_VIOLATION"
    assert agents.calls == []


@pytest.mark.asyncio
async def test_unregistered_agent_kind_fails_task() -> None:
    agents = Agents()
    orch = _orchestrator(_plan({"id": "1", "agent": "reviewer"}), agents, kinds=("advisor",))
    state = await orch.execute("review")
    assert state.results["1"].status == "failed"
    assert state.results["1"].error_code == "UNKNOWN_AGENT"
    assert state.status == "completed"


@pytest.mark.asyncio
async def test_high_priority_failure_aborts_remaining_waves() -> None:
    agents = Agents(failing={"1"})
    orch = _orchestrator(
        _plan(
            {"id": "1", "agent": "advisor", "priority": "high"},
            {"id": "2", "agent": "advisor", "dependencies": ["1"]},
        ),
        agents,
    )
    state = await orch.execute("go")

    assert state.status == "failed"
    assert state.results["1"].error_code == "AGENT_ERROR"
    assert "advisor exploded" in (state.results["1"].error or "")
    assert "2" not in state.results


@pytest.mark.asyncio
async def test_medium_priority_failure_does_not_abort() -> None:
    agents = Agents(failing={"1"})
    orch = _orchestrator(
        _plan(
            {"id": "1", "agent": "advisor"},
            {"id": "2", "agent": "advisor", "dependencies": ["1"]},
        ),
        agents,
    )
    state = await orch.execute("go")

    assert state.status == "completed"
    assert state.results["1"].status == "failed"
    assert state.results["2"].status == "completed"
    second = next(c for c in agents.calls if c.task_id == "2")
    assert second.dependency_context == {}


@pytest.mark.asyncio
async def test_safe_mode_blocks_executor() -> None:
    agents = Agents()
    orch = _orchestrator(_plan({"id": "1", "agent": "executor"}), agents)
    state = await orch.execute("restart", OrchestrationContext(safe_mode=True))
    assert state.results["1"].status == "failed"
    assert "safe mode" in (state.results["1"].error or "")
    assert agents.calls == []


@pytest.mark.asyncio
async def test_high_risk_requires_container_and_fails_without_one(tmp_path) -> None:
    """High risk forces mandatory container isolation; no engine → SANDBOX_UNAVAILABLE before the agent runs."""
    agents = Agents()
    orch = _orchestrator(
        _plan({"id": "1", "agent": "operator", "description": "patch"}, risk="high"),
        agents,
        probe=FakeProbe(container=False),
    )
    ctx = OrchestrationContext(
        repo_path=str(tmp_path),
        sandbox=SandboxConfig(enabled=True, command="true", use_container=False),
    )
    state = await orch.execute("patch it", ctx)

    assert state.results["1"].status == "failed"
    assert state.results["1"].error_code == "SANDBOX_UNAVAILABLE"
    assert agents.calls == []


@needs_sh
@pytest.mark.asyncio
async def test_pre_phase_warn_downgrades_and_agent_runs(tmp_path) -> None:
    agents = Agents()
    orch = _orchestrator(_plan({"id": "1", "agent": "operator"}), agents, probe=FakeProbe())
    ctx = OrchestrationContext(
        repo_path=str(tmp_path),
        sandbox=SandboxConfig(enabled=True, command="false", fail_mode="warn", use_container=False),
    )
    state = await orch.execute("patch", ctx)

    result = state.results["1"]
    assert result.status == "completed"
    assert result.sandbox_phase == "pre"
    assert result.sandbox is not None
    assert result.sandbox.success is False
    assert result.sandbox.downgraded is True
    assert result.sandbox.method == "native"
    assert agents.count("1") == 1


@needs_sh
@pytest.mark.asyncio
async def test_pre_phase_failure_blocks_agent(tmp_path) -> None:
    agents = Agents()
    orch = _orchestrator(_plan({"id": "1", "agent": "operator"}), agents, probe=FakeProbe())
    ctx = OrchestrationContext(
        repo_path=str(tmp_path),
        sandbox=SandboxConfig(enabled=True, command="false", use_container=False),
    )
    state = await orch.execute("patch", ctx)
    assert state.results["1"].error_code == "SANDBOX_FAILED"
    assert agents.calls == []


@needs_sh
@pytest.mark.asyncio
async def test_post_phase_failure_is_fatal_even_in_warn_mode(tmp_path) -> None:
    agents = Agents()
    orch = _orchestrator(
        _plan({"id": "1", "agent": "advisor", "sandboxPhase": "post"}),
        agents,
        probe=FakeProbe(),
    )
    ctx = OrchestrationContext(
        repo_path=str(tmp_path),
        sandbox=SandboxConfig(enabled=True, command="false", fail_mode="warn", use_container=False),
    )
    state = await orch.execute("verify", ctx)

    assert agents.count("1") == 1
    assert state.results["1"].status == "failed"
    assert state.results["1"].error_code == "SANDBOX_FAILED"


@pytest.mark.asyncio
async def test_disabled_sandbox_skips_phase_checks() -> None:
    agents = Agents()
    orch = _orchestrator(_plan({"id": "1", "agent": "operator"}), agents)
    state = await orch.execute("patch", OrchestrationContext(repo_path="/nonexistent"))
    assert state.results["1"].status == "completed"
    assert state.results["1"].sandbox is None
    assert any("Sandbox disabled" in line for line in state.logs)


@pytest.mark.asyncio
async def test_reviewer_rejection_records_regression() -> None:
    agents = Agents(outputs={"r": {"type": "review", "approved": False, "summary": "tests missing"}})
    audit = RecordingAudit()
    orch = _orchestrator(_plan({"id": "r", "agent": "reviewer"}), agents, audit=audit)
    state = await orch.execute("review", OrchestrationContext(incident_id="inc-1"))

    assert state.results["r"].status == "completed"
    assert any("Reviewer rejected the change: tests missing" in line for line in state.logs)
    assert "regression.recorded" in audit.actions()
    assert audit.actions()[0] == "orchestration.start"
    assert audit.actions()[-1] == "orchestration.finish"
    mitigation = next(e for e in audit.events if e.action == "mitigation.status")
    assert mitigation.message == "mitigated"


@pytest.mark.asyncio
async def test_task_failure_audited_and_regression_for_mutating_agent() -> None:
    agents = Agents(failing={"1"})
    audit = RecordingAudit()
    orch = _orchestrator(_plan({"id": "1", "agent": "operator"}), agents, audit=audit)
    await orch.execute("patch", OrchestrationContext(incident={"id": "inc-2"}))

    actions = audit.actions()
    assert "task.failed" in actions
    assert "regression.recorded" in actions


@pytest.mark.asyncio
async def test_no_incident_means_no_mitigation_audit() -> None:
    audit = RecordingAudit()
    orch = _orchestrator(_plan({"id": "1", "agent": "advisor"}), Agents(), audit=audit)
    await orch.execute("analyze")
    assert "mitigation.status" not in audit.actions()


@pytest.mark.asyncio
async def test_completed_event_carries_latest_rollback_plan() -> None:
    agents = Agents(outputs={
        "1": {"rollbackPlan": "git revert aaa"},
        "2": {"rollback_instructions": "git revert bbb"},
    })
    orch = _orchestrator(
        _plan({"id": "1", "agent": "operator"}, {"id": "2", "agent": "operator", "dependencies": ["1"]}),
        agents,
    )
    seen = []
    orch.events.subscribe(seen.append)
    state = await orch.execute("patch twice")

    completed = next(e for e in seen if e.kind == "completed")
    assert completed.payload["status"] == "completed"
    assert completed.payload["rollback_plan"] == "git revert bbb"
    assert find_rollback_plan(state) == "git revert bbb"
    assert "### Rollback" in format_results(state)


@pytest.mark.asyncio
async def test_failing_reproducer_is_not_fatal() -> None:
    class BrokenReproducer:
        async def reproduce(self, incident, repo_path, sandbox):
            raise RuntimeError("twin builder offline")

    agents = Agents()
    orch = _orchestrator(_plan({"id": "1", "agent": "advisor"}), agents, reproducer=BrokenReproducer())
    state = await orch.execute("fix", OrchestrationContext(repo_path="/repo", incident={"id": "inc-3"}))

    assert state.status == "completed"
    assert state.reproduction is None
    assert any("Incident reproduction failed: twin builder offline" in line for line in state.logs)


@pytest.mark.asyncio
async def test_reproduction_report_reaches_planner_and_agents() -> None:
    report = ReproductionReport(
        status="reproduced",
        twin_id="twin-7",
        harness=HarnessCommands(run=["npm test"]),
        warnings=["touches billing"],
    )

    class Reproducer:
        async def reproduce(self, incident, repo_path, sandbox):
            return report

    agents = Agents()
    planner = StaticPlanner(_plan({"id": "1", "agent": "advisor"}))
    orch = Orchestrator(planner=planner, registry=agents.registry(*ALL_KINDS), reproducer=Reproducer())
    seen = []
    orch.events.subscribe(seen.append)
    state = await orch.execute(
        "fix",
        OrchestrationContext(repo_path="/repo", incident={"id": "inc-4"}, sandbox=SandboxConfig(enabled=False)),
    )

    assert planner.calls[0][2] is report
    assert state.reproduction is report
    assert agents.calls[0].reproduction is report
    assert any(e.kind == "twin_built" for e in seen)
    assert any("Impact warnings: touches billing" in line for line in state.logs)


@pytest.mark.asyncio
async def test_invalid_planner_output_raises_and_stores_nothing() -> None:
    orch = _orchestrator("definitely not json", Agents())
    with pytest.raises(PlanInvalid):
        await orch.execute("fix")
    assert len(orch.store) == 0


@pytest.mark.asyncio
async def test_planner_may_return_plan_instance() -> None:
    plan = Plan(id="p-direct", subtasks=[], risk_level="critical")
    orch = _orchestrator(plan, Agents())
    state = await orch.execute("nothing to do")
    assert state.plan.id == "p-direct"
    assert state.plan.requires_approval is True
    assert state.status == "completed"


@pytest.mark.asyncio
async def test_observer_and_audit_failures_do_not_abort_run() -> None:
    class BrokenAudit:
        async def emit(self, event):
            raise ConnectionError("audit backend down")

    def broken_observer(event):
        raise RuntimeError("observer bug")

    orch = _orchestrator(_plan({"id": "1", "agent": "advisor"}), Agents(), audit=BrokenAudit())
    orch.events.subscribe(broken_observer)
    state = await orch.execute("analyze", OrchestrationContext(incident_id="inc-5"))
    assert state.status == "completed"
    assert state.results["1"].status == "completed"


@pytest.mark.asyncio
async def test_context_accepts_plain_mapping_and_keeps_orchestration_id() -> None:
    orch = _orchestrator(_plan({"id": "1", "agent": "advisor"}), Agents())
    state = await orch.execute("analyze", {"orchestrationId": "orch-fixed", "repoPath": "/repo"})
    assert state.id == "orch-fixed"
    assert state.logs[0].startswith("[")
    assert any('Starting orchestration for: "analyze"' in line for line in state.logs)


def test_format_results_marks_failures() -> None:
    state = OrchestrationState(
        id="o",
        plan=Plan(id="p", summary="S"),
        status="failed",
    )
    state.record(TaskResult(task_id="1", status="failed", agent="executor", error="boom"))
    text = format_results(state)
    assert "**Status:** failed" in text
    assert "error: boom" in text


@pytest.mark.asyncio
async def test_critical_risk_requires_approval_before_first_wave() -> None:
    agents = Agents()
    orch = _orchestrator(
        _plan({"id": "1", "agent": "advisor"}, risk="critical", requires_approval=False),
        agents,
    )
    seen = []
    orch.events.subscribe(seen.append)
    state = await orch.execute("fix")

    created = next(e for e in seen if e.kind == "plan_created")
    first_start = next(i for i, e in enumerate(seen) if e.kind == "task_started")
    assert seen.index(created) < first_start
    assert created.payload["plan"]["requiresApproval"] is True
    assert state.requires_approval is True
    assert any("Approval forced by risk level critical" in line for line in state.logs)


@pytest.mark.asyncio
async def test_planner_plan_instance_with_duplicate_ids_is_rejected() -> None:
    """Plan instances bypassing validation are still checked before any state exists."""
    plan = Plan.model_construct(
        id="p-dup",
        original_request="",
        summary="",
        subtasks=[Subtask(id="a"), Subtask(id="a")],
        estimated_time="unknown",
        risk_level="low",
        requires_approval=False,
    )
    agents = Agents()
    orch = _orchestrator(plan, agents)
    with pytest.raises(PlanInvalid):
        await orch.execute("fix")
    assert len(orch.store) == 0
    assert agents.calls == []


@pytest.mark.asyncio
async def test_same_wave_tasks_are_dispatched_concurrently() -> None:
    """Two independent tasks each wait for the other; sequential dispatch would time out."""
    started = {"1": asyncio.Event(), "2": asyncio.Event()}

    async def meet(agent_input: AgentInput) -> Any:
        other = "2" if agent_input.task_id == "1" else "1"
        started[agent_input.task_id].set()
        await asyncio.wait_for(started[other].wait(), timeout=2.0)
        return {"type": "advice"}

    orch = Orchestrator(
        planner=StaticPlanner(_plan({"id": "1", "agent": "advisor"}, {"id": "2", "agent": "advisor"})),
        registry=AgentRegistry({"advisor": meet}),
    )
    state = await orch.execute("go")

    assert state.status == "completed"
    assert {r.status for r in state.results.values()} == {"completed"}


@pytest.mark.asyncio
async def test_high_priority_failure_waits_for_slow_sibling() -> None:
    """The failing wave is joined before aborting, so the slow sibling's result is kept."""
    calls: list[str] = []

    async def handler(agent_input: AgentInput) -> Any:
        calls.append(agent_input.task_id)
        if agent_input.task_id == "fast-fail":
            raise RuntimeError("broken")
        await asyncio.sleep(0.1)
        return {"type": "advice", "slow": True}

    orch = Orchestrator(
        planner=StaticPlanner(
            _plan(
                {"id": "fast-fail", "agent": "advisor", "priority": "high"},
                {"id": "slow", "agent": "advisor"},
                {"id": "later", "agent": "advisor", "dependencies": ["slow"]},
            )
        ),
        registry=AgentRegistry({"advisor": handler}),
    )
    state = await orch.execute("go")

    assert state.status == "failed"
    assert state.results["fast-fail"].status == "failed"
    assert state.results["slow"].status == "completed"
    assert state.results["slow"].output == {"type": "advice", "slow": True}
    assert "later" not in state.results
    assert "later" not in calls
