"""
Orchestrator: drives a plan through its waves.

planning -> executing -> (awaiting-approval <-> executing) -> completed | failed

The approval gate is the only suspension point. A suspended run stays in the
OrchestrationStore until resume_after_approval is called with its id.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Mapping

from loguru import logger

from remedybot.audit import AuditEvent, AuditSink, emit_safely
from remedybot.orchestrator.agents import (
    AgentInput,
    AgentRegistry,
    IncidentReproducer,
    Planner,
    output_type,
    review_approved,
)
from remedybot.orchestrator.events import EventChannel
from remedybot.orchestrator.models import (
    ExecutionPolicy,
    OrchestrationContext,
    OrchestrationState,
    Plan,
    ReproductionReport,
    Subtask,
    TaskResult,
    enforce_risk_approval,
    parse_plan,
)
from remedybot.orchestrator.policy import MUTATING_AGENTS, approval_gate, check_policy, sandbox_phase_for
from remedybot.orchestrator.store import OrchestrationRun, OrchestrationStore
from remedybot.orchestrator.waves import compute_waves
from remedybot.sandbox.models import SandboxConfig, SandboxResult
from remedybot.sandbox.runner import CapabilityProbe, raise_for_outcome, run_sandbox
from remedybot.utils.exceptions import AgentError, InvalidTransition, RemedyBotError
from remedybot.utils.helpers import truncate, utc_now, utc_now_iso

ROLLBACK_KEYS = ("rollbackPlan", "rollback_plan", "rollbackInstructions", "rollback_instructions")


class Orchestrator:
    """
    Coordinates planner, agents and sandbox for remediation requests.

    One instance serves many runs; per-run state lives in the injected store.
    """

    def __init__(
        self,
        *,
        planner: Planner,
        registry: AgentRegistry,
        store: OrchestrationStore | None = None,
        events: EventChannel | None = None,
        audit: AuditSink | None = None,
        reproducer: IncidentReproducer | None = None,
        policy: ExecutionPolicy | None = None,
        sandbox: SandboxConfig | None = None,
        probe: CapabilityProbe | None = None,
    ):
        self.planner = planner
        self.registry = registry
        self.store = store or OrchestrationStore()
        self.events = events or EventChannel()
        self.audit = audit
        self.reproducer = reproducer
        self.default_policy = policy
        self.default_sandbox = sandbox
        self.probe = probe
        self._pending_logs: dict[str, list[str]] = {}

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    def _log(self, orchestration_id: str, message: str, state: OrchestrationState | None = None) -> None:
        entry = f"[{utc_now_iso()}] {message}"
        if state is not None:
            state.logs.append(entry)
        else:
            self._pending_logs.setdefault(orchestration_id, []).append(entry)
        logger.info(f"[{orchestration_id}] {message}")
        self.events.emit("log", orchestration_id, message=entry)

    def _run_log(self, run: OrchestrationRun, message: str) -> None:
        self._log(run.id, message, run.state)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def execute(
        self,
        request: str,
        context: OrchestrationContext | Mapping[str, Any] | None = None,
    ) -> OrchestrationState:
        """
        Plan and run a request until it completes, fails or waits for approval.

        Raises PlanInvalid when the planner output cannot be turned into a
        Plan; no state is created in that case.
        """
        ctx = _as_context(context)
        orchestration_id = ctx.orchestration_id or f"orch-{uuid.uuid4().hex[:12]}"
        policy = ctx.execution_policy or self.default_policy
        sandbox = _merge_sandbox(self.default_sandbox, ctx.sandbox)
        incident_id = ctx.resolved_incident_id

        self._log(orchestration_id, f'Starting orchestration for: "{truncate(request, 100)}"')
        await emit_safely(
            self.audit,
            AuditEvent(
                action="orchestration.start",
                message=request[:200],
                metadata={
                    "orchestrationId": orchestration_id,
                    "incidentId": incident_id,
                    "executionPolicy": policy.model_dump(by_alias=True) if policy else None,
                },
            ),
        )

        try:
            reproduction = await self._reproduce(orchestration_id, ctx, sandbox)
            if reproduction is not None and reproduction.harness and reproduction.harness.run and sandbox is not None:
                sandbox = sandbox.model_copy(update={"harness": reproduction.harness})
                self._log(orchestration_id, f"Harness with {len(reproduction.harness.run)} run command(s) injected into sandbox")

            self._log(orchestration_id, "Phase 1: planning")
            raw = await self.planner.plan(request, ctx, reproduction)
            plan = raw if isinstance(raw, Plan) else parse_plan(raw, request=request)
            plan.check_unique_ids()
        finally:
            pending = self._pending_logs.pop(orchestration_id, [])

        planner_flag = plan.requires_approval
        plan = enforce_risk_approval(plan)
        state = OrchestrationState(id=orchestration_id, plan=plan, reproduction=reproduction, logs=pending)
        run = OrchestrationRun(state=state, context=ctx, policy=policy, sandbox=sandbox)
        self.store.put(run)

        self._run_log(run, f"Plan created: {plan.summary}")
        self._run_log(
            run,
            f"Subtasks: {len(plan.subtasks)}, risk: {plan.risk_level}, requires approval: {plan.requires_approval}",
        )
        if plan.requires_approval != planner_flag:
            self._run_log(run, f"Approval forced by risk level {plan.risk_level}")
        self.events.emit("plan_created", run.id, plan=plan.model_dump(by_alias=True, mode="json"))

        state.status = "executing"
        run.waves = compute_waves(plan)
        self._run_log(run, f"Execution waves: {len(run.waves)}")
        return await self._run_waves(run)

    async def resume_after_approval(self, orchestration_id: str) -> OrchestrationState:
        """
        Grant approval and continue a suspended run from its paused wave.

        Raises NotFoundError for unknown ids and InvalidTransition when the run
        is not awaiting approval. Subtasks already in results are skipped.
        """
        run = self.store.require(orchestration_id)
        if run.state.status != "awaiting-approval":
            raise InvalidTransition(orchestration_id, run.state.status, "resume")
        run.state.approval_granted = True
        run.state.status = "executing"
        run.state.touch()
        self._run_log(run, "Approval granted; resuming")
        if not run.waves:
            run.waves = compute_waves(run.state.plan)
        return await self._run_waves(run)

    def get_state(self, orchestration_id: str) -> OrchestrationState | None:
        run = self.store.get(orchestration_id)
        return run.state if run else None

    # ------------------------------------------------------------------
    # Wave loop
    # ------------------------------------------------------------------

    async def _run_waves(self, run: OrchestrationRun) -> OrchestrationState:
        state = run.state
        plan = state.plan
        total = len(run.waves)

        for wave_idx in range(state.current_wave, total):
            wave = run.waves[wave_idx]
            state.current_wave = wave_idx
            pending = [task for task in wave if task.id not in state.results]
            self._run_log(run, f"=== Wave {wave_idx + 1}/{total} ({len(pending)} task(s)) ===")

            gated = approval_gate(pending, plan, run.policy)
            if gated is not None and not state.approval_granted:
                state.status = "awaiting-approval"
                state.touch()
                self._run_log(run, f"Waiting for human approval before [{gated.agent}] {gated.id}")
                self.events.emit(
                    "approval_required",
                    run.id,
                    plan_id=plan.id,
                    task=gated.model_dump(by_alias=True, mode="json"),
                    wave=wave_idx,
                )
                return state

            wave_results = await asyncio.gather(*(self.execute_task(run, task) for task in pending))
            self.events.emit(
                "wave_completed",
                run.id,
                wave=wave_idx,
                results=[r.model_dump(by_alias=True, mode="json") for r in wave_results],
            )

            by_id = {task.id: task for task in pending}
            critical = next(
                (r for r in wave_results if r.status == "failed" and by_id[r.task_id].priority == "high"),
                None,
            )
            if critical is not None:
                self._run_log(run, f"High-priority task {critical.task_id} failed; aborting remaining waves")
                state.status = "failed"
                break
            self._run_log(run, f"Wave {wave_idx + 1} done")

        return await self._finish(run)

    async def _finish(self, run: OrchestrationRun) -> OrchestrationState:
        state = run.state
        if state.status != "failed":
            state.status = "completed"
        state.touch()
        incident_id = run.context.resolved_incident_id
        if incident_id:
            await emit_safely(
                self.audit,
                AuditEvent(
                    action="mitigation.status",
                    severity="info" if state.status == "completed" else "warn",
                    message="mitigated" if state.status == "completed" else "failed",
                    metadata={"incidentId": incident_id, "orchestrationId": state.id},
                ),
            )
        await emit_safely(
            self.audit,
            AuditEvent(
                action="orchestration.finish",
                severity="info" if state.status == "completed" else "warn",
                message=f"status={state.status}",
                metadata={"orchestrationId": state.id, "incidentId": incident_id, "waves": state.current_wave + 1},
            ),
        )
        self._run_log(run, f"Orchestration finished with status: {state.status}")
        self.events.emit(
            "completed",
            run.id,
            status=state.status,
            results=[r.model_dump(by_alias=True, mode="json") for r in state.results.values()],
            rollback_plan=find_rollback_plan(state),
        )
        self.store.remove(run.id)
        return state

    # ------------------------------------------------------------------
    # Single task
    # ------------------------------------------------------------------

    async def execute_task(self, run: OrchestrationRun, task: Subtask) -> TaskResult:
        """
        Run one subtask: policy, optional sandbox checks, agent dispatch.

        Every failure is caught and recorded on the returned TaskResult.
        """
        state = run.state
        self._run_log(run, f"Starting: [{task.agent}] {task.description}")
        self.events.emit("task_started", run.id, task=task.model_dump(by_alias=True, mode="json"))
        phase = sandbox_phase_for(task)
        result = TaskResult(task_id=task.id, status="running", agent=task.agent, sandbox_phase=phase)

        try:
            check_policy(task, run.policy)
            if task.agent == "executor" and run.context.safe_mode:
                raise AgentError(task.agent, "safe mode enabled; executor blocked")
            self.registry.require(task.agent)

            dependency_context = {
                dep: state.results[dep].output
                for dep in task.dependencies
                if dep in state.results and state.results[dep].output
            }

            if phase == "pre":
                result.sandbox = await self._sandbox_check(run, task, "pre")

            result.output = await self.registry.dispatch(
                task.agent,
                AgentInput(
                    task_id=task.id,
                    agent=task.agent,
                    description=task.description,
                    repo_path=run.context.repo_path,
                    dependency_context=dependency_context,
                    incident_context=task.incident_context,
                    priority=task.priority,
                    context=run.context,
                    reproduction=state.reproduction,
                ),
            )

            if phase == "post":
                result.sandbox = await self._sandbox_check(run, task, "post")

            if task.agent == "reviewer" or output_type(result.output) == "review":
                if review_approved(result.output) is False:
                    summary = result.output.get("summary", "") if isinstance(result.output, Mapping) else ""
                    self._run_log(run, f"Reviewer rejected the change: {summary}")
                    await self._regression(run, "Reviewer rejected the delivery")

            result.status = "completed"
            result.completed_at = utc_now()
            self._run_log(run, f"Completed: [{task.agent}] {task.id}")
        except Exception as e:
            error = e if isinstance(e, RemedyBotError) else AgentError(task.agent, str(e) or type(e).__name__)
            result.status = "failed"
            result.error = error.message
            result.error_code = error.code
            result.completed_at = utc_now()
            self._run_log(run, f"Failed: [{task.agent}] {task.id} - {error.message}")
            if task.agent in MUTATING_AGENTS:
                await self._regression(run, f"Failure in {task.agent}: {error.message}")
            await emit_safely(
                self.audit,
                AuditEvent(
                    action="task.failed",
                    severity="error",
                    message=error.message,
                    metadata={"orchestrationId": run.id, "taskId": task.id, "agent": task.agent, "code": error.code},
                ),
            )

        state.record(result)
        payload = result.model_dump(by_alias=True, mode="json")
        if result.status == "completed":
            self.events.emit("task_completed", run.id, task_id=task.id, result=payload)
        else:
            self.events.emit("task_failed", run.id, task_id=task.id, error=result.error, result=payload)
        return result

    async def _sandbox_check(self, run: OrchestrationRun, task: Subtask, phase: str) -> SandboxResult | None:
        sandbox = run.sandbox
        if sandbox is None or not sandbox.enabled:
            self._run_log(run, f"Sandbox disabled; skipping {phase} check for [{task.agent}] {task.id}")
            return None
        repo_path = sandbox.repo_path or run.context.repo_path
        if not repo_path:
            self._run_log(run, f"Sandbox enabled but no repo path known; skipping {phase} check for {task.id}")
            return None

        update: dict[str, Any] = {"repo_path": repo_path}
        if run.state.plan.is_high_risk:
            update.update(isolation_profile="strict", require_container=True)
        config = sandbox.model_copy(update=update)

        self._run_log(
            run,
            f"Sandbox {phase} check for [{task.agent}] {task.id} "
            f"(profile={config.isolation_profile}, container required={config.require_container})",
        )
        result = await run_sandbox(config, probe=self.probe, on_log=lambda m: self._run_log(run, m))
        if result.reproduction_successful and phase == "pre":
            self._run_log(run, "Sandbox reproduced the incident before the fix")
        raise_for_outcome(result, config, phase=phase)
        return result

    async def _reproduce(
        self,
        orchestration_id: str,
        ctx: OrchestrationContext,
        sandbox: SandboxConfig | None,
    ) -> ReproductionReport | None:
        repo_path = ctx.repo_path or (sandbox.repo_path if sandbox else None)
        if not ctx.incident or not repo_path:
            return None
        if self.reproducer is None:
            self._log(orchestration_id, "Incident present but no reproducer configured; skipping twin phase")
            return None

        self._log(orchestration_id, "Phase 0: incident reproduction")
        try:
            report = await self.reproducer.reproduce(dict(ctx.incident), repo_path, sandbox)
        except Exception as e:
            self._log(orchestration_id, f"Incident reproduction failed: {e}. Continuing without twin context.")
            return None

        self._log(orchestration_id, f"Twin prepared: {report.twin_id or '-'} (status: {report.status})")
        if report.risk:
            self._log(orchestration_id, f"Twin risk: {report.risk}")
        if report.warnings:
            self._log(orchestration_id, f"Impact warnings: {'; '.join(report.warnings)}")
        self.events.emit("twin_built", orchestration_id, report=report.model_dump(by_alias=True, mode="json"))
        await emit_safely(
            self.audit,
            AuditEvent(
                action="twin.built",
                message=f"Twin {report.twin_id or '-'} prepared",
                metadata={"twinId": report.twin_id, "status": report.status, "risk": report.risk},
            ),
        )
        return report

    async def _regression(self, run: OrchestrationRun, note: str) -> None:
        incident_id = run.context.resolved_incident_id
        if not incident_id:
            return
        await emit_safely(
            self.audit,
            AuditEvent(
                action="regression.recorded",
                severity="warn",
                message=note,
                metadata={"incidentId": incident_id, "orchestrationId": run.id},
            ),
        )


def _as_context(context: OrchestrationContext | Mapping[str, Any] | None) -> OrchestrationContext:
    if context is None:
        return OrchestrationContext()
    if isinstance(context, OrchestrationContext):
        return context
    return OrchestrationContext.model_validate(dict(context))


def _merge_sandbox(defaults: SandboxConfig | None, override: SandboxConfig | None) -> SandboxConfig | None:
    """Per-request sandbox fields win over configured defaults."""
    if override is None:
        return defaults.model_copy() if defaults else None
    if defaults is None:
        return override.model_copy()
    return defaults.model_copy(update={name: getattr(override, name) for name in override.model_fields_set})


def find_rollback_plan(state: OrchestrationState) -> str | None:
    """Most recent non-empty rollback plan among task outputs (reverse completion order)."""
    for result in reversed(list(state.results.values())):
        output = result.output
        if not isinstance(output, Mapping):
            continue
        for key in ROLLBACK_KEYS:
            value = output.get(key)
            if isinstance(value, str) and value.strip():
                return value
    return None


def format_results(state: OrchestrationState) -> str:
    """Markdown summary of a run."""
    lines = [
        f"## Orchestration: {state.id}",
        f"**Status:** {state.status}",
        f"**Plan:** {state.plan.summary}",
        f"**Risk:** {state.plan.risk_level}",
        "",
        "### Task results",
    ]
    icons = {"completed": "[ok]", "failed": "[failed]", "running": "[..]"}
    for task_id, result in state.results.items():
        task = state.plan.subtask(task_id)
        lines.append(f"{icons.get(result.status, '[?]')} **[{result.agent}]** {task.description if task else task_id}")
        if result.error:
            lines.append(f"  - error: {result.error}")
        if result.agent == "reviewer":
            approved = review_approved(result.output)
            if approved is not None:
                lines.append(f"  - review: {'approved' if approved else 'rejected'}")
    rollback = find_rollback_plan(state)
    if rollback:
        lines.extend(["", "### Rollback", "```", rollback, "```"])
    return "\n".join(lines)
