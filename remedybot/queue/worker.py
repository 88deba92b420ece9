"""
Agent worker loop: consume the task stream, run orchestrations or single agents,
publish results, retry or dead-letter failures.
"""

from __future__ import annotations

import asyncio
import inspect
import os
import time
import uuid
from typing import Any, Awaitable, Callable

from loguru import logger

from remedybot.config.schema import QueueConfig
from remedybot.orchestrator.agents import AgentInput, AgentRegistry
from remedybot.orchestrator.engine import Orchestrator
from remedybot.orchestrator.events import OrchestrationEvent
from remedybot.orchestrator.models import OrchestrationContext
from remedybot.queue.retry import RetryPolicy
from remedybot.queue.streams import StreamEntry, StreamStore
from remedybot.utils.exceptions import (
    InvalidTransition,
    NotFoundError,
    classify_exception,
    sanitize_error_message,
)
from remedybot.utils.helpers import utc_now_iso

QuotaHook = Callable[[str], "Awaitable[None] | None"]


class AgentWorker:
    """
    Consumes `queue.stream` as one member of `queue.group`.

    Roles: `orchestrate` runs a full orchestration, `approve` resumes a
    suspended one, any registered agent kind runs that agent directly.
    Unknown roles publish an error result and are acknowledged without retry.
    """

    def __init__(
        self,
        *,
        streams: StreamStore,
        orchestrator: Orchestrator,
        retry: RetryPolicy,
        config: QueueConfig | None = None,
        registry: AgentRegistry | None = None,
        consumer: str | None = None,
        on_consume: QuotaHook | None = None,
        on_refund: QuotaHook | None = None,
    ):
        self.streams = streams
        self.orchestrator = orchestrator
        self.retry = retry
        self.config = config or QueueConfig()
        self.registry = registry or orchestrator.registry
        self.consumer = consumer or f"worker-{os.getpid()}"
        self.on_consume = on_consume
        self.on_refund = on_refund
        self._running = False
        self._root_tasks: dict[str, str] = {}  # orchestration id -> task id that started it
        orchestrator.events.subscribe(self._on_event)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def setup(self) -> None:
        self.streams.ensure_group(self.config.stream, self.config.group)

    async def recover_pending(self) -> int:
        """Claim and process entries left pending by crashed consumers."""
        entries = self.streams.claim(
            self.config.stream,
            self.config.group,
            self.consumer,
            min_idle_ms=self.config.claim_idle_ms,
            count=self.config.batch_size,
        )
        if entries:
            logger.info(f"Recovered {len(entries)} pending entr{'y' if len(entries) == 1 else 'ies'}")
        for entry in entries:
            await self.process_entry(entry)
        return len(entries)

    async def run(self) -> None:
        """Run until stop() is called. Loop-level errors are logged and followed by a pause."""
        self.setup()
        self._running = True
        logger.info(f"Agent worker started (consumer={self.consumer}, stream={self.config.stream})")
        try:
            await self.recover_pending()
        except Exception as e:
            logger.error(f"Pending recovery failed: {e}")
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Worker loop error: {e}")
                await asyncio.sleep(self.config.error_pause_s)
        logger.info("Agent worker stopped")

    def stop(self) -> None:
        self._running = False

    async def run_once(self) -> int:
        entries = await self.streams.read_group_blocking(
            self.config.stream,
            self.config.group,
            self.consumer,
            count=self.config.batch_size,
            block_ms=self.config.block_ms,
        )
        for entry in entries:
            await self.process_entry(entry)
        if entries:
            self.trim_streams()
        return len(entries)

    def trim_streams(self) -> int:
        """Trim acknowledged task entries and old results to the configured lengths."""
        removed = 0
        for stream, max_len in (
            (self.config.stream, self.config.max_len),
            (self.config.results_stream, self.config.results_max_len),
        ):
            if max_len > 0:
                removed += self.streams.trim(stream, max_len)
        if removed:
            logger.debug(f"Trimmed {removed} stream entr{'y' if removed == 1 else 'ies'}")
        return removed

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------

    async def process_entry(self, entry: StreamEntry) -> None:
        """Handle one delivery; ack after success, retry republish or dead-lettering."""
        data = dict(entry.fields)
        role = str(data.get("role") or "")
        task_id = str(data.get("taskId") or entry.id)
        logger.info(f"Task received: {entry.id} (role={role or '-'})")
        started = time.monotonic()

        try:
            outcome = await self._handle(role, task_id, data)
            elapsed = int((time.monotonic() - started) * 1000)
            logger.info(f"Task {entry.id} done in {elapsed}ms")
            self.publish(entry.id, {"role": role, "outcome": outcome, "elapsed": elapsed})
            if role == "orchestrate":
                await self._call_hook(self.on_consume, task_id, "consume")
        except Exception as e:
            error = sanitize_error_message(str(e) or type(e).__name__)
            code, category, _ = classify_exception(e)
            logger.error(f"Task {entry.id} failed ({code}, {category.value}): {error}")
            outcome = self.retry.requeue_for_retry(self.config.stream, data, error, error_code=code)
            if outcome.requeued:
                self.publish(
                    entry.id,
                    {
                        "role": role,
                        "error": error,
                        "errorCode": code,
                        "retry": {"attempt": outcome.attempt, "nextDelayMs": outcome.next_delay_ms},
                    },
                )
            else:
                self.publish(
                    entry.id,
                    {
                        "role": role,
                        "error": error,
                        "errorCode": code,
                        "dlq": True,
                        "finalAttempt": outcome.attempt,
                        "deadLetter": outcome.exhausted.to_dict() if outcome.exhausted else None,
                    },
                )
                if role == "orchestrate":
                    await self._call_hook(self.on_refund, task_id, "refund")

        self.streams.ack(self.config.stream, self.config.group, entry.id)

    async def _handle(self, role: str, task_id: str, data: dict[str, Any]) -> Any:
        if role == "orchestrate":
            return await self._orchestrate(task_id, data)
        if role == "approve":
            return await self._approve(data)
        if role and self.registry.has(role):
            agent_input = AgentInput(
                task_id=task_id,
                agent=role,
                description=str(data.get("description") or data.get("request") or ""),
                repo_path=data.get("repoPath"),
                dependency_context=dict(data.get("dependencyContext") or {}),
                incident_context=data.get("incidentContext"),
                priority=str(data.get("priority") or "medium"),
            )
            return await self.registry.dispatch(role, agent_input)
        logger.warning(f"Unknown role: {role or '-'}")
        return {"error": f"Unknown role: {role or '-'}"}

    async def _orchestrate(self, task_id: str, data: dict[str, Any]) -> dict[str, Any]:
        request = data.get("request")
        if not isinstance(request, str) or not request.strip():
            raise ValueError("orchestrate task requires a non-empty 'request'")
        raw_context = data.get("context")
        context = OrchestrationContext.model_validate(raw_context if isinstance(raw_context, dict) else {})
        orchestration_id = context.orchestration_id or f"orch-{uuid.uuid4().hex[:12]}"
        context = context.model_copy(update={"orchestration_id": orchestration_id, "task_id": context.task_id or task_id})
        self._root_tasks[orchestration_id] = task_id
        try:
            state = await self.orchestrator.execute(request, context)
        finally:
            if orchestration_id not in self.orchestrator.store:
                self._root_tasks.pop(orchestration_id, None)
        return {"orchestrationId": state.id, "status": state.status}

    async def _approve(self, data: dict[str, Any]) -> dict[str, Any]:
        orchestration_id = str(data.get("orchestrationId") or "")
        logger.info(f"Approval received for {orchestration_id or '-'}")
        try:
            state = await self.orchestrator.resume_after_approval(orchestration_id)
        except NotFoundError:
            return {"error": "Orchestration not found or expired", "orchestrationId": orchestration_id}
        except InvalidTransition as e:
            return {"error": e.message, "orchestrationId": orchestration_id}
        finally:
            if orchestration_id not in self.orchestrator.store:
                self._root_tasks.pop(orchestration_id, None)
        return {"orchestrationId": state.id, "status": state.status}

    # ------------------------------------------------------------------
    # Results stream
    # ------------------------------------------------------------------

    def publish(self, task_id: str, result: dict[str, Any]) -> None:
        """Publish to the results stream; failures are logged only."""
        try:
            self.streams.add(
                self.config.results_stream,
                {"taskId": task_id, "result": result, "timestamp": utc_now_iso()},
            )
        except Exception as e:
            logger.error(f"Failed to publish result for {task_id}: {e}")

    def _on_event(self, event: OrchestrationEvent) -> None:
        root = self._root_tasks.get(event.orchestration_id)
        if root is None:
            return
        payload = event.payload
        if event.kind == "plan_created":
            self.publish(root, {"type": "plan", "plan": payload.get("plan")})
        elif event.kind == "task_completed":
            self.publish(payload["task_id"], {"type": "task-complete", "result": payload.get("result")})
        elif event.kind == "task_failed":
            self.publish(
                payload["task_id"],
                {"type": "task-failed", "error": payload.get("error"), "result": payload.get("result")},
            )
        elif event.kind == "approval_required":
            self.publish(
                root,
                {"type": "approval-required", "orchestrationId": event.orchestration_id, "task": payload.get("task")},
            )
        elif event.kind == "completed":
            self.publish(
                root,
                {
                    "type": "orchestration-complete",
                    "state": {
                        "id": event.orchestration_id,
                        "status": payload.get("status"),
                        "results": payload.get("results", []),
                        "rollbackPlan": payload.get("rollback_plan"),
                    },
                },
            )

    @staticmethod
    async def _call_hook(hook: QuotaHook | None, task_id: str, name: str) -> None:
        if hook is None:
            return
        try:
            result = hook(task_id)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Quota {name} hook failed for {task_id}: {e}")
