"""Execution policy checks: agent allow-list, forbidden keywords, approval gating."""

from __future__ import annotations

from remedybot.orchestrator.models import ExecutionPolicy, Plan, Subtask
from remedybot.utils.exceptions import PolicyViolation

# Agent kinds that mutate source or take privileged action
MUTATING_AGENTS: frozenset[str] = frozenset({"operator", "executor"})


def check_policy(task: Subtask, policy: ExecutionPolicy | None) -> None:
    """Raise PolicyViolation if the policy denies this subtask."""
    if policy is None:
        return
    if policy.allowed_agents is not None and task.agent not in policy.allowed_agents:
        raise PolicyViolation(f"Agent {task.agent} blocked by execution policy", agent=task.agent)
    description = (task.description or "").lower()
    for keyword in policy.forbidden_keywords:
        if keyword and keyword.lower() in description:
            raise PolicyViolation(
                f"Task blocked by guardrail (keyword: {keyword})",
                agent=task.agent,
                keyword=keyword,
            )


def approval_gate(wave: list[Subtask], plan: Plan, policy: ExecutionPolicy | None) -> Subtask | None:
    """First subtask in the wave that must wait for human approval, if the plan requires it."""
    if not plan.requires_approval:
        return None
    gated = policy.require_approval_for if policy is not None else ["executor"]
    for task in wave:
        if task.agent in gated:
            return task
    return None


def sandbox_phase_for(task: Subtask) -> str | None:
    """Declared phase, or pre for mutating agents that declare none."""
    if task.sandbox_phase:
        return task.sandbox_phase
    if task.agent in MUTATING_AGENTS:
        return "pre"
    return None
