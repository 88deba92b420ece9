"""Layered topological grouping of plan subtasks into concurrently executable waves."""

from __future__ import annotations

from loguru import logger

from remedybot.orchestrator.models import Plan, Subtask


def _partition(subtasks: list[Subtask]) -> tuple[list[list[Subtask]], list[Subtask]]:
    remaining = list(subtasks)
    completed: set[str] = set()
    waves: list[list[Subtask]] = []
    forced: list[Subtask] = []

    while remaining:
        wave = [task for task in remaining if all(dep in completed for dep in task.dependencies)]
        if not wave:
            wave = [remaining[0]]
            forced.append(remaining[0])
        scheduled = {task.id for task in wave}
        remaining = [task for task in remaining if task.id not in scheduled]
        # Updated after the pass: members of one wave never depend on each other.
        completed.update(scheduled)
        waves.append(wave)

    return waves, forced


def compute_waves(plan: Plan | list[Subtask]) -> list[list[Subtask]]:
    """
    Partition subtasks into waves.

    Each pass collects, in plan order, every remaining subtask whose
    dependencies all finished in earlier waves. A pass that schedules nothing
    (dependency cycle or dangling reference) force-schedules the first
    remaining subtask so the loop always terminates; that subtask may run
    before its declared dependencies.

    Pure and deterministic: the same plan always yields the same partition.
    """
    subtasks = plan.subtasks if isinstance(plan, Plan) else plan
    waves, forced = _partition(subtasks)
    for task in forced:
        logger.warning(
            f"Dependency cycle or unknown dependency detected; forcing subtask {task.id} "
            f"(depends on {', '.join(task.dependencies)})"
        )
    return waves


def forced_subtasks(plan: Plan | list[Subtask]) -> list[str]:
    """Ids of subtasks that only the stall fallback can schedule."""
    subtasks = plan.subtasks if isinstance(plan, Plan) else plan
    return [task.id for task in _partition(subtasks)[1]]
