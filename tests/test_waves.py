"""Tests for wave partitioning of plan subtasks."""

from __future__ import annotations

from remedybot.orchestrator.models import Plan, Subtask
from remedybot.orchestrator.waves import compute_waves, forced_subtasks


def _task(task_id: str, *deps: str, agent: str = "advisor") -> Subtask:
    return Subtask(id=task_id, description=f"task {task_id}", agent=agent, dependencies=list(deps))


def _ids(waves: list[list[Subtask]]) -> list[list[str]]:
    return [[t.id for t in wave] for wave in waves]


def test_independent_subtasks_share_first_wave() -> None:
    """No dependencies → a single wave in plan order."""
    waves = compute_waves([_task("A"), _task("B"), _task("C")])
    assert _ids(waves) == [["A", "B", "C"]]


def test_dependents_wait_for_earlier_wave() -> None:
    """A; B and C depend on A → [[A], [B, C]]."""
    plan = Plan(id="p1", subtasks=[_task("A"), _task("B", "A"), _task("C", "A")])
    assert _ids(compute_waves(plan)) == [["A"], ["B", "C"]]


def test_chain_and_diamond() -> None:
    """Diamond A → (B, C) → D yields three waves."""
    tasks = [_task("A"), _task("B", "A"), _task("C", "A"), _task("D", "B", "C")]
    assert _ids(compute_waves(tasks)) == [["A"], ["B", "C"], ["D"]]


def test_same_wave_members_never_depend_on_each_other() -> None:
    """B depends on A, both otherwise ready: B must land in a later wave."""
    tasks = [_task("A"), _task("B", "A"), _task("X")]
    waves = compute_waves(tasks)
    assert _ids(waves) == [["A", "X"], ["B"]]


def test_every_subtask_scheduled_exactly_once() -> None:
    """The waves form a permutation of the plan's subtasks."""
    tasks = [_task("1"), _task("2", "1"), _task("3", "2"), _task("4", "1"), _task("5")]
    flat = [t.id for wave in compute_waves(tasks) for t in wave]
    assert sorted(flat) == ["1", "2", "3", "4", "5"]
    assert len(flat) == len(set(flat))


def test_compute_waves_is_deterministic() -> None:
    """Same plan → same partition on every call."""
    tasks = [_task("a"), _task("b", "a"), _task("c"), _task("d", "c", "a")]
    assert _ids(compute_waves(tasks)) == _ids(compute_waves(tasks))


def test_dangling_dependency_is_forced() -> None:
    """A dependency on an unknown id cannot be met; the subtask is force-scheduled."""
    tasks = [_task("A"), _task("B", "missing")]
    waves = compute_waves(tasks)
    assert _ids(waves) == [["A"], ["B"]]
    assert forced_subtasks(tasks) == ["B"]


def test_cycle_terminates_with_forced_subtask() -> None:
    """A ↔ B cycle: the first remaining subtask is forced, then the other follows."""
    tasks = [_task("A", "B"), _task("B", "A")]
    waves = compute_waves(tasks)
    assert _ids(waves) == [["A"], ["B"]]
    assert forced_subtasks(tasks) == ["A"]


def test_no_forced_subtasks_for_acyclic_plan() -> None:
    plan = Plan(id="p", subtasks=[_task("A"), _task("B", "A")])
    assert forced_subtasks(plan) == []


def test_empty_plan_has_no_waves() -> None:
    assert compute_waves(Plan(id="empty")) == []
