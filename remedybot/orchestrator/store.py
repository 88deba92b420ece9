"""In-memory store of live orchestrations keyed by orchestration id."""

from __future__ import annotations

from dataclasses import dataclass, field

from remedybot.orchestrator.models import ExecutionPolicy, OrchestrationContext, OrchestrationState, Subtask
from remedybot.sandbox.models import SandboxConfig
from remedybot.utils.exceptions import NotFoundError


@dataclass
class OrchestrationRun:
    """State plus everything needed to resume it: context, policy, sandbox and the wave partition."""

    state: OrchestrationState
    context: OrchestrationContext
    policy: ExecutionPolicy | None = None
    sandbox: SandboxConfig | None = None
    waves: list[list[Subtask]] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.state.id


class OrchestrationStore:
    """
    Holds orchestrations between execute and resume.

    One store is injected into the orchestrator (and shared with the worker);
    suspended runs stay here until resumed, terminal runs are evicted by the
    orchestrator once they finish.
    """

    def __init__(self) -> None:
        self._runs: dict[str, OrchestrationRun] = {}

    def put(self, run: OrchestrationRun) -> None:
        self._runs[run.id] = run

    def get(self, orchestration_id: str) -> OrchestrationRun | None:
        return self._runs.get(orchestration_id)

    def require(self, orchestration_id: str) -> OrchestrationRun:
        run = self._runs.get(orchestration_id)
        if run is None:
            raise NotFoundError("Orchestration", orchestration_id)
        return run

    def remove(self, orchestration_id: str) -> OrchestrationRun | None:
        return self._runs.pop(orchestration_id, None)

    def list_ids(self, status: str | None = None) -> list[str]:
        return [rid for rid, run in self._runs.items() if status is None or run.state.status == status]

    def __contains__(self, orchestration_id: object) -> bool:
        return orchestration_id in self._runs

    def __len__(self) -> int:
        return len(self._runs)
