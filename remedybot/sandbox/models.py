"""Sandbox data models: configuration, harness triplet and run result."""

from __future__ import annotations

from typing import Literal

from pydantic import Field

from remedybot.utils.wire import WireModel

FailMode = Literal["fail", "warn"]
IsolationProfile = Literal["strict", "permissive"]
SandboxMethod = Literal["container", "shell", "native"]
SandboxPhase = Literal["pre", "post"]


class HarnessCommands(WireModel):
    """Ordered setup -> run -> teardown commands that reproduce or verify an incident."""
    setup: list[str] = Field(default_factory=list)
    run: list[str]
    teardown: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    workdir: str | None = None  # container path override, defaults to /workspace


class SandboxConfig(WireModel):
    """Sandbox settings for one run; unset limits derive from the isolation profile."""
    enabled: bool = False
    repo_path: str | None = None
    command: str | None = None
    commands: list[str] = Field(default_factory=list)
    harness: HarnessCommands | None = None
    runner_path: str | None = None  # external shell runner script (tier b)
    timeout_ms: int = 15 * 60 * 1000
    fail_mode: FailMode = "fail"
    language_hint: str | None = None
    env: dict[str, str] = Field(default_factory=dict)

    # Container tier
    use_container: bool = True  # False disables the container tier explicitly
    require_container: bool = False  # True: no container engine -> SandboxUnavailable
    force_container_available: bool = False  # skip the capability probe (local dev)
    isolation_profile: IsolationProfile = "strict"
    network_policy: Literal["none", "bridge"] | None = None
    fs_policy: Literal["readonly", "readwrite"] | None = None
    memory_limit: str | None = None
    cpu_limit: str | None = None
    tmpfs_size_mb: int | None = None
    pids_limit: int | None = None
    runtime: str | None = None  # e.g. runsc (gVisor)
    image: str | None = None


class SandboxResult(WireModel):
    """Classified outcome of one sandbox run."""
    success: bool
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    method: SandboxMethod = "native"
    error: str | None = None
    timed_out: bool = False
    commands_run: list[str] = Field(default_factory=list)
    reproduction_successful: bool | None = None
    # failMode=warn turned a non-success outcome into an advisory one
    downgraded: bool = False

    @property
    def passed(self) -> bool:
        """True when callers may proceed: raw success, or a downgraded warning."""
        return self.success or self.downgraded
