"""Tests for sandbox tier selection, outcome classification and failMode handling."""

from __future__ import annotations

import shutil

import pytest

import remedybot.sandbox.runner as runner_mod
from remedybot.sandbox.models import HarnessCommands, SandboxConfig, SandboxResult
from remedybot.sandbox.process import ProcessOutcome
from remedybot.sandbox.runner import (
    get_sandbox_capabilities,
    raise_for_outcome,
    run_sandbox,
    run_twin_harness,
)
from remedybot.utils.exceptions import SandboxFailed, SandboxTimeout, SandboxUnavailable

needs_sh = pytest.mark.skipif(shutil.which("sh") is None, reason="POSIX shell not available")


class FakeProbe:
    def __init__(self, container: bool = False, runsc: bool = False):
        self.container = container
        self.runsc = runsc
        self.container_calls = 0

    async def container_available(self) -> bool:
        self.container_calls += 1
        return self.container

    async def runsc_available(self) -> bool:
        return self.runsc


def _native(repo, **kwargs) -> SandboxConfig:
    return SandboxConfig(enabled=True, repo_path=str(repo), use_container=False, **kwargs)


@pytest.mark.asyncio
async def test_disabled_sandbox_is_a_successful_noop() -> None:
    result = await run_sandbox(SandboxConfig(enabled=False), probe=FakeProbe())
    assert result.success is True
    assert result.stdout == "Sandbox disabled"


@needs_sh
@pytest.mark.asyncio
async def test_native_tier_runs_in_repo_and_streams_output(tmp_path) -> None:
    (tmp_path / "marker.txt").write_text("here")
    lines: list[str] = []
    result = await run_sandbox(_native(tmp_path, command="ls && echo done"), probe=FakeProbe(), on_log=lines.append)

    assert result.success is True
    assert result.method == "native"
    assert "marker.txt" in result.stdout
    assert any("unsafe" in line for line in lines)
    assert any(line.endswith("done") for line in lines)


@needs_sh
@pytest.mark.asyncio
async def test_native_tier_reports_exit_code_and_stderr(tmp_path) -> None:
    result = await run_sandbox(_native(tmp_path, command="echo oops >&2; exit 4"), probe=FakeProbe())
    assert result.success is False
    assert result.exit_code == 4
    assert "oops" in result.stderr
    assert result.downgraded is False
    with pytest.raises(SandboxFailed) as exc_info:
        raise_for_outcome(result, _native(tmp_path))
    assert exc_info.value.details["exit_code"] == 4


@needs_sh
@pytest.mark.asyncio
async def test_teardown_failure_cannot_mask_run_status(tmp_path) -> None:
    failing = await run_sandbox(
        _native(tmp_path, harness=HarnessCommands(run=["sh -c 'exit 3'"], teardown=["false"])),
        probe=FakeProbe(),
    )
    assert failing.exit_code == 3

    passing = await run_sandbox(
        _native(tmp_path, harness=HarnessCommands(run=["true"], teardown=["false"])),
        probe=FakeProbe(),
    )
    assert passing.exit_code == 0
    assert passing.success is True


@needs_sh
@pytest.mark.asyncio
async def test_failed_setup_skips_run(tmp_path) -> None:
    result = await run_sandbox(
        _native(tmp_path, harness=HarnessCommands(setup=["false"], run=["touch ran.txt"])),
        probe=FakeProbe(),
    )
    assert result.exit_code != 0
    assert not (tmp_path / "ran.txt").exists()


@needs_sh
@pytest.mark.asyncio
async def test_timeout_kills_and_reports_137(tmp_path) -> None:
    config = _native(tmp_path, command="sleep 10", timeout_ms=300)
    result = await run_sandbox(config, probe=FakeProbe())

    assert result.timed_out is True
    assert result.exit_code == 137
    assert result.success is False
    assert result.duration_ms < 5000
    with pytest.raises(SandboxTimeout):
        raise_for_outcome(result, config)


@needs_sh
@pytest.mark.asyncio
async def test_harness_reproduction_classification(tmp_path) -> None:
    """Nonzero harness exit reproduces the incident: expected before the fix, fatal after it."""
    config = _native(tmp_path, harness=HarnessCommands(run=["sh -c 'exit 1'"]))
    result = await run_sandbox(config, probe=FakeProbe())

    assert result.reproduction_successful is True
    assert result.success is False
    raise_for_outcome(result, config, phase="pre")
    with pytest.raises(SandboxFailed):
        raise_for_outcome(result, config, phase="post")


@needs_sh
@pytest.mark.asyncio
async def test_plain_command_has_no_reproduction_flag(tmp_path) -> None:
    result = await run_sandbox(_native(tmp_path, command="true"), probe=FakeProbe())
    assert result.reproduction_successful is None


def test_warn_mode_downgrades_except_post_phase() -> None:
    config = SandboxConfig(fail_mode="warn")
    result = SandboxResult(success=False, exit_code=2, downgraded=True)
    assert result.passed is True
    raise_for_outcome(result, config)
    raise_for_outcome(result, config, phase="pre")
    with pytest.raises(SandboxFailed):
        raise_for_outcome(result, config, phase="post")


@pytest.mark.asyncio
async def test_required_container_without_engine_raises(tmp_path) -> None:
    config = SandboxConfig(enabled=True, repo_path=str(tmp_path), command="true", require_container=True)
    with pytest.raises(SandboxUnavailable):
        await run_sandbox(config, probe=FakeProbe(container=False))


@pytest.mark.asyncio
async def test_container_tier_prefers_runsc(monkeypatch, tmp_path) -> None:
    captured = {}

    async def fake_run_in_container(*, config, script, image, runtime=None, on_output=None):
        captured.update(script=script, image=image, runtime=runtime)
        on_output("stdout", "inside")
        return ProcessOutcome(exit_code=0, stdout="inside\n", stderr="", duration_ms=5)

    monkeypatch.setattr(runner_mod, "run_in_container", fake_run_in_container)
    lines: list[str] = []
    config = SandboxConfig(enabled=True, repo_path=str(tmp_path), command="make test", image="alpine:3.19")
    result = await run_sandbox(config, probe=FakeProbe(container=True, runsc=True), on_log=lines.append)

    assert result.method == "container"
    assert result.success is True
    assert captured == {"script": "make test", "image": "alpine:3.19", "runtime": "runsc"}
    assert "[Sandbox] inside" in lines


@pytest.mark.asyncio
async def test_force_container_available_skips_probe(monkeypatch, tmp_path) -> None:
    async def fake_run_in_container(**kwargs):
        return ProcessOutcome(exit_code=1, stdout="", stderr="fail", duration_ms=1)

    monkeypatch.setattr(runner_mod, "run_in_container", fake_run_in_container)
    probe = FakeProbe(container=False)
    config = SandboxConfig(enabled=True, repo_path=str(tmp_path), command="x", force_container_available=True, runtime="runc")
    result = await run_sandbox(config, probe=probe)
    assert result.method == "container"
    assert result.exit_code == 1
    assert probe.container_calls == 0


@pytest.mark.skipif(shutil.which("bash") is None, reason="bash not available")
@pytest.mark.asyncio
async def test_shell_runner_tier(tmp_path) -> None:
    runner = tmp_path / "runner.sh"
    runner.write_text('cd "$SANDBOX_REPO_PATH" && eval "$SANDBOX_COMMAND" && echo "budget=$SANDBOX_TIMEOUT_MS"\n')
    config = _native(tmp_path, command="echo via-runner", runner_path=str(runner), timeout_ms=9000)
    result = await run_sandbox(config, probe=FakeProbe())

    assert result.method == "shell"
    assert "via-runner" in result.stdout
    assert "budget=9000" in result.stdout


@pytest.mark.asyncio
async def test_capabilities_report(tmp_path) -> None:
    runner = tmp_path / "runner.sh"
    runner.write_text("true\n")
    caps = await get_sandbox_capabilities(FakeProbe(container=False), str(runner))
    assert caps["container"] is False
    assert caps["runsc"] is False
    assert caps["native"] is True
    assert caps["recommended"] in ("shell", "native")

    caps = await get_sandbox_capabilities(FakeProbe(container=True, runsc=True))
    assert caps["recommended"] == "container"
    assert caps["runsc"] is True
    assert caps["shell"] is False


@needs_sh
@pytest.mark.asyncio
async def test_twin_harness_sets_reproduction_flag(tmp_path) -> None:
    result = await run_twin_harness(
        str(tmp_path),
        ["test -f /definitely/not/here"],
        test_fixture="db.sql",
        use_container=False,
        probe=FakeProbe(),
    )
    assert result.reproduction_successful is True
    assert result.commands_run[0] == 'echo "Setting up test fixture..."'


@needs_sh
@pytest.mark.asyncio
async def test_passing_harness_after_fix_is_not_a_reproduction(tmp_path) -> None:
    result = await run_sandbox(_native(tmp_path, harness=HarnessCommands(run=["true"])), probe=FakeProbe())
    assert result.success is True
    assert result.reproduction_successful is False


@needs_sh
@pytest.mark.asyncio
async def test_exit_in_run_command_still_runs_teardown(tmp_path) -> None:
    """An `exit` inside a run command ends only the run chain; teardown still runs."""
    marker = tmp_path / "torn-down"
    result = await run_sandbox(
        _native(tmp_path, harness=HarnessCommands(run=["false || exit 3"], teardown=[f"touch {marker}"])),
        probe=FakeProbe(),
    )
    assert result.exit_code == 3
    assert marker.exists()


@needs_sh
@pytest.mark.asyncio
async def test_exit_in_teardown_does_not_replace_run_status(tmp_path) -> None:
    result = await run_sandbox(
        _native(tmp_path, harness=HarnessCommands(run=["true"], teardown=["exit 9", "echo after"])),
        probe=FakeProbe(),
    )
    assert result.exit_code == 0
    assert "after" in result.stdout
