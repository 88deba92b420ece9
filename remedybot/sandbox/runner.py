"""
Sandbox runtime: pick an isolation tier, run the selected command and classify the outcome.

Tiers, first available wins:
1. container (docker, optionally under gVisor runsc)
2. external shell runner script on a POSIX host
3. native execution, logged as unsafe
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Callable, Protocol

from loguru import logger

from remedybot.sandbox.commands import image_for, select_command
from remedybot.sandbox.docker_backend import DockerProbe, run_in_container
from remedybot.sandbox.models import HarnessCommands, SandboxConfig, SandboxPhase, SandboxResult
from remedybot.sandbox.process import ProcessOutcome, run_streaming
from remedybot.utils.exceptions import SandboxFailed, SandboxTimeout, SandboxUnavailable
from remedybot.utils.helpers import truncate

LogCallback = Callable[[str], None]


class CapabilityProbe(Protocol):
    """Reports which container features the host offers."""

    async def container_available(self) -> bool: ...

    async def runsc_available(self) -> bool: ...


def _shell_runner_usable(config: SandboxConfig) -> bool:
    return bool(config.runner_path) and os.name == "posix" and Path(config.runner_path).is_file()


def _emit(on_log: LogCallback | None, message: str) -> None:
    logger.info(message)
    if on_log is not None:
        try:
            on_log(message)
        except Exception as e:
            logger.debug(f"Sandbox log callback failed: {e}")


def _host_env(config: SandboxConfig) -> dict[str, str]:
    env = dict(os.environ)
    env.update(config.env)
    if config.harness:
        env.update(config.harness.env)
    return env


def classify(
    outcome: ProcessOutcome,
    *,
    config: SandboxConfig,
    method: str,
    commands_run: list[str],
    is_harness: bool,
) -> SandboxResult:
    """
    Turn a raw process outcome into a SandboxResult.

    Harness runs carry reproduction_successful (nonzero exit reproduces the
    incident). failMode=warn marks a non-success result as downgraded; the
    raw success flag is left untouched.
    """
    success = outcome.exit_code == 0 and not outcome.timed_out
    reproduction = None
    if is_harness and not outcome.timed_out:
        reproduction = outcome.exit_code != 0
    return SandboxResult(
        success=success,
        exit_code=outcome.exit_code,
        stdout=outcome.stdout,
        stderr=outcome.stderr,
        duration_ms=outcome.duration_ms,
        method=method,
        error=outcome.error,
        timed_out=outcome.timed_out,
        commands_run=commands_run,
        reproduction_successful=reproduction,
        downgraded=not success and config.fail_mode == "warn",
    )


async def run_sandbox(
    config: SandboxConfig,
    *,
    probe: CapabilityProbe | None = None,
    on_log: LogCallback | None = None,
) -> SandboxResult:
    """
    Execute the configured command against config.repo_path.

    Raises SandboxUnavailable when require_container is set and no container
    engine answers the probe. Every other outcome, including timeouts, comes
    back as a SandboxResult; use raise_for_outcome to apply failMode.
    """
    if not config.enabled:
        _emit(on_log, "[Sandbox] Disabled, skipping")
        return SandboxResult(success=True, exit_code=0, stdout="Sandbox disabled", method="native")

    probe = probe or DockerProbe()
    selected = select_command(config)
    container_ok = False
    if config.use_container or config.require_container:
        container_ok = config.force_container_available or await probe.container_available()

    def on_output(stream: str, line: str) -> None:
        prefix = "[stderr] " if stream == "stderr" else ""
        _emit(on_log, f"[Sandbox] {prefix}{line}")

    if container_ok:
        runtime = config.runtime
        if runtime is None and await probe.runsc_available():
            runtime = "runsc"
        image = image_for(config)
        _emit(
            on_log,
            f"[Sandbox/Container] profile={config.isolation_profile} image={image} runtime={runtime or 'default'}",
        )
        outcome = await run_in_container(
            config=config,
            script=selected.script,
            image=image,
            runtime=runtime,
            on_output=on_output,
        )
        method = "container"
    elif config.require_container:
        _emit(on_log, "[Sandbox] Container isolation required but unavailable")
        raise SandboxUnavailable()
    elif _shell_runner_usable(config):
        _emit(on_log, f"[Sandbox/Shell] Container unavailable; using runner {config.runner_path}")
        env = _host_env(config)
        env.update({
            "SANDBOX_REPO_PATH": str(config.repo_path or ""),
            "SANDBOX_COMMAND": selected.script,
            "SANDBOX_TIMEOUT_MS": str(config.timeout_ms),
        })
        outcome = await run_streaming(
            ["bash", str(config.runner_path)],
            timeout_ms=config.timeout_ms,
            env=env,
            on_output=on_output,
        )
        method = "shell"
    else:
        _emit(on_log, "[Sandbox/Native] WARNING: no isolation available, running directly on the host (unsafe)")
        outcome = await run_streaming(
            ["/bin/sh", "-c", selected.script],
            timeout_ms=config.timeout_ms,
            cwd=config.repo_path,
            env=_host_env(config),
            on_output=on_output,
        )
        method = "native"

    result = classify(
        outcome,
        config=config,
        method=method,
        commands_run=selected.commands_run,
        is_harness=selected.is_harness,
    )
    if result.success:
        _emit(on_log, f"[Sandbox] exec ok ({method}, {result.duration_ms}ms)")
    elif result.downgraded:
        _emit(on_log, f"[Sandbox] exit {result.exit_code} but failMode=warn, continuing")
    else:
        _emit(on_log, f"[Sandbox] exec failed ({method}, exit {result.exit_code})")
    return result


def raise_for_outcome(result: SandboxResult, config: SandboxConfig, phase: SandboxPhase | None = None) -> None:
    """
    Apply failMode and phase rules to a finished run.

    A pre-phase harness run that reproduces the incident is expected. A
    post-phase failure is always raised, even when downgraded by failMode=warn.
    """
    if result.success:
        return
    if phase == "pre" and result.reproduction_successful:
        return
    if result.downgraded and phase != "post":
        logger.warning(f"Sandbox run failed with exit {result.exit_code}; continuing (failMode=warn)")
        return
    if result.timed_out:
        raise SandboxTimeout(config.timeout_ms, method=result.method)
    detail = truncate((result.error or result.stderr or result.stdout).strip(), 500)
    raise SandboxFailed(
        f"Sandbox run failed with exit code {result.exit_code}" + (f": {detail}" if detail else ""),
        exit_code=result.exit_code,
        phase=phase,
    )


async def get_sandbox_capabilities(
    probe: CapabilityProbe | None = None,
    runner_path: str | None = None,
) -> dict[str, Any]:
    """Which tiers this host offers and which one run_sandbox would pick."""
    probe = probe or DockerProbe()
    container = await probe.container_available()
    runsc = await probe.runsc_available() if container else False
    shell = bool(runner_path) and os.name == "posix" and Path(runner_path).is_file()
    recommended = "container" if container else "shell" if shell else "native"
    return {
        "container": container,
        "runsc": runsc,
        "shell": shell,
        "native": True,
        "recommended": recommended,
    }


async def run_twin_harness(
    repo_path: str,
    commands: list[str],
    *,
    env: dict[str, str] | None = None,
    test_fixture: str | None = None,
    timeout_ms: int = 120_000,
    use_container: bool = True,
    probe: CapabilityProbe | None = None,
    on_log: LogCallback | None = None,
) -> SandboxResult:
    """Run reproduction commands as a harness; reproduction_successful is always set."""
    _emit(on_log, f"[Sandbox/Twin] Running harness with {len(commands)} commands")
    setup = ['echo "Setting up test fixture..."', "mkdir -p /tmp/fixtures"] if test_fixture else []
    config = SandboxConfig(
        enabled=True,
        repo_path=repo_path,
        harness=HarnessCommands(setup=setup, run=commands, env=env or {}),
        timeout_ms=timeout_ms,
        fail_mode="fail",
        use_container=use_container,
    )
    result = await run_sandbox(config, probe=probe, on_log=on_log)
    if result.reproduction_successful is None:
        result.reproduction_successful = result.exit_code != 0
    return result
