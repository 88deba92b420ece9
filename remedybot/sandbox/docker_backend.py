"""Docker backend: capability probes, isolation arguments per profile, run in a one-off container."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from remedybot.sandbox.models import SandboxConfig
from remedybot.sandbox.process import OutputCallback, ProcessOutcome, run_streaming

SANDBOX_LABEL = "remedybot.sandbox=1"
CONTAINER_WORKSPACE = "/workspace"


@dataclass(frozen=True)
class IsolationLimits:
    network: str
    fs: str
    memory: str
    cpus: str
    tmpfs_mb: int
    pids: int
    drop_caps: bool


PROFILE_LIMITS: dict[str, IsolationLimits] = {
    "strict": IsolationLimits(network="none", fs="readonly", memory="512m", cpus="0.5", tmpfs_mb=256, pids=256, drop_caps=True),
    "permissive": IsolationLimits(network="bridge", fs="readwrite", memory="1g", cpus="2", tmpfs_mb=512, pids=1024, drop_caps=False),
}


async def is_docker_available(timeout: float = 2.0) -> bool:
    """Return True if docker CLI is available and daemon is reachable within timeout."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "docker",
            "version",
            "--format",
            "{{.Server.Version}}",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return False
        return proc.returncode == 0
    except (FileNotFoundError, OSError):
        return False


async def is_runsc_available(timeout: float = 2.0) -> bool:
    """Return True if the daemon lists the gVisor runsc runtime."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "docker",
            "info",
            "--format",
            "{{json .Runtimes}}",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return False
        return proc.returncode == 0 and "runsc" in stdout.decode("utf-8", errors="replace")
    except (FileNotFoundError, OSError):
        return False


class DockerProbe:
    """Capability probe backed by the docker CLI."""

    def __init__(self, timeout: float = 2.0):
        self.timeout = timeout

    async def container_available(self) -> bool:
        return await is_docker_available(self.timeout)

    async def runsc_available(self) -> bool:
        return await is_runsc_available(self.timeout)


def resolve_limits(config: SandboxConfig) -> IsolationLimits:
    """Profile defaults with per-field overrides from the config."""
    base = PROFILE_LIMITS[config.isolation_profile]
    return IsolationLimits(
        network=config.network_policy or base.network,
        fs=config.fs_policy or base.fs,
        memory=config.memory_limit or base.memory,
        cpus=config.cpu_limit or base.cpus,
        tmpfs_mb=config.tmpfs_size_mb if config.tmpfs_size_mb is not None else base.tmpfs_mb,
        pids=config.pids_limit if config.pids_limit is not None else base.pids,
        drop_caps=base.drop_caps,
    )


def build_docker_args(
    *,
    config: SandboxConfig,
    script: str,
    image: str,
    runtime: str | None = None,
    name: str | None = None,
) -> list[str]:
    """Full `docker run` argv for one sandboxed script."""
    limits = resolve_limits(config)
    host_repo = str(Path(config.repo_path or ".").expanduser().resolve())
    mount_mode = "ro" if limits.fs == "readonly" else "rw"
    workdir = (config.harness.workdir if config.harness and config.harness.workdir else None) or CONTAINER_WORKSPACE

    args = ["docker", "run", "--rm", "--label", SANDBOX_LABEL]
    if name:
        args.extend(["--name", name])
    if runtime:
        args.extend(["--runtime", runtime])
    args.extend([
        f"--network={limits.network}",
        f"--memory={limits.memory}",
        f"--cpus={limits.cpus}",
        f"--pids-limit={limits.pids}",
        "--security-opt",
        "no-new-privileges",
    ])
    if limits.drop_caps:
        args.append("--cap-drop=ALL")
    if limits.fs == "readonly":
        args.append("--read-only")
    args.append(f"--tmpfs=/tmp:rw,nodev,nosuid,size={limits.tmpfs_mb}m")
    args.extend(["-v", f"{host_repo}:{CONTAINER_WORKSPACE}:{mount_mode}", "-w", workdir])

    env = dict(config.env)
    if config.harness:
        env.update(config.harness.env)
    for key, value in env.items():
        args.extend(["-e", f"{key}={value}"])
    args.extend([image, "/bin/sh", "-c", script])
    return args


async def remove_container(container_id: str) -> tuple[bool, str]:
    """Remove container by id or name (docker rm -f). Returns (success, error_message)."""
    if not container_id or not container_id.strip():
        return False, "empty container id"
    try:
        proc = await asyncio.create_subprocess_exec(
            "docker",
            "rm",
            "-f",
            container_id.strip(),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await asyncio.wait_for(proc.communicate(), timeout=30.0)
        if proc.returncode != 0:
            err = stderr.decode("utf-8", errors="replace").strip()
            return False, err or f"exit code {proc.returncode}"
        return True, ""
    except FileNotFoundError:
        return False, "Docker CLI not found"
    except asyncio.TimeoutError:
        return False, "Timeout"


async def run_in_container(
    *,
    config: SandboxConfig,
    script: str,
    image: str,
    runtime: str | None = None,
    on_output: OutputCallback | None = None,
) -> ProcessOutcome:
    """
    Run script inside a one-off container (docker run --rm).

    On timeout the docker CLI is killed and the named container is force-removed
    so the workload does not outlive its budget.
    """
    name = f"remedybot-sbx-{uuid.uuid4().hex[:12]}"
    argv = build_docker_args(config=config, script=script, image=image, runtime=runtime, name=name)
    outcome = await run_streaming(argv, timeout_ms=config.timeout_ms, on_output=on_output)
    if outcome.timed_out:
        ok, err = await remove_container(name)
        if not ok:
            logger.warning(f"Could not remove timed out sandbox container {name}: {err}")
    return outcome
