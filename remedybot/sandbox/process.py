"""Subprocess execution with incremental stream capture and a hard wall-clock timeout."""

from __future__ import annotations

import asyncio
import os
import signal
import time
from dataclasses import dataclass
from typing import Callable

from loguru import logger

# Exit code reported for a process killed on timeout (128 + SIGKILL)
KILLED_EXIT_CODE = 137

OutputCallback = Callable[[str, str], None]  # (stream name, line)


@dataclass
class ProcessOutcome:
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    error: str | None = None


async def _pump(stream: asyncio.StreamReader | None, name: str, sink: list[str], on_output: OutputCallback | None) -> None:
    if stream is None:
        return
    while True:
        line = await stream.readline()
        if not line:
            break
        text = line.decode("utf-8", errors="replace")
        sink.append(text)
        if on_output is not None:
            try:
                on_output(name, text.rstrip("\n"))
            except Exception as e:
                logger.debug(f"Output callback failed: {e}")


def _kill_tree(proc: asyncio.subprocess.Process) -> None:
    """SIGKILL the whole process group so shell children die with the shell."""
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass


async def run_streaming(
    argv: list[str],
    *,
    timeout_ms: int,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    on_output: OutputCallback | None = None,
) -> ProcessOutcome:
    """
    Run argv, forwarding stdout/stderr line by line to on_output as they arrive.

    On timeout the process is killed and the outcome carries timed_out=True
    with exit code 137. A missing executable yields exit code 127 and an error.
    """
    started = time.monotonic()
    out: list[str] = []
    err: list[str] = []
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
            start_new_session=os.name == "posix",
        )
    except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
        return ProcessOutcome(
            exit_code=127,
            stdout="",
            stderr=str(e),
            duration_ms=int((time.monotonic() - started) * 1000),
            error=str(e),
        )

    # Readers and process exit share one timeout budget.
    finished = asyncio.gather(
        _pump(proc.stdout, "stdout", out, on_output),
        _pump(proc.stderr, "stderr", err, on_output),
        proc.wait(),
    )
    timed_out = False
    try:
        await asyncio.wait_for(asyncio.shield(finished), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        timed_out = True
        _kill_tree(proc)
        try:
            await asyncio.wait_for(finished, timeout=1.0)
        except asyncio.TimeoutError:
            logger.warning(f"Output streams still open 1s after killing pid {proc.pid}")
        await proc.wait()

    duration_ms = int((time.monotonic() - started) * 1000)
    if timed_out:
        return ProcessOutcome(
            exit_code=KILLED_EXIT_CODE,
            stdout="".join(out),
            stderr="".join(err),
            duration_ms=duration_ms,
            timed_out=True,
            error=f"Timeout exceeded after {timeout_ms}ms",
        )
    return ProcessOutcome(
        exit_code=proc.returncode if proc.returncode is not None else 1,
        stdout="".join(out),
        stderr="".join(err),
        duration_ms=duration_ms,
    )
