"""Sandbox runtime: isolation tiers, harness scripts, command linter."""

from remedybot.sandbox.commands import detect_language, find_test_command, select_command
from remedybot.sandbox.docker_backend import DockerProbe, build_docker_args, is_docker_available, is_runsc_available
from remedybot.sandbox.linter import validate_harness_commands
from remedybot.sandbox.models import HarnessCommands, SandboxConfig, SandboxResult
from remedybot.sandbox.runner import (
    CapabilityProbe,
    get_sandbox_capabilities,
    raise_for_outcome,
    run_sandbox,
    run_twin_harness,
)

__all__ = [
    "CapabilityProbe",
    "DockerProbe",
    "HarnessCommands",
    "SandboxConfig",
    "SandboxResult",
    "build_docker_args",
    "detect_language",
    "find_test_command",
    "get_sandbox_capabilities",
    "is_docker_available",
    "is_runsc_available",
    "raise_for_outcome",
    "run_sandbox",
    "run_twin_harness",
    "select_command",
    "validate_harness_commands",
]
