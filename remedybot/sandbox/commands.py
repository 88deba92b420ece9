"""Sandbox command selection: harness scripts, explicit commands, autodetected test presets."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from remedybot.sandbox.models import HarnessCommands, SandboxConfig

LANGUAGE_PRESETS: dict[str, list[str]] = {
    "javascript": ["pnpm test", "yarn test", "npm test"],
    "typescript": ["pnpm test", "yarn test", "npm test"],
    "python": ["pytest", "python -m pytest", "python -m unittest"],
    "go": ["go test ./..."],
    "rust": ["cargo test"],
    "java": ["mvn test", "gradle test"],
    "ruby": ["bundle exec rspec", "rake test"],
    "php": ["vendor/bin/phpunit", "composer test"],
}

# Marker files checked in order; first hit decides the language.
LANGUAGE_MARKERS: dict[str, list[str]] = {
    "javascript": ["package.json"],
    "typescript": ["tsconfig.json"],
    "python": ["requirements.txt", "pyproject.toml", "setup.py"],
    "go": ["go.mod", "go.sum"],
    "rust": ["Cargo.toml"],
    "java": ["pom.xml", "build.gradle"],
    "ruby": ["Gemfile"],
    "php": ["composer.json"],
}

LANGUAGE_IMAGES: dict[str, str] = {
    "javascript": "node:20-alpine",
    "typescript": "node:20-alpine",
    "python": "python:3.11-slim",
    "go": "golang:1.21-alpine",
    "rust": "rust:1.75-slim",
    "java": "maven:3.9-eclipse-temurin-21",
    "ruby": "ruby:3.2-slim",
    "php": "php:8.2-cli",
}
DEFAULT_IMAGE = "node:20-alpine"
FALLBACK_COMMAND = 'echo "No test command found"'

_NPM_PLACEHOLDER_TEST = 'echo "Error: no test specified" && exit 1'


@dataclass
class SelectedCommand:
    """Shell script to execute plus the individual commands it is made of."""
    script: str
    commands_run: list[str] = field(default_factory=list)
    source: str = "autodetect"  # harness | commands | command | autodetect

    @property
    def is_harness(self) -> bool:
        return self.source == "harness"


def detect_language(repo_path: str | Path) -> str | None:
    """Detect repository language from marker files in its root."""
    root = Path(repo_path)
    for lang, markers in LANGUAGE_MARKERS.items():
        for marker in markers:
            if (root / marker).exists():
                return lang
    return None


def _js_command(root: Path) -> str | None:
    """Pick the package manager by lockfile when package.json has a real test script."""
    pkg_path = root / "package.json"
    has_test_script = False
    if pkg_path.exists():
        try:
            pkg = json.loads(pkg_path.read_text(encoding="utf-8"))
            test_script = (pkg.get("scripts") or {}).get("test")
            has_test_script = bool(test_script) and test_script != _NPM_PLACEHOLDER_TEST
        except (OSError, ValueError, AttributeError) as e:
            logger.debug(f"Could not read package.json in {root}: {e}")
    if (root / "pnpm-lock.yaml").exists():
        return "pnpm test"
    if (root / "yarn.lock").exists():
        return "yarn test"
    if has_test_script or (root / "package-lock.json").exists():
        return "npm test"
    return None


def find_test_command(repo_path: str | Path, language_hint: str | None = None) -> str | None:
    """Best test command for the repository, or None when the language is unknown."""
    lang = language_hint or detect_language(repo_path)
    if not lang or lang not in LANGUAGE_PRESETS:
        return None
    if lang in ("javascript", "typescript"):
        js = _js_command(Path(repo_path))
        if js:
            return js
    return LANGUAGE_PRESETS[lang][0]


def image_for(config: SandboxConfig) -> str:
    """Container image: explicit config, else by language, else node."""
    if config.image:
        return config.image
    lang = config.language_hint
    if not lang and config.repo_path:
        lang = detect_language(config.repo_path)
    return LANGUAGE_IMAGES.get(lang or "", DEFAULT_IMAGE)


def build_harness_script(harness: HarnessCommands) -> str:
    """
    Render the harness triplet as one POSIX shell script.

    Setup and run are chained with && inside a subshell, so a failing setup
    skips run and an `exit` in either cannot end the script. The chain status
    is captured in HARNESS_EXIT before teardown starts; each teardown command
    runs in its own subshell with failures ignored, and the script exits with
    the run status.
    """
    chain: list[str] = []
    if harness.setup:
        chain.append('echo "=== SETUP PHASE ==="')
        chain.extend(harness.setup)
    chain.append('echo "=== RUN PHASE ==="')
    chain.extend(harness.run)
    lines = [f"( {' && '.join(chain)} )", "HARNESS_EXIT=$?"]
    if harness.teardown:
        lines.append('echo "=== TEARDOWN PHASE ==="')
        lines.extend(f"( {cmd} ) || true" for cmd in harness.teardown)
    lines.append("exit $HARNESS_EXIT")
    return "\n".join(lines)


def select_command(config: SandboxConfig) -> SelectedCommand:
    """Command priority: harness triplet > command list > single command > autodetected preset."""
    if config.harness and config.harness.run:
        h = config.harness
        return SelectedCommand(
            script=build_harness_script(h),
            commands_run=[*h.setup, *h.run, *h.teardown],
            source="harness",
        )
    if config.commands:
        return SelectedCommand(script=" && ".join(config.commands), commands_run=list(config.commands), source="commands")
    if config.command:
        return SelectedCommand(script=config.command, commands_run=[config.command], source="command")
    detected = None
    if config.repo_path:
        detected = find_test_command(config.repo_path, config.language_hint)
    script = detected or FALLBACK_COMMAND
    return SelectedCommand(script=script, commands_run=[script], source="autodetect")
