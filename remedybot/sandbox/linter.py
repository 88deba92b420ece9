"""Advisory safety linter for sandbox commands.

Blocked patterns are categorically dangerous (wipes outside scratch space,
remote scripts piped to a shell, permission widening, raw disk operations).
Warning patterns flag elevated privilege. The linter only reports; callers
decide whether to refuse the run.
"""

from __future__ import annotations

import re
from typing import Any

BLOCK_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("destructive-wipe", re.compile(r"\brm\s+-(?:[a-z]*r[a-z]*f|[a-z]*f[a-z]*r)[a-z]*\s+/(?!tmp\b)", re.IGNORECASE)),
    ("remote-script", re.compile(r"\b(?:curl|wget)\b[^|]*\|\s*(?:sudo\s+)?(?:ba|z)?sh\b", re.IGNORECASE)),
    ("write-etc", re.compile(r">\s*/etc/", re.IGNORECASE)),
    ("world-writable", re.compile(r"\bchmod\s+(?:-R\s+)?0?777\b", re.IGNORECASE)),
    ("filesystem-format", re.compile(r"\b(?:mkfs(?:\.\w+)?|diskpart)\b", re.IGNORECASE)),
    ("raw-disk", re.compile(r"\bdd\s+if=", re.IGNORECASE)),
    ("raw-device-write", re.compile(r">\s*/dev/sd", re.IGNORECASE)),
    ("fork-bomb", re.compile(r":\(\)\s*\{.*\};\s*:")),
]

WARN_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("sudo", re.compile(r"\bsudo\b", re.IGNORECASE)),
    ("su", re.compile(r"\bsu\s+-", re.IGNORECASE)),
    ("unsafe-npm", re.compile(r"\bnpm\s+install\s+--unsafe", re.IGNORECASE)),
    ("privileged-container", re.compile(r"--privileged\b", re.IGNORECASE)),
]


def _preview(cmd: str, limit: int = 50) -> str:
    return cmd if len(cmd) <= limit else cmd[:limit] + "..."


def validate_harness_commands(commands: list[str]) -> dict[str, Any]:
    """
    Scan commands and return {"valid": bool, "warnings": [...], "blocked": [...]}.

    valid is False when any command matches a block pattern.
    """
    warnings: list[str] = []
    blocked: list[str] = []
    for cmd in commands:
        for rule, pattern in BLOCK_PATTERNS:
            if pattern.search(cmd):
                blocked.append(f"Blocked dangerous command ({rule}): {_preview(cmd)}")
        for rule, pattern in WARN_PATTERNS:
            if pattern.search(cmd):
                warnings.append(f"Warning in command ({rule}): {_preview(cmd)}")
    return {"valid": not blocked, "warnings": warnings, "blocked": blocked}
