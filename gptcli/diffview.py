"""Change counting and confirmation-gated unified diff preview."""

import difflib
from collections.abc import Callable
from dataclasses import dataclass

from . import fmt

MIN_MAX_LINES = 10


@dataclass
class DiffPreviewConfig:
    enabled: bool = True
    threshold_lines: int = 1
    max_lines: int = 120

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "thresholdLines": self.threshold_lines,
            "maxLines": self.max_lines,
        }

    @classmethod
    def from_dict(cls, data) -> "DiffPreviewConfig":
        """Build from persisted JSON, falling back to defaults per field."""
        config = cls()
        if not isinstance(data, dict):
            return config
        enabled = data.get("enabled")
        if isinstance(enabled, bool):
            config.enabled = enabled
        threshold = data.get("thresholdLines")
        if isinstance(threshold, int) and not isinstance(threshold, bool) and threshold >= 0:
            config.threshold_lines = threshold
        max_lines = data.get("maxLines")
        if (
            isinstance(max_lines, int)
            and not isinstance(max_lines, bool)
            and max_lines >= MIN_MAX_LINES
        ):
            config.max_lines = max_lines
        return config


@dataclass
class DiffDecision:
    proceed: bool
    changed_lines: int


def count_changed_lines(before: str, after: str) -> int:
    """Count line positions where the two texts differ.

    Positions run up to the longer of the two; lines missing on the
    shorter side count as different.
    """
    a = before.split("\n")
    b = after.split("\n")
    changed = 0
    for i in range(max(len(a), len(b))):
        la = a[i] if i < len(a) else None
        lb = b[i] if i < len(b) else None
        if la != lb:
            changed += 1
    return changed


def render_diff(path: str, before: str, after: str) -> list[str]:
    return list(
        difflib.unified_diff(
            before.splitlines(),
            after.splitlines(),
            fromfile=path,
            tofile=path,
            fromfiledate="",
            tofiledate="",
            lineterm="",
        )
    )


def decide(
    path: str,
    before: str,
    after: str,
    config: DiffPreviewConfig,
    confirm: Callable[[str], bool],
) -> DiffDecision:
    """Show a diff and ask before overwriting, when the change is large enough."""
    changed = count_changed_lines(before, after)
    if not config.enabled or changed < config.threshold_lines:
        return DiffDecision(proceed=True, changed_lines=changed)

    lines = render_diff(path, before, after) or [
        "(only trailing newlines differ)"
    ]
    hidden = max(0, len(lines) - config.max_lines)
    fmt.diff(lines[: config.max_lines], truncated=hidden)
    proceed = confirm(f"Apply these changes to {path} ({changed} line(s) changed)?")
    return DiffDecision(proceed=proceed, changed_lines=changed)
