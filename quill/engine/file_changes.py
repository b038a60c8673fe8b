"""Summaries of file-change items: per-file diffs and line counts."""
from __future__ import annotations

import difflib
import os
from dataclasses import asdict, dataclass
from typing import Any


@dataclass
class ChangeSummary:
    file: str
    kind: str
    diff: str
    additions: int = 0
    deletions: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def count_diff(diff: str) -> tuple[int, int]:
    """(additions, deletions) in unified-diff text, ignoring file headers."""
    additions = deletions = 0
    for line in diff.split("\n"):
        if line.startswith("+") and not line.startswith("+++"):
            additions += 1
        elif line.startswith("-") and not line.startswith("---"):
            deletions += 1
    return additions, deletions


def _two_file_patch(name: str, old: str, new: str) -> str:
    lines = difflib.unified_diff(
        old.splitlines(keepends=True),
        new.splitlines(keepends=True),
        fromfile=name,
        tofile=name,
    )
    out = []
    for line in lines:
        out.append(line if line.endswith("\n") else line + "\n")
    return "".join(out)


def change_kind(change: dict[str, Any]) -> str:
    kind = change.get("kind")
    if isinstance(kind, str):
        return kind
    if isinstance(kind, dict) and isinstance(kind.get("type"), str):
        return kind["type"]
    return "update"


def format_change_diff(change: dict[str, Any], kind: str) -> str:
    """Added and deleted files carry raw content; render it as a patch."""
    diff = change.get("diff") if isinstance(change.get("diff"), str) else ""
    name = change.get("path") if isinstance(change.get("path"), str) else "file"
    if kind == "add":
        return _two_file_patch(name, "", diff)
    if kind == "delete":
        return _two_file_patch(name, diff, "")
    return diff


def summarize_changes(changes: Any) -> list[ChangeSummary]:
    summaries: list[ChangeSummary] = []
    if not isinstance(changes, list):
        return summaries
    for change in changes:
        if not isinstance(change, dict):
            continue
        path = change.get("path")
        if not isinstance(path, str) or not path:
            continue
        kind = change_kind(change)
        diff = format_change_diff(change, kind)
        additions, deletions = count_diff(diff)
        summaries.append(ChangeSummary(path, kind, diff, additions, deletions))
    return summaries


def aggregate_diff(summaries: list[ChangeSummary]) -> str:
    return "\n\n".join(s.diff for s in summaries).strip()


def relative_pattern(path: str, root: str) -> str:
    """Absolute paths become relative to *root*; relative ones pass through."""
    if os.path.isabs(path):
        return os.path.relpath(path, root)
    return path
