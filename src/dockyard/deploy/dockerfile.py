"""Dockerfile helpers used by the build strategies.

Example:
    >>> normalize_dockerfile_location("/backend", "/backend/Dockerfile")
    '/Dockerfile'
    >>> find_from_lines("FROM node:20 AS build\\nRUN npm ci\\nFROM nginx")
    [0, 2]
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_FROM_RE = re.compile(r"^from(\s|$)", re.IGNORECASE)
_STAGE_RE = re.compile(r"^from\s+(?:--\S+\s+)*(\S+)(?:\s+as\s+(\S+))?", re.IGNORECASE)


def normalize_dockerfile_location(base_directory: str | None, dockerfile_location: str) -> str:
    """Strip *base_directory* from the front of *dockerfile_location*.

    The prefix is removed only at a path-segment boundary; ``/`` or an empty
    base directory leaves the location unchanged.
    """
    base = (base_directory or "").rstrip("/")
    if not base:
        return dockerfile_location

    if dockerfile_location == base:
        return "/"
    if dockerfile_location.startswith(base + "/"):
        return dockerfile_location[len(base):]
    return dockerfile_location


def find_from_lines(content: str) -> list[int]:
    """Return zero-based indices of the ``FROM`` instructions in *content*.

    A line counts when its trimmed text starts with ``FROM`` followed by
    whitespace, or is exactly ``FROM``.  Comments, ``COPY --from=`` and
    ``FROM`` in the middle of a line do not count.
    """
    return [
        index
        for index, line in enumerate(content.splitlines())
        if _FROM_RE.match(line.strip())
    ]


@dataclass(frozen=True)
class BuildStage:
    line: int
    image: str
    name: str | None = None


def parse_stages(content: str) -> list[BuildStage]:
    lines = content.splitlines()
    stages = []
    for index in find_from_lines(content):
        match = _STAGE_RE.match(lines[index].strip())
        if match:
            stages.append(BuildStage(line=index, image=match.group(1), name=match.group(2)))
        else:
            stages.append(BuildStage(line=index, image=""))
    return stages


def final_stage(content: str) -> BuildStage | None:
    """The stage ``docker build`` produces by default (the last ``FROM``)."""
    stages = parse_stages(content)
    return stages[-1] if stages else None


def is_multi_stage(content: str) -> bool:
    return len(find_from_lines(content)) > 1


__all__ = [
    "normalize_dockerfile_location",
    "find_from_lines",
    "BuildStage",
    "parse_stages",
    "final_stage",
    "is_multi_stage",
]
