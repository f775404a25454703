from __future__ import annotations

import json
from typing import Any

MISSING = object()


def json_dumps(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str)


def split_path(path: str) -> list[str]:
    return [segment for segment in path.split(".") if segment]


def get_path(tree: Any, path: str, default: Any = None) -> Any:
    current = tree
    for segment in split_path(path):
        if isinstance(current, dict):
            if segment not in current:
                return default
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            return default
    return current


def parent_path(path: str) -> str:
    return path.rpartition(".")[0]


def join_path(prefix: str, key: str) -> str:
    return f"{prefix}.{key}" if prefix else key


def path_prefixes(path: str) -> list[str]:
    """Return every ancestor path of `path` including itself, shortest first."""
    segments = split_path(path)
    return [".".join(segments[: end + 1]) for end in range(len(segments))]
