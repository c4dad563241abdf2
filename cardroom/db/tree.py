"""Pure helpers over JSON trees shaped like the real-time store."""

from __future__ import annotations

import copy
import hashlib
import json
from typing import Any


def split_path(path: str) -> list[str]:
    return [p for p in path.strip("/").split("/") if p]


def join_path(*parts: str) -> str:
    return "/".join(p.strip("/") for p in parts if p and p.strip("/"))


def is_related(a: str, b: str) -> bool:
    """True if one path is an ancestor of (or equal to) the other."""
    pa, pb = split_path(a), split_path(b)
    n = min(len(pa), len(pb))
    return pa[:n] == pb[:n]


def relative_path(base: str, path: str) -> list[str] | None:
    """Segments of `path` below `base`, or None if not a descendant."""
    pb, pp = split_path(base), split_path(path)
    if pp[:len(pb)] != pb:
        return None
    return pp[len(pb):]


def get_at(tree: Any, path: str | list[str]) -> Any:
    parts = split_path(path) if isinstance(path, str) else path
    node = tree
    for part in parts:
        if isinstance(node, dict):
            node = node.get(part)
        elif isinstance(node, list) and part.isdigit() and int(part) < len(node):
            node = node[int(part)]
        else:
            return None
        if node is None:
            return None
    return node


def prune(value: Any) -> Any:
    """Drop nulls and empty containers, as the store never keeps them."""
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            v = prune(v)
            if v is not None:
                out[k] = v
        return out or None
    if isinstance(value, list):
        items = [prune(v) for v in value]
        while items and items[-1] is None:
            items.pop()
        if not items:
            return None
        if any(v is None for v in items):
            # Sparse arrays come back keyed by index
            return {str(i): v for i, v in enumerate(items) if v is not None}
        return items
    return value


def set_at(tree: Any, parts: list[str], value: Any) -> Any:
    """Return a copy of `tree` with `value` stored at `parts`."""
    if not parts:
        return copy.deepcopy(value)
    if isinstance(tree, list):
        node: dict = {str(i): v for i, v in enumerate(tree) if v is not None}
    elif isinstance(tree, dict):
        node = dict(tree)
    else:
        node = {}
    head, rest = parts[0], parts[1:]
    child = set_at(node.get(head), rest, value)
    if child is None:
        node.pop(head, None)
    else:
        node[head] = child
    return node


def apply_updates(tree: Any, values: dict[str, Any]) -> Any:
    """Apply a multi-path update to a copy of `tree` and prune the result."""
    result = copy.deepcopy(tree)
    for rel, value in values.items():
        result = set_at(result, split_path(rel), value)
    return prune(result)


def revision_of(value: Any) -> str:
    """Content hash used as the revision (ETag) of a subtree."""
    raw = json.dumps(value, sort_keys=True, separators=(",", ":"))
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()
