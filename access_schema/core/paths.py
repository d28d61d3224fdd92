"""Role path helpers shared by the tree, the assignment store and the evaluator."""

import hashlib
import re
from typing import List

PATH_SEPARATOR = "/"

_SLUG_STRIP = re.compile(r"[^a-z0-9_-]+")


def slugify(name: str) -> str:
    """Normalize a segment display name into its slug.

    "Council Admin" -> "council-admin". Registration and the existence
    fallback must both go through here so they agree on every segment.
    """
    return _SLUG_STRIP.sub("-", name.strip().lower()).strip("-")


def split_path(path: str) -> List[str]:
    """Split a role path into its non-empty segments."""
    return [part for part in path.strip().split(PATH_SEPARATOR) if part.strip()]


def ancestor_paths(path: str) -> List[str]:
    """Proper ancestors of a path, nearest first.

    >>> ancestor_paths("org/council/admin")
    ['org/council', 'org']
    """
    parts = path.split(PATH_SEPARATOR)
    return [PATH_SEPARATOR.join(parts[:i]) for i in range(len(parts) - 1, 0, -1)]


def has_wildcard(path: str) -> bool:
    return "*" in path


def path_hash(path: str) -> str:
    """Stable short key for a path, used inside cache keys."""
    return hashlib.md5(path.encode("utf-8")).hexdigest()
