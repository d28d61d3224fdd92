"""Wildcard role-path patterns.

``*`` matches exactly one path segment, ``**`` matches any run of
characters including ``/``. Matching is case-insensitive.
"""

import re
from functools import lru_cache


class Matcher:
    """Compiled form of one wildcard pattern."""

    __slots__ = ("pattern", "regex")

    def __init__(self, pattern: str, regex: "re.Pattern[str]"):
        self.pattern = pattern
        self.regex = regex

    def test(self, path: str) -> bool:
        return self.regex.fullmatch(path) is not None

    def __repr__(self) -> str:
        return f"<Matcher({self.pattern!r} -> {self.regex.pattern!r})>"


class PatternCompiler:
    """Compiles wildcard patterns and keeps a bounded LRU of the results.

    Patterns come from operators and API callers, so the memo is capped at
    ``capacity`` entries and the least recently used pattern is evicted.
    """

    def __init__(self, capacity: int = 100):
        self.capacity = capacity
        self._compile_cached = lru_cache(maxsize=capacity)(self._build)

    @staticmethod
    def _build(pattern: str) -> Matcher:
        escaped = re.escape(pattern)
        # ** has to be replaced before * or the single-segment rule eats half of it
        body = escaped.replace(r"\*\*", ".*").replace(r"\*", "[^/]+")
        return Matcher(pattern, re.compile(f"^{body}$", re.IGNORECASE))

    def compile(self, pattern: str) -> Matcher:
        return self._compile_cached(pattern)

    def matches(self, pattern: str, path: str) -> bool:
        return self.compile(pattern).test(path)

    def cache_info(self):
        return self._compile_cached.cache_info()

    def clear(self) -> None:
        self._compile_cached.cache_clear()
