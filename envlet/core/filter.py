"""
Path skiplist applied while materializing module trees.
"""

import fnmatch
from typing import Iterable


def _clean(path: str) -> str:
    path = path.replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path.strip("/")


class SkiplistFilter:
    """
    Decides whether a path, relative to the module root, must be skipped.

    A pattern matches its own path and everything below it (prefix match),
    or any path ``fnmatch`` accepts (glob match).
    """

    def __init__(self, patterns: Iterable[str] = ()):
        self.patterns = [_clean(pattern) for pattern in patterns if _clean(pattern)]

    def is_skipped(self, path: str) -> bool:
        path = _clean(path)
        if not path:
            return False
        for pattern in self.patterns:
            if path == pattern or path.startswith(pattern + "/"):
                return True
            if fnmatch.fnmatch(path, pattern):
                return True
        return False


__all__ = ["SkiplistFilter"]
