"""Filename wildcard matching shared by the listing adapters."""

import posixpath
import re
from functools import lru_cache
from typing import Optional


def has_wildcards(pattern: str) -> bool:
    return "*" in pattern or "?" in pattern


@lru_cache(maxsize=512)
def _compile(pattern: str) -> re.Pattern:
    # Only * and ? are special; brackets and other characters match literally
    expression = "".join(
        ".*" if char == "*" else "." if char == "?" else re.escape(char)
        for char in pattern
    )
    return re.compile(f"^{expression}$", re.IGNORECASE | re.DOTALL)


def matches(name: str, pattern: str, file_extension: Optional[str] = None) -> bool:
    """
    Case-insensitive wildcard match with an optional extension filter.

    Args:
        name: Remote file name (no directory part)
        pattern: Resolved name pattern, ``*`` and ``?`` wildcards allowed
        file_extension: Extension without the dot; compared case-insensitively
    """
    if not name:
        return False
    if pattern and not _compile(pattern).match(name):
        return False
    if file_extension:
        _, ext = posixpath.splitext(name)
        if ext.lstrip(".").lower() != file_extension.lstrip(".").lower():
            return False
    return True


def join_path(*parts: Optional[str]) -> str:
    """Join path segments with single slashes, dropping empty ones."""
    cleaned = [part.strip("/") for part in parts if part and part.strip("/")]
    return "/".join(cleaned)
