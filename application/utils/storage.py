"""Application-level storage helpers to avoid infra coupling."""
from __future__ import annotations

import re
import secrets
import time
from typing import Optional

from domain.upload import Category, StorageKey

KEY_PREFIX = "uploads"
MAX_NAME_LENGTH = 50
TOKEN_LENGTH = 8

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_LEADING_DOTS = re.compile(r"^\.+")
_TOKEN_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


def sanitize_file_name(file_name: str, max_length: int = MAX_NAME_LENGTH) -> str:
    """Reduce a user-supplied name to ``[A-Za-z0-9._-]``, bounded, no leading dots."""
    # Keep only the last path component so "a/b/c.dem" does not drag its directories in.
    base = re.split(r"[\\/]", file_name or "")[-1]
    cleaned = _UNSAFE_CHARS.sub("_", base)[:max_length]
    cleaned = _LEADING_DOTS.sub("", cleaned)
    return cleaned or "file"


def random_token(length: int = TOKEN_LENGTH) -> str:
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(length))


def generate_key(
    file_name: str,
    category: Category | str,
    *,
    now_ms: Optional[int] = None,
    token: Optional[str] = None,
) -> StorageKey:
    """Build ``uploads/{category}/{unixMillis}-{token}-{sanitizedName}``.

    Example:
        generate_key("../../etc/passwd.dem", "dem")
        -> "uploads/dem/1718000000000-k3j9x0qa-passwd.dem"
    """
    cat = Category.parse(category)
    millis = now_ms if now_ms is not None else time.time_ns() // 1_000_000
    return f"{KEY_PREFIX}/{cat.value}/{millis}-{token or random_token()}-{sanitize_file_name(file_name)}"
