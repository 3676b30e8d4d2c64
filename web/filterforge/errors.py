from __future__ import annotations

import os
import re
from typing import Optional


class FilterForgeError(Exception):
    """Base class for every error raised by the rule pipeline."""


class ParseSkipped(FilterForgeError):
    """One list line could not be classified.

    Only used as a tally inside the parser; it never escapes `parse()`.
    """

    def __init__(self, line: str, reason: str):
        super().__init__(f"{reason}: {line[:120]}")
        self.line = line
        self.reason = reason


class RangeExhausted(FilterForgeError):
    def __init__(self, category: str, width: int):
        super().__init__(f"Rule id range for {category!r} exhausted ({width} ids).")
        self.category = category
        self.width = int(width)


class FetchFailed(FilterForgeError):
    def __init__(self, list_key: str, reason: str):
        super().__init__(f"Fetching filter list {list_key!r} failed: {reason}")
        self.list_key = list_key
        self.reason = reason


class BackendSyncFailed(FilterForgeError):
    """Applying a diff to the rule backend failed part-way.

    `applied` counts the rule ids/records already written before the failure.
    The next reconcile recomputes the diff from observed backend state.
    """

    def __init__(self, reason: str, *, applied: int = 0, cause: Optional[BaseException] = None):
        super().__init__(reason)
        self.reason = reason
        self.applied = int(applied)
        self.cause = cause


class RuleBackendError(FilterForgeError):
    """Raised by a rule backend that refuses an update."""


def expose_internal_errors() -> bool:
    return (os.environ.get("EXPOSE_INTERNAL_ERRORS") or "").strip().lower() in (
        "1",
        "true",
        "yes",
        "on",
    )


def clean_text(text: str, *, max_len: int = 200) -> str:
    s = (text or "").replace("\r", " ").replace("\n", " ").strip()
    # Remove other control chars.
    s = "".join(ch if (ch >= " " and ch != "\x7f") else " " for ch in s)
    s = re.sub(r"\s+", " ", s).strip()
    if max_len and len(s) > max_len:
        s = s[: max_len - 1].rstrip() + "…"
    return s


def public_error_message(
    e: Exception,
    *,
    default: str = "Operation failed. Check server logs for details.",
    max_len: int = 200,
) -> str:
    """Return a user-safe error message.

    - By default, avoids leaking internal exception details.
    - ValueError and FetchFailed carry user-facing text and are returned as-is.
    - If EXPOSE_INTERNAL_ERRORS is set, returns the exception type + message.
    """
    if expose_internal_errors():
        detail = clean_text(f"{type(e).__name__}: {e}", max_len=max_len)
        return detail or default

    if isinstance(e, (ValueError, FetchFailed)):
        msg = clean_text(str(e), max_len=max_len)
        return msg or default

    return default
