"""Translation of adblock-style URL patterns into anchored regular expressions.

The output is a regex string for the rule backend, which matches it with
``re.search`` against the full request URL, case-insensitively. The
translation itself is adblockparser's; this module keeps it total.
"""

from __future__ import annotations

import re
from functools import lru_cache

from adblockparser import AdblockParsingError, AdblockRule


MATCH_ALL = ".*"

# Stand-in for a literal '|' inside a pattern while adblockparser translates it.
_INNER_PIPE = "\x00"


def is_regex_literal(raw: str) -> bool:
    p = (raw or "").strip()
    return len(p) > 2 and p.startswith("/") and p.endswith("/")


def _protect_inner_pipes(p: str) -> str:
    lead = 2 if p.startswith("||") else 1 if p.startswith("|") else 0
    trail = 1 if p.endswith("|") and len(p) > lead else 0
    inner = p[lead : len(p) - trail]
    return p[:lead] + inner.replace("|", _INNER_PIPE) + p[len(p) - trail :]


@lru_cache(maxsize=65536)
def to_match_pattern(raw: str) -> str:
    p = (raw or "").strip().replace(_INNER_PIPE, "")
    if is_regex_literal(p):
        return p[1:-1]
    if not p:
        return MATCH_ALL
    try:
        out = AdblockRule.rule_to_regex(_protect_inner_pipes(p))
    except AdblockParsingError:
        return re.escape(p)
    return out.replace(_INNER_PIPE, r"\|") or MATCH_ALL


@lru_cache(maxsize=65536)
def is_valid_pattern(pattern: str) -> bool:
    try:
        re.compile(pattern, re.IGNORECASE)
    except (re.error, RecursionError, OverflowError):
        return False
    return True
