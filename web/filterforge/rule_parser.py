from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

from .domains import looks_like_host, normalize_domain, split_domain_list
from .errors import ParseSkipped
from .models import ElementHideRule, ListFormat, NetworkRule, ParsedRule, ScriptletRule
from .patterns import is_regex_literal


logger = logging.getLogger(__name__)


# ABP / EasyList notes (the subset this parser understands):
# - Comments start with '!'; list headers look like [Adblock Plus 2.0]
# - Element hiding: 'domains##selector', exception 'domains#@#selector'
# - Scriptlets: 'domains#%#script', exception 'domains#@%#script'
# - Extended CSS / snippet markers ('#?#', '#$#') are not supported here
# - Exception network rules start with '@@'; options follow the first '$'

_ELEMHIDE_MARKERS = ("##", "#@#")
_SCRIPTLET_MARKERS = ("#%#", "#@%#")
_UNSUPPORTED_MARKERS = ("#?#", "#@?#", "#$#", "#@$#")

_TYPE_ALIASES: Dict[str, str] = {
    "script": "script",
    "image": "image",
    "stylesheet": "stylesheet",
    "css": "stylesheet",
    "xmlhttprequest": "xmlhttprequest",
    "xhr": "xmlhttprequest",
    "subdocument": "sub_frame",
    "frame": "sub_frame",
    "media": "media",
    "font": "font",
    "other": "other",
    "websocket": "websocket",
    "ping": "ping",
    "object": "object",
}

_HOSTS_LINE_RE = re.compile(r"^(?:0\.0\.0\.0|127\.0\.0\.1)\s+(?P<hosts>.+)$")
_HOSTS_IGNORED = frozenset(
    {"localhost", "localhost.localdomain", "local", "broadcasthost", "ip6-localhost", "0.0.0.0"}
)

# Only the first few failures per parse are logged.
_MAX_LOGGED_FAILURES = 5


@dataclass
class ParseResult:
    rules: List[ParsedRule] = field(default_factory=list)
    failures: int = 0
    comments: int = 0
    lines: int = 0

    @property
    def network(self) -> List[NetworkRule]:
        return [r for r in self.rules if isinstance(r, NetworkRule)]

    @property
    def cosmetic(self) -> List[ElementHideRule]:
        return [r for r in self.rules if isinstance(r, ElementHideRule)]

    @property
    def scriptlets(self) -> List[ScriptletRule]:
        return [r for r in self.rules if isinstance(r, ScriptletRule)]


@dataclass
class RuleOptions:
    domain_includes: Tuple[str, ...] = ()
    domain_excludes: Tuple[str, ...] = ()
    resource_types: Optional[Tuple[str, ...]] = None
    excluded_resource_types: Tuple[str, ...] = ()
    third_party_only: Optional[bool] = None
    first_party_only: bool = False
    important: bool = False


def _is_comment_or_header(s: str) -> bool:
    if s.startswith("!"):
        return True
    if s.startswith("[") and s.endswith("]"):
        return True
    return False


def _find_marker(s: str, markers: Tuple[str, ...]) -> Tuple[int, str]:
    best = (-1, "")
    for m in markers:
        i = s.find(m)
        if i >= 0 and (best[0] < 0 or i < best[0]):
            best = (i, m)
    return best


def split_options(rule: str) -> Tuple[str, str]:
    """Split a network rule into (pattern, options) at the first unescaped '$'.

    Regex rules like /ad[0-9]+$/ keep their '$'; '/re/$opts' splits after the
    closing slash.
    """
    s = (rule or "").strip()
    if s.startswith("/"):
        if len(s) >= 2 and s.endswith("/"):
            return s, ""
        i = s.rfind("/$")
        if i > 0:
            return s[: i + 1], s[i + 2 :].strip()
    i = 0
    while True:
        i = s.find("$", i)
        if i < 0:
            return s, ""
        if i > 0 and s[i - 1] == "\\":
            i += 1
            continue
        return s[:i].strip(), s[i + 1 :].strip()


def parse_options(opts: str) -> RuleOptions:
    """Parse a '$' option clause. Unknown tokens are ignored."""
    out = RuleOptions()
    types: List[str] = []
    not_types: List[str] = []
    saw_type = False
    for raw in (opts or "").split(","):
        t = raw.strip()
        if not t:
            continue
        if "=" in t:
            k, v = t.split("=", 1)
            if k.strip().lower() == "domain":
                out.domain_includes, out.domain_excludes = split_domain_list(v.split("|"))
            continue
        key = t.lower()
        if key in ("third-party", "3p"):
            out.third_party_only = True
        elif key in ("~third-party", "1p", "first-party", "~3p"):
            out.first_party_only = True
        elif key == "important":
            out.important = True
        elif key in _TYPE_ALIASES:
            saw_type = True
            name = _TYPE_ALIASES[key]
            if name not in types:
                types.append(name)
        elif key.startswith("~") and key[1:] in _TYPE_ALIASES:
            name = _TYPE_ALIASES[key[1:]]
            if name not in not_types:
                not_types.append(name)
    if saw_type:
        out.resource_types = tuple(types)
    out.excluded_resource_types = tuple(not_types)
    return out


def _has_literal(pattern: str) -> bool:
    # Anchors, wildcards and separators on their own match every URL.
    if is_regex_literal(pattern):
        return True
    return bool(pattern.strip("|*^"))


def _parse_network(line: str) -> NetworkRule:
    s = line
    is_exception = False
    if s.startswith("@@"):
        is_exception = True
        s = s[2:].strip()

    pattern, opts = split_options(s)
    o = parse_options(opts)

    if any(ch.isspace() for ch in pattern):
        raise ParseSkipped(line, "whitespace in network pattern")
    if not _has_literal(pattern):
        if not o.domain_includes:
            raise ParseSkipped(line, "network rule matches everything")
        pattern = "*"

    return NetworkRule(
        pattern=pattern,
        is_exception=is_exception,
        domain_includes=o.domain_includes,
        domain_excludes=o.domain_excludes,
        resource_types=o.resource_types,
        third_party_only=o.third_party_only,
        original_text=line,
        excluded_resource_types=o.excluded_resource_types,
        first_party_only=o.first_party_only,
        important=o.important,
    )


def parse_adblock_line(line: str) -> Optional[ParsedRule]:
    """Classify one trimmed line. Returns None for comments, raises ParseSkipped when malformed."""
    s = (line or "").strip()
    if not s or _is_comment_or_header(s):
        return None

    idx, marker = _find_marker(s, _ELEMHIDE_MARKERS + _SCRIPTLET_MARKERS + _UNSUPPORTED_MARKERS)
    if idx >= 0:
        if marker in _UNSUPPORTED_MARKERS:
            raise ParseSkipped(s, f"unsupported cosmetic marker {marker}")
        domains_part = s[:idx]
        body = s[idx + len(marker) :].strip()
        if not body:
            raise ParseSkipped(s, "empty cosmetic body")
        includes, excludes = split_domain_list(domains_part.split(","))
        exception = "@" in marker
        if marker in _ELEMHIDE_MARKERS:
            return ElementHideRule(
                selector=body,
                domain_includes=includes,
                domain_excludes=excludes,
                is_exception=exception,
            )
        return ScriptletRule(
            script_body=body,
            domain_includes=includes,
            domain_excludes=excludes,
            is_exception=exception,
        )

    if s.startswith("#"):
        # Hosts-style comment inside an adblock list.
        return None

    return _parse_network(s)


def parse_hosts_line(line: str) -> List[NetworkRule]:
    s = (line or "").strip()
    if not s or s.startswith("#"):
        return []
    s = s.split("#", 1)[0].strip()
    m = _HOSTS_LINE_RE.match(s)
    if not m:
        raise ParseSkipped(line, "not a 0.0.0.0/127.0.0.1 hosts entry")

    out: List[NetworkRule] = []
    for token in m.group("hosts").split():
        host = normalize_domain(token)
        if host in _HOSTS_IGNORED:
            continue
        if not looks_like_host(host) or "." not in host:
            raise ParseSkipped(line, f"invalid host {token!r}")
        out.append(NetworkRule(pattern=f"||{host}^", original_text=s))
    return out


def parse(text: Union[str, bytes, None], fmt: Union[ListFormat, str] = ListFormat.ADBLOCK) -> ParseResult:
    """Parse filter-list text into typed rules.

    Never raises on list content: lines that cannot be classified are counted
    in `failures` and skipped.
    """
    fmt = ListFormat.parse(fmt)
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")

    result = ParseResult()
    logged = 0
    for raw in (text or "").splitlines():
        result.lines += 1
        s = raw.strip()
        if not s:
            continue
        try:
            if fmt is ListFormat.HOSTS:
                rules = parse_hosts_line(s)
                if not rules and s.startswith("#"):
                    result.comments += 1
                result.rules.extend(rules)
            else:
                rule = parse_adblock_line(s)
                if rule is None:
                    result.comments += 1
                else:
                    result.rules.append(rule)
        except ParseSkipped as e:
            result.failures += 1
            if logged < _MAX_LOGGED_FAILURES:
                logged += 1
                logger.debug("Skipped filter line (%s): %s", e.reason, e.line[:200])

    if result.failures:
        logger.debug("Parsed %d rules, %d lines skipped", len(result.rules), result.failures)
    return result
