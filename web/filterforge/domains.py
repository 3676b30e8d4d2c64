from __future__ import annotations

import re
from typing import Iterable, List, Sequence, Tuple


_HOST_RE = re.compile(
    r"^(?=.{1,255}$)[a-z0-9_](?:[a-z0-9_-]{0,61}[a-z0-9_])?(?:\.[a-z0-9_](?:[a-z0-9_-]{0,61}[a-z0-9_])?)*$",
    re.IGNORECASE,
)


def normalize_domain(domain: str) -> str:
    return (domain or "").strip().lower().rstrip(".")


def looks_like_host(s: str) -> bool:
    h = normalize_domain(s)
    if not h or ".." in h:
        return False
    return _HOST_RE.match(h) is not None


def domain_matches(domain: str, entry: str) -> bool:
    """True if `domain` equals `entry` or is a subdomain of it.

    Matching is on label boundaries: notexample.com never matches example.com.
    """
    d = normalize_domain(domain)
    e = normalize_domain(entry)
    if not d or not e:
        return False
    return d == e or d.endswith("." + e)


def applies(rule_includes: Sequence[str], rule_excludes: Sequence[str], domain: str) -> bool:
    """Decide whether a domain-scoped rule applies to `domain`.

    Includes restrict the rule to the listed domains (and their subdomains),
    excludes carve domains out and always win. A rule with only excludes is
    global except for the carve-outs; with neither list it is global.
    """
    if rule_includes and not any(domain_matches(domain, e) for e in rule_includes):
        return False
    if rule_excludes and any(domain_matches(domain, e) for e in rule_excludes):
        return False
    return True


def split_domain_list(tokens: Iterable[str]) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
    """Split `~`-marked tokens into disjoint (includes, excludes).

    A domain listed both ways is kept only as an exclusion.
    """
    includes: List[str] = []
    excludes: List[str] = []
    for raw in tokens:
        t = (raw or "").strip()
        negated = t.startswith("~")
        d = normalize_domain(t[1:] if negated else t)
        if not d:
            continue
        if negated:
            if d not in excludes:
                excludes.append(d)
        elif d not in includes:
            includes.append(d)
    if excludes:
        includes = [d for d in includes if d not in excludes]
    return tuple(includes), tuple(excludes)


def domain_suffixes(domain: str) -> List[str]:
    """sub.example.com -> [sub.example.com, example.com, com]."""
    d = normalize_domain(domain)
    if not d:
        return []
    labels = d.split(".")
    return [".".join(labels[i:]) for i in range(len(labels))]


def _site(host: str) -> str:
    labels = normalize_domain(host).split(".")
    return ".".join(labels[-2:])


def is_third_party(request_host: str, initiator_host: str) -> bool:
    # Approximation of "same site": compare the last two labels.
    if not normalize_domain(initiator_host):
        return False
    return _site(request_host) != _site(initiator_host)
