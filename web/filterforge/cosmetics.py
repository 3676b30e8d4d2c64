from __future__ import annotations

from typing import Dict, Iterable, List, Set

from .domains import applies, domain_suffixes
from .models import ElementHideRule


class CosmeticIndex:
    """Element-hiding rules keyed by domain, queried per page.

    Scoped rules are filed under each of their include domains; global and
    exclude-only rules sit in a generic bucket consulted for every lookup.
    """

    def __init__(self) -> None:
        self._scoped: Dict[str, List[ElementHideRule]] = {}
        self._generic: List[ElementHideRule] = []
        self._count = 0

    @classmethod
    def build(cls, rules: Iterable[ElementHideRule]) -> "CosmeticIndex":
        idx = cls()
        for r in rules:
            idx.add(r)
        return idx

    def add(self, rule: ElementHideRule) -> None:
        self._count += 1
        if rule.domain_includes:
            for d in rule.domain_includes:
                self._scoped.setdefault(d, []).append(rule)
        else:
            self._generic.append(rule)

    def __len__(self) -> int:
        return self._count

    def _candidates(self, domain: str) -> List[ElementHideRule]:
        out: List[ElementHideRule] = []
        for suffix in domain_suffixes(domain):
            out.extend(self._scoped.get(suffix, ()))
        out.extend(self._generic)
        return out

    def cosmetics_for(self, domain: str) -> List[str]:
        """Selectors to hide on `domain`, exceptions already applied."""
        hide: List[str] = []
        seen: Set[str] = set()
        unhide: Set[str] = set()
        for r in self._candidates(domain):
            if not applies(r.domain_includes, r.domain_excludes, domain):
                continue
            if r.is_exception:
                unhide.add(r.selector)
            elif r.selector not in seen:
                seen.add(r.selector)
                hide.append(r.selector)
        return [s for s in hide if s not in unhide]

    def by_domain(self) -> Dict[str, List[str]]:
        out: Dict[str, List[str]] = {}
        for d, rules in self._scoped.items():
            sels = out.setdefault(d, [])
            for r in rules:
                if not r.is_exception and r.selector not in sels:
                    sels.append(r.selector)
        return {d: sels for d, sels in out.items() if sels}

    def generic_selectors(self) -> List[str]:
        out: List[str] = []
        for r in self._generic:
            if not r.is_exception and r.selector not in out:
                out.append(r.selector)
        return out
