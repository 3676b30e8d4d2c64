from __future__ import annotations

import copy
import re
import threading
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence
from urllib.parse import urlsplit

from .domains import applies, domain_matches, is_third_party, normalize_domain
from .errors import RuleBackendError
from .models import Action


class RuleBackend(Protocol):
    """The external rule matcher. The synchronizer is its only writer."""

    max_rules: int
    max_batch_size: int

    def get_rules(self) -> List[Dict[str, Any]]:
        ...

    def update_rules(
        self,
        add_rules: Sequence[Dict[str, Any]] = (),
        remove_rule_ids: Sequence[int] = (),
    ) -> None:
        ...


def _host_from_url(url: str) -> str:
    try:
        return normalize_domain(urlsplit(url or "").hostname or "")
    except ValueError:
        return ""


class InMemoryRuleBackend:
    """In-process rule matcher with the same limits a browser host enforces.

    Removals in a call are applied before additions, like the host API.
    """

    def __init__(self, max_rules: int = 30_000, max_batch_size: int = 5_000):
        self.max_rules = int(max_rules)
        self.max_batch_size = int(max_batch_size)
        self._lock = threading.Lock()
        self._rules: Dict[int, Dict[str, Any]] = {}
        self._compiled: Dict[int, "re.Pattern[str]"] = {}
        self.calls = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._rules)

    def get_rules(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(self._rules[k]) for k in sorted(self._rules)]

    def update_rules(
        self,
        add_rules: Sequence[Dict[str, Any]] = (),
        remove_rule_ids: Sequence[int] = (),
    ) -> None:
        add_rules = list(add_rules or ())
        remove_ids = [int(x) for x in (remove_rule_ids or ())]
        if len(add_rules) + len(remove_ids) > self.max_batch_size:
            raise RuleBackendError(
                f"Batch of {len(add_rules) + len(remove_ids)} changes exceeds the limit of {self.max_batch_size}."
            )

        with self._lock:
            removing = set(remove_ids)
            remaining = {k: v for k, v in self._rules.items() if k not in removing}
            new_ids = set()
            for rec in add_rules:
                rid = int(rec.get("id") or 0)
                if rid <= 0:
                    raise RuleBackendError(f"Invalid rule id {rec.get('id')!r}.")
                if rid in remaining or rid in new_ids:
                    raise RuleBackendError(f"Rule id {rid} is already installed.")
                pattern = (rec.get("condition") or {}).get("regexFilter") or ""
                try:
                    re.compile(pattern, re.IGNORECASE)
                except re.error as e:
                    raise RuleBackendError(f"Rule {rid} has an invalid regexFilter: {e}") from e
                new_ids.add(rid)
            if len(remaining) + len(new_ids) > self.max_rules:
                raise RuleBackendError(
                    f"Update would leave {len(remaining) + len(new_ids)} rules installed; the limit is {self.max_rules}."
                )

            for rid in remove_ids:
                self._rules.pop(rid, None)
                self._compiled.pop(rid, None)
            for rec in add_rules:
                self._rules[int(rec["id"])] = copy.deepcopy(dict(rec))
            self.calls += 1

    def _regex(self, rid: int, pattern: str) -> "re.Pattern[str]":
        rx = self._compiled.get(rid)
        if rx is None:
            rx = re.compile(pattern, re.IGNORECASE)
            self._compiled[rid] = rx
        return rx

    def _condition_matches(
        self,
        rid: int,
        cond: Dict[str, Any],
        url: str,
        host: str,
        initiator: str,
        resource_type: str,
    ) -> bool:
        types = cond.get("resourceTypes")
        if types and resource_type not in types:
            return False
        includes = cond.get("initiatorDomains") or ()
        excludes = cond.get("excludedInitiatorDomains") or ()
        if includes or excludes:
            if not applies(includes, excludes, initiator):
                return False
        req_domains = cond.get("requestDomains") or ()
        if req_domains and not any(domain_matches(host, d) for d in req_domains):
            return False
        domain_type = cond.get("domainType")
        if domain_type:
            third = is_third_party(host, initiator)
            if domain_type == "thirdParty" and not third:
                return False
            if domain_type == "firstParty" and third:
                return False
        return self._regex(rid, cond.get("regexFilter") or "").search(url) is not None

    def match(self, url: str, initiator: Optional[str] = None, resource_type: str = "script") -> Optional[Dict[str, Any]]:
        """Winning rule for a request, or None. Highest priority wins; allow wins a tie."""
        host = _host_from_url(url)
        init = normalize_domain(initiator or "")
        best: Optional[Dict[str, Any]] = None
        best_key = None
        with self._lock:
            for rid, rec in self._rules.items():
                cond = rec.get("condition") or {}
                if not self._condition_matches(rid, cond, url, host, init, resource_type):
                    continue
                is_allow = (rec.get("action") or {}).get("type") == Action.ALLOW.value
                key = (int(rec.get("priority") or 1), 1 if is_allow else 0, -rid)
                if best_key is None or key > best_key:
                    best, best_key = rec, key
        return copy.deepcopy(best) if best is not None else None

    def decide(self, url: str, initiator: Optional[str] = None, resource_type: str = "script") -> Optional[Action]:
        rec = self.match(url, initiator=initiator, resource_type=resource_type)
        if rec is None:
            return None
        return Action((rec.get("action") or {}).get("type") or Action.BLOCK.value)

    def installed_ids(self) -> Iterable[int]:
        with self._lock:
            return sorted(self._rules)
