from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .backend import RuleBackend
from .errors import BackendSyncFailed
from .models import CompiledRule


logger = logging.getLogger(__name__)


@dataclass
class SyncPlan:
    remove_ids: List[int] = field(default_factory=list)
    add_records: List[Dict[str, Any]] = field(default_factory=list)
    unchanged: int = 0

    @property
    def empty(self) -> bool:
        return not self.remove_ids and not self.add_records


@dataclass(frozen=True)
class SyncResult:
    removed: int
    added: int
    unchanged: int
    batches: int


def _chunks(items: Sequence[Any], size: int) -> List[Sequence[Any]]:
    size = max(1, int(size))
    return [items[i : i + size] for i in range(0, len(items), size)]


class RuleSynchronizer:
    """Reconciles the backend's installed rules with a compiled target.

    Each reconcile observes backend state, diffs it against the target and
    applies removals then additions in sequential chunks. There is no
    transaction: a failure part-way leaves a mixed state, and the next
    reconcile recomputes the diff from what is actually installed.
    """

    def __init__(self, backend: RuleBackend, *, batch_size: Optional[int] = None):
        self.backend = backend
        self.batch_size = batch_size

    def _effective_batch_size(self) -> int:
        limit = int(getattr(self.backend, "max_batch_size", 0) or 0)
        if self.batch_size and limit:
            return min(int(self.batch_size), limit)
        return int(self.batch_size or limit or 1000)

    @staticmethod
    def plan(target: Sequence[CompiledRule], installed: Sequence[Dict[str, Any]]) -> SyncPlan:
        wanted: Dict[int, Dict[str, Any]] = {}
        for r in target:
            rec = r.to_backend()
            if rec["id"] in wanted:
                raise ValueError(f"Duplicate rule id {rec['id']} in compiled target.")
            wanted[rec["id"]] = rec
        current: Dict[int, Dict[str, Any]] = {int(rec.get("id") or 0): rec for rec in installed}

        out = SyncPlan()
        for rid in sorted(current):
            want = wanted.get(rid)
            if want is None or want != current[rid]:
                out.remove_ids.append(rid)
        for rid in sorted(wanted):
            have = current.get(rid)
            if have is None or have != wanted[rid]:
                out.add_records.append(wanted[rid])
            else:
                out.unchanged += 1
        return out

    def reconcile(self, target: Sequence[CompiledRule]) -> SyncResult:
        max_rules = int(getattr(self.backend, "max_rules", 0) or 0)
        if max_rules and len(target) > max_rules:
            raise BackendSyncFailed(
                f"Compiled rule set has {len(target)} rules; the backend allows {max_rules}."
            )

        try:
            installed = self.backend.get_rules()
        except Exception as e:
            raise BackendSyncFailed(f"Reading installed rules failed: {e}", cause=e) from e

        p = self.plan(target, installed)
        if p.empty:
            return SyncResult(removed=0, added=0, unchanged=p.unchanged, batches=0)

        size = self._effective_batch_size()
        applied = 0
        batches = 0
        try:
            for chunk in _chunks(p.remove_ids, size):
                self.backend.update_rules(remove_rule_ids=list(chunk))
                applied += len(chunk)
                batches += 1
            for chunk in _chunks(p.add_records, size):
                self.backend.update_rules(add_rules=list(chunk))
                applied += len(chunk)
                batches += 1
        except Exception as e:
            logger.warning(
                "Rule sync failed after %d of %d changes: %s",
                applied,
                len(p.remove_ids) + len(p.add_records),
                e,
            )
            raise BackendSyncFailed(f"Applying rule changes failed: {e}", applied=applied, cause=e) from e

        logger.info(
            "Rule sync: removed %d, added %d, unchanged %d in %d batches",
            len(p.remove_ids),
            len(p.add_records),
            p.unchanged,
            batches,
        )
        return SyncResult(
            removed=len(p.remove_ids),
            added=len(p.add_records),
            unchanged=p.unchanged,
            batches=batches,
        )
