from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from .errors import RangeExhausted
from .models import RuleIDRange


LIST_CATEGORIES: Tuple[str, ...] = ("ads", "trackers", "social", "cryptominers", "malware")
WHITELIST = "whitelist"
BLACKLIST = "blacklist"
CUSTOM = "custom"
# Shared band for list categories without a dedicated range (annoyances, unified hosts, ...).
SHARED_LISTS = "lists"


class RuleIdSpace:
    """Static, non-overlapping partition of the backend's integer rule ids."""

    def __init__(self, ranges: Iterable[RuleIDRange]):
        rs = sorted(ranges, key=lambda r: r.start)
        seen = set()
        prev: Optional[RuleIDRange] = None
        for r in rs:
            if r.start < 1 or r.end <= r.start:
                raise ValueError(f"Invalid id range for {r.category!r}: [{r.start}, {r.end}).")
            if r.category in seen:
                raise ValueError(f"Duplicate id range for {r.category!r}.")
            if prev is not None and r.start < prev.end:
                raise ValueError(f"Id ranges {prev.category!r} and {r.category!r} overlap.")
            seen.add(r.category)
            prev = r
        self._ranges: Dict[str, RuleIDRange] = {r.category: r for r in rs}
        self._ordered: Tuple[RuleIDRange, ...] = tuple(rs)

    @property
    def ranges(self) -> Tuple[RuleIDRange, ...]:
        return self._ordered

    def __contains__(self, category: object) -> bool:
        return category in self._ranges

    def get(self, category: str) -> RuleIDRange:
        try:
            return self._ranges[category]
        except KeyError:
            raise KeyError(f"No id range declared for category {category!r}") from None

    def band_for(self, category: str) -> str:
        """Band used for rules of a filter-list category."""
        if category in self._ranges and category not in (WHITELIST, BLACKLIST, CUSTOM):
            return category
        return SHARED_LISTS

    def category_of(self, rule_id: int) -> Optional[str]:
        for r in self._ordered:
            if rule_id in r:
                return r.category
        return None

    def with_widths(self, widths: Dict[str, int]) -> "RuleIdSpace":
        """Copy with some bands narrowed, keeping their floors. Handy for tests and tight backends."""
        out: List[RuleIDRange] = []
        for r in self._ordered:
            w = widths.get(r.category)
            if w is None:
                out.append(r)
            else:
                out.append(RuleIDRange(r.category, r.start, r.start + max(1, min(int(w), r.width))))
        return RuleIdSpace(out)


DEFAULT_ID_SPACE = RuleIdSpace(
    [
        RuleIDRange("ads", 1, 10_000),
        RuleIDRange("trackers", 10_000, 20_000),
        RuleIDRange("social", 20_000, 30_000),
        RuleIDRange("cryptominers", 30_000, 40_000),
        RuleIDRange("malware", 40_000, 50_000),
        RuleIDRange(WHITELIST, 50_000, 60_000),
        RuleIDRange(BLACKLIST, 60_000, 70_000),
        RuleIDRange(CUSTOM, 100_000, 200_000),
        RuleIDRange(SHARED_LISTS, 1_000_000, 2_000_000),
    ]
)


class _RangeCursor:
    __slots__ = ("range", "next")

    def __init__(self, r: RuleIDRange):
        self.range = r
        self.next = r.start

    def __iter__(self) -> Iterator[int]:
        return self

    def __next__(self) -> int:
        if self.next >= self.range.end:
            raise RangeExhausted(self.range.category, self.range.width)
        v = self.next
        self.next += 1
        return v


class RuleIdAllocator:
    """Hands out ids per category, monotonically from each range's floor.

    One allocator serves one compilation cycle; `reset()` is only called when
    a full recompilation starts.
    """

    def __init__(self, space: RuleIdSpace = DEFAULT_ID_SPACE):
        self.space = space
        self._cursors: Dict[str, _RangeCursor] = {}

    def reset(self) -> None:
        self._cursors.clear()

    def allocate(self, category: str) -> Iterator[int]:
        cur = self._cursors.get(category)
        if cur is None:
            cur = _RangeCursor(self.space.get(category))
            self._cursors[category] = cur
        return cur

    def next_id(self, category: str) -> int:
        return next(self.allocate(category))

    def used(self, category: str) -> int:
        cur = self._cursors.get(category)
        return 0 if cur is None else cur.next - cur.range.start

    def remaining(self, category: str) -> int:
        r = self.space.get(category)
        return r.width - self.used(category)


def group_ids_by_category(ids: Sequence[int], space: RuleIdSpace = DEFAULT_ID_SPACE) -> Dict[str, List[int]]:
    out: Dict[str, List[int]] = {}
    for rule_id in sorted(ids):
        cat = space.category_of(rule_id) or "unknown"
        out.setdefault(cat, []).append(rule_id)
    return out
