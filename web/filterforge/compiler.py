from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .cosmetics import CosmeticIndex
from .domains import looks_like_host, normalize_domain, split_domain_list
from .errors import RangeExhausted
from .id_ranges import BLACKLIST, CUSTOM, DEFAULT_ID_SPACE, WHITELIST, RuleIdAllocator, RuleIdSpace
from .models import (
    DEFAULT_RESOURCE_TYPES,
    SITE_RESOURCE_TYPES,
    Action,
    CompiledRule,
    CustomRule,
    ElementHideRule,
    FilterList,
    NetworkRule,
    ScriptletRule,
)
from .patterns import MATCH_ALL, is_valid_pattern, to_match_pattern


logger = logging.getLogger(__name__)


class Priority(enum.IntEnum):
    """Backend priorities; the higher number wins, allow wins a tie."""

    LIST_BLOCK = 1
    LIST_IMPORTANT = 2
    LIST_EXCEPTION = 3
    BLACKLIST = 4
    WHITELIST = 5
    CUSTOM_BLOCK = 6
    CUSTOM_ALLOW = 7


@dataclass(frozen=True)
class CompileConfig:
    max_list_rules: int = 30_000
    # Backend-wide cap. List rules stop early so custom and site rules always fit.
    max_total_rules: Optional[int] = None
    id_space: RuleIdSpace = DEFAULT_ID_SPACE
    default_resource_types: Tuple[str, ...] = DEFAULT_RESOURCE_TYPES


@dataclass
class Diagnostics:
    parse_failures: Dict[str, int] = field(default_factory=dict)
    range_exhausted: Dict[str, int] = field(default_factory=dict)
    capacity_dropped: int = 0
    invalid_patterns: int = 0
    duplicates: int = 0
    warnings: List[str] = field(default_factory=list)
    counts: Dict[str, int] = field(
        default_factory=lambda: {
            "network": 0,
            "cosmetic": 0,
            "scriptlet": 0,
            "custom": 0,
            "whitelist": 0,
            "blacklist": 0,
        }
    )

    @property
    def has_range_exhausted(self) -> bool:
        return bool(self.range_exhausted)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parse_failures": dict(self.parse_failures),
            "range_exhausted": dict(self.range_exhausted),
            "capacity_dropped": self.capacity_dropped,
            "invalid_patterns": self.invalid_patterns,
            "duplicates": self.duplicates,
            "warnings": list(self.warnings),
            "counts": dict(self.counts),
        }


@dataclass
class CompileResult:
    rules: List[CompiledRule]
    cosmetics: CosmeticIndex
    scriptlets: List[ScriptletRule]
    diagnostics: Diagnostics

    def rule_ids(self) -> List[int]:
        return [r.id for r in self.rules]


def resolve_resource_types(rule: NetworkRule, defaults: Sequence[str]) -> Tuple[str, ...]:
    """Resource types a list rule applies to.

    No type option means every common type; `~type` options subtract.
    """
    base = rule.resource_types if rule.resource_types else tuple(defaults)
    if rule.excluded_resource_types:
        base = tuple(t for t in base if t not in rule.excluded_resource_types)
    return base


def _priority_for(rule: NetworkRule) -> Priority:
    if rule.is_exception:
        return Priority.LIST_EXCEPTION
    if rule.important:
        return Priority.LIST_IMPORTANT
    return Priority.LIST_BLOCK


def _domain_type(rule: NetworkRule) -> Optional[str]:
    if rule.third_party_only:
        return "thirdParty"
    if rule.first_party_only:
        return "firstParty"
    return None


class _Emitter:
    """Allocates ids and de-duplicates while one batch is being built."""

    def __init__(self, config: CompileConfig, diag: Diagnostics):
        self.config = config
        self.diag = diag
        self.allocator = RuleIdAllocator(config.id_space)
        self.allocator.reset()
        self.rules: List[CompiledRule] = []
        self._seen: Set[Tuple[Any, ...]] = set()
        self._exhausted: Set[str] = set()

    def emit(
        self,
        band: str,
        *,
        priority: int,
        action: Action,
        match_pattern: str,
        resource_types: Optional[Tuple[str, ...]],
        initiator_includes: Optional[Tuple[str, ...]] = None,
        initiator_excludes: Optional[Tuple[str, ...]] = None,
        request_domains: Optional[Tuple[str, ...]] = None,
        domain_type: Optional[str] = None,
        source_category: str = "",
        source_list: Optional[str] = None,
        original_text: str = "",
    ) -> bool:
        key = (
            int(priority),
            action.value,
            match_pattern,
            resource_types,
            initiator_includes or None,
            initiator_excludes or None,
            request_domains or None,
            domain_type,
        )
        if key in self._seen:
            self.diag.duplicates += 1
            return False
        if band in self._exhausted:
            self.diag.range_exhausted[band] = self.diag.range_exhausted.get(band, 0) + 1
            return False
        try:
            rule_id = self.allocator.next_id(band)
        except RangeExhausted as e:
            self._exhausted.add(band)
            self.diag.range_exhausted[band] = self.diag.range_exhausted.get(band, 0) + 1
            msg = f"Rule id range {band!r} exhausted after {e.width} rules; dropping the rest of this category."
            self.diag.warnings.append(msg)
            logger.warning(msg)
            return False
        self._seen.add(key)
        self.rules.append(
            CompiledRule(
                id=rule_id,
                priority=int(priority),
                action=action,
                match_pattern=match_pattern,
                resource_type_filter=resource_types,
                initiator_domain_includes=initiator_includes or None,
                initiator_domain_excludes=initiator_excludes or None,
                source_category=source_category or band,
                request_domains=request_domains or None,
                domain_type=domain_type,
                source_list=source_list,
                original_text=original_text,
            )
        )
        return True


def _compile_custom(em: _Emitter, custom_rules: Sequence[CustomRule]) -> None:
    for cr in sorted(custom_rules, key=lambda r: (r.created_at, r.id)):
        pattern = to_match_pattern(cr.pattern)
        if not is_valid_pattern(pattern):
            em.diag.invalid_patterns += 1
            em.diag.warnings.append(f"Custom rule {cr.id} has an invalid pattern; skipped.")
            continue
        includes: Tuple[str, ...] = ()
        excludes: Tuple[str, ...] = ()
        if cr.domains:
            includes, excludes = split_domain_list(cr.domains)
        allow = cr.action is Action.ALLOW
        if em.emit(
            CUSTOM,
            priority=Priority.CUSTOM_ALLOW if allow else Priority.CUSTOM_BLOCK,
            action=cr.action,
            match_pattern=pattern,
            resource_types=tuple(cr.resource_types) if cr.resource_types else SITE_RESOURCE_TYPES,
            initiator_includes=includes,
            initiator_excludes=excludes,
            source_category=CUSTOM,
            original_text=cr.pattern,
        ):
            em.diag.counts["custom"] += 1


def _clean_sites(domains: Iterable[str]) -> List[str]:
    out: List[str] = []
    for d in domains:
        h = normalize_domain(d)
        if h and looks_like_host(h) and h not in out:
            out.append(h)
    return sorted(out)


def _compile_sites(em: _Emitter, whitelist: Iterable[str], blacklist: Iterable[str]) -> None:
    for domain in _clean_sites(whitelist):
        # Requests made by the site, and requests to the site.
        emitted = em.emit(
            WHITELIST,
            priority=Priority.WHITELIST,
            action=Action.ALLOW,
            match_pattern=MATCH_ALL,
            resource_types=SITE_RESOURCE_TYPES,
            initiator_includes=(domain,),
            source_category=WHITELIST,
            original_text=domain,
        )
        emitted |= em.emit(
            WHITELIST,
            priority=Priority.WHITELIST,
            action=Action.ALLOW,
            match_pattern=to_match_pattern(f"||{domain}^"),
            resource_types=SITE_RESOURCE_TYPES,
            request_domains=(domain,),
            source_category=WHITELIST,
            original_text=domain,
        )
        if emitted:
            em.diag.counts["whitelist"] += 1

    for domain in _clean_sites(blacklist):
        if em.emit(
            BLACKLIST,
            priority=Priority.BLACKLIST,
            action=Action.BLOCK,
            match_pattern=to_match_pattern(f"||{domain}^"),
            resource_types=SITE_RESOURCE_TYPES,
            request_domains=(domain,),
            source_category=BLACKLIST,
            original_text=domain,
        ):
            em.diag.counts["blacklist"] += 1


def _compile_lists(
    em: _Emitter,
    lists: Sequence[FilterList],
    enabled_categories: Set[str],
    cosmetic_rules: List[ElementHideRule],
    scriptlets: List[ScriptletRule],
    limit: int,
) -> None:
    config = em.config
    list_rules = 0
    for fl in lists:
        if not fl.enabled or fl.category not in enabled_categories:
            continue
        if fl.parse_failures:
            em.diag.parse_failures[fl.id] = int(fl.parse_failures)
        band = config.id_space.band_for(fl.category)
        for rule in fl.rules:
            if isinstance(rule, ElementHideRule):
                cosmetic_rules.append(rule)
                em.diag.counts["cosmetic"] += 1
                continue
            if isinstance(rule, ScriptletRule):
                scriptlets.append(rule)
                em.diag.counts["scriptlet"] += 1
                continue
            if not isinstance(rule, NetworkRule):
                continue

            if list_rules >= limit:
                em.diag.capacity_dropped += 1
                continue

            pattern = to_match_pattern(rule.pattern)
            types = resolve_resource_types(rule, config.default_resource_types)
            if not types or not is_valid_pattern(pattern):
                em.diag.invalid_patterns += 1
                continue

            if em.emit(
                band,
                priority=_priority_for(rule),
                action=Action.ALLOW if rule.is_exception else Action.BLOCK,
                match_pattern=pattern,
                resource_types=types,
                initiator_includes=rule.domain_includes,
                initiator_excludes=rule.domain_excludes,
                domain_type=_domain_type(rule),
                source_category=fl.category,
                source_list=fl.id,
                original_text=rule.original_text,
            ):
                list_rules += 1
                em.diag.counts["network"] += 1

    if em.diag.capacity_dropped:
        msg = f"List rule ceiling of {limit} reached; dropped {em.diag.capacity_dropped} rules."
        em.diag.warnings.append(msg)
        logger.warning(msg)


def compile_rules(
    lists: Sequence[FilterList],
    custom_rules: Sequence[CustomRule],
    enabled_categories: Iterable[str],
    *,
    whitelist: Iterable[str] = (),
    blacklist: Iterable[str] = (),
    config: Optional[CompileConfig] = None,
) -> CompileResult:
    """Compile enabled lists plus user rules into one prioritized batch.

    Pure function of its inputs: identical inputs give identical ids and
    priorities. Custom, whitelist and blacklist rules are not subject to the
    list ceiling; list rules are taken in list order until it is reached, or
    until they would crowd user rules out of `max_total_rules`.
    """
    config = config or CompileConfig()
    diag = Diagnostics()
    em = _Emitter(config, diag)
    cosmetic_rules: List[ElementHideRule] = []
    scriptlets: List[ScriptletRule] = []

    _compile_custom(em, custom_rules)
    _compile_sites(em, whitelist, blacklist)
    limit = config.max_list_rules
    if config.max_total_rules is not None:
        limit = min(limit, max(0, int(config.max_total_rules) - len(em.rules)))
    _compile_lists(em, lists, set(enabled_categories), cosmetic_rules, scriptlets, limit)

    logger.info(
        "Compiled %d rules (%d network, %d custom, %d cosmetic); %d invalid, %d duplicate, %d over ceiling",
        len(em.rules),
        diag.counts["network"],
        diag.counts["custom"],
        diag.counts["cosmetic"],
        diag.invalid_patterns,
        diag.duplicates,
        diag.capacity_dropped,
    )
    return CompileResult(
        rules=em.rules,
        cosmetics=CosmeticIndex.build(cosmetic_rules),
        scriptlets=scriptlets,
        diagnostics=diag,
    )
