from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union


class ListFormat(str, enum.Enum):
    ADBLOCK = "adblock"
    HOSTS = "hosts"

    @classmethod
    def parse(cls, value: Union[str, "ListFormat", None]) -> "ListFormat":
        if isinstance(value, ListFormat):
            return value
        v = (value or "").strip().lower()
        if v in ("hosts", "hostfile", "hosts-file"):
            return cls.HOSTS
        if v in ("", "adblock", "abp", "easylist"):
            return cls.ADBLOCK
        raise ValueError(f"Unknown filter list format: {value!r}")


class Action(str, enum.Enum):
    ALLOW = "allow"
    BLOCK = "block"


# Backend resource type names. Rules without a type option cover all of these.
DEFAULT_RESOURCE_TYPES: Tuple[str, ...] = (
    "script",
    "image",
    "stylesheet",
    "xmlhttprequest",
    "sub_frame",
    "media",
    "font",
    "other",
)

# Whitelist/blacklist/custom rules also cover top-level navigations.
SITE_RESOURCE_TYPES: Tuple[str, ...] = ("main_frame",) + DEFAULT_RESOURCE_TYPES


@dataclass(frozen=True)
class NetworkRule:
    kind: ClassVar[str] = "network"

    pattern: str
    is_exception: bool = False
    domain_includes: Tuple[str, ...] = ()
    domain_excludes: Tuple[str, ...] = ()
    resource_types: Optional[Tuple[str, ...]] = None
    third_party_only: Optional[bool] = None
    original_text: str = ""
    excluded_resource_types: Tuple[str, ...] = ()
    first_party_only: bool = False
    important: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "pattern": self.pattern,
            "exception": self.is_exception,
            "domains": list(self.domain_includes),
            "not_domains": list(self.domain_excludes),
            "types": None if self.resource_types is None else list(self.resource_types),
            "not_types": list(self.excluded_resource_types),
            "third_party": self.third_party_only,
            "first_party": self.first_party_only,
            "important": self.important,
            "raw": self.original_text,
        }


@dataclass(frozen=True)
class ElementHideRule:
    kind: ClassVar[str] = "elemhide"

    selector: str
    domain_includes: Tuple[str, ...] = ()
    domain_excludes: Tuple[str, ...] = ()
    is_exception: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "selector": self.selector,
            "domains": list(self.domain_includes),
            "not_domains": list(self.domain_excludes),
            "exception": self.is_exception,
        }


@dataclass(frozen=True)
class ScriptletRule:
    kind: ClassVar[str] = "scriptlet"

    script_body: str
    domain_includes: Tuple[str, ...] = ()
    domain_excludes: Tuple[str, ...] = ()
    is_exception: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "script": self.script_body,
            "domains": list(self.domain_includes),
            "not_domains": list(self.domain_excludes),
            "exception": self.is_exception,
        }


ParsedRule = Union[NetworkRule, ElementHideRule, ScriptletRule]


def _tuple(value: Any) -> Tuple[str, ...]:
    return tuple(str(v) for v in (value or ()))


def parsed_rule_from_dict(d: Dict[str, Any]) -> ParsedRule:
    """Rebuild a parsed rule from its cached `to_dict()` form."""
    kind = d.get("kind")
    if kind == NetworkRule.kind:
        types = d.get("types")
        tp = d.get("third_party")
        return NetworkRule(
            pattern=str(d.get("pattern") or ""),
            is_exception=bool(d.get("exception")),
            domain_includes=_tuple(d.get("domains")),
            domain_excludes=_tuple(d.get("not_domains")),
            resource_types=None if types is None else _tuple(types),
            third_party_only=None if tp is None else bool(tp),
            original_text=str(d.get("raw") or ""),
            excluded_resource_types=_tuple(d.get("not_types")),
            first_party_only=bool(d.get("first_party")),
            important=bool(d.get("important")),
        )
    if kind == ElementHideRule.kind:
        return ElementHideRule(
            selector=str(d.get("selector") or ""),
            domain_includes=_tuple(d.get("domains")),
            domain_excludes=_tuple(d.get("not_domains")),
            is_exception=bool(d.get("exception")),
        )
    if kind == ScriptletRule.kind:
        return ScriptletRule(
            script_body=str(d.get("script") or ""),
            domain_includes=_tuple(d.get("domains")),
            domain_excludes=_tuple(d.get("not_domains")),
            is_exception=bool(d.get("exception")),
        )
    raise ValueError(f"Unknown parsed rule kind: {kind!r}")


@dataclass
class FilterList:
    id: str
    display_name: str
    source_uri: str
    category: str
    enabled: bool = True
    raw_rule_count: int = 0
    last_fetched_at: Optional[int] = None
    format: ListFormat = ListFormat.ADBLOCK
    rules: List[ParsedRule] = field(default_factory=list)
    parse_failures: int = 0
    stale: bool = False
    last_error: str = ""


@dataclass(frozen=True)
class CompiledRule:
    id: int
    priority: int
    action: Action
    match_pattern: str
    resource_type_filter: Optional[Tuple[str, ...]]
    initiator_domain_includes: Optional[Tuple[str, ...]]
    initiator_domain_excludes: Optional[Tuple[str, ...]]
    source_category: str
    request_domains: Optional[Tuple[str, ...]] = None
    domain_type: Optional[str] = None
    source_list: Optional[str] = None
    original_text: str = ""

    def to_backend(self) -> Dict[str, Any]:
        condition: Dict[str, Any] = {"regexFilter": self.match_pattern}
        if self.resource_type_filter:
            condition["resourceTypes"] = list(self.resource_type_filter)
        if self.initiator_domain_includes:
            condition["initiatorDomains"] = list(self.initiator_domain_includes)
        if self.initiator_domain_excludes:
            condition["excludedInitiatorDomains"] = list(self.initiator_domain_excludes)
        if self.request_domains:
            condition["requestDomains"] = list(self.request_domains)
        if self.domain_type:
            condition["domainType"] = self.domain_type
        return {
            "id": int(self.id),
            "priority": int(self.priority),
            "action": {"type": self.action.value},
            "condition": condition,
        }

    def to_dict(self) -> Dict[str, Any]:
        d = self.to_backend()
        d["category"] = self.source_category
        if self.source_list:
            d["list"] = self.source_list
        if self.original_text:
            d["raw"] = self.original_text
        return d


@dataclass(frozen=True)
class RuleIDRange:
    category: str
    start: int
    end: int

    @property
    def width(self) -> int:
        return self.end - self.start

    def __contains__(self, rule_id: object) -> bool:
        return isinstance(rule_id, int) and self.start <= rule_id < self.end


@dataclass(frozen=True)
class CustomRule:
    id: int
    pattern: str
    type: str
    created_at: int
    resource_types: Optional[Tuple[str, ...]] = None
    domains: Optional[Tuple[str, ...]] = None

    @property
    def action(self) -> Action:
        return Action.ALLOW if self.type == "allow" else Action.BLOCK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pattern": self.pattern,
            "type": self.type,
            "created_at": self.created_at,
            "resource_types": None if self.resource_types is None else list(self.resource_types),
            "domains": None if self.domains is None else list(self.domains),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CustomRule":
        rtype = str(d.get("type") or "block").strip().lower()
        if rtype not in ("block", "allow"):
            raise ValueError(f"Custom rule type must be 'block' or 'allow', not {rtype!r}.")
        pattern = str(d.get("pattern") or "").strip()
        if not pattern:
            raise ValueError("Custom rule pattern is required.")
        types = d.get("resource_types")
        domains = d.get("domains")
        return cls(
            id=int(d.get("id") or 0),
            pattern=pattern,
            type=rtype,
            created_at=int(d.get("created_at") or 0),
            resource_types=None if not types else _tuple(types),
            domains=None if not domains else _tuple(domains),
        )
