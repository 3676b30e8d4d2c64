#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any, Dict, List, Optional, Tuple


# This script lives in web/tools; make the package importable without installing it.
_here = os.path.abspath(os.path.dirname(__file__))
_web_root = os.path.abspath(os.path.join(_here, ".."))
if _web_root not in sys.path:
    sys.path.insert(0, _web_root)

from filterforge.compiler import CompileConfig, CompileResult, compile_rules  # noqa: E402
from filterforge.models import CustomRule, FilterList, ListFormat  # noqa: E402
from filterforge.rule_parser import parse  # noqa: E402


def _split_list_arg(value: str) -> Tuple[str, str, ListFormat]:
    """PATH[:CATEGORY[:FORMAT]] -> (path, category, format)."""
    parts = value.rsplit(":", 2)
    path = parts[0]
    category = "ads"
    fmt = ListFormat.ADBLOCK
    if len(parts) >= 2 and parts[1]:
        category = parts[1].strip().lower()
    if len(parts) == 3:
        fmt = ListFormat.parse(parts[2])
    if not path:
        raise ValueError(f"Missing path in --list {value!r}")
    return path, category, fmt


def _load_list(path: str, category: str, fmt: ListFormat, order: int) -> FilterList:
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        text = f.read()
    res = parse(text, fmt)
    key = os.path.splitext(os.path.basename(path))[0] or f"list{order}"
    return FilterList(
        id=key,
        display_name=key,
        source_uri=os.path.abspath(path),
        category=category,
        enabled=True,
        raw_rule_count=len(res.rules),
        format=fmt,
        rules=res.rules,
        parse_failures=res.failures,
    )


def _custom_rules(allow: List[str], block: List[str]) -> List[CustomRule]:
    out: List[CustomRule] = []
    # Command-line order stands in for creation time.
    for i, (pattern, kind) in enumerate([(p, "block") for p in block] + [(p, "allow") for p in allow]):
        out.append(CustomRule.from_dict({"id": i + 1, "pattern": pattern, "type": kind, "created_at": i + 1}))
    return out


def build_report(result: CompileResult) -> Dict[str, Any]:
    return {
        "rules": [r.to_dict() for r in result.rules],
        "cosmetics": {
            "generic": result.cosmetics.generic_selectors(),
            "by_domain": result.cosmetics.by_domain(),
        },
        "scriptlets": [s.to_dict() for s in result.scriptlets],
        "diagnostics": result.diagnostics.to_dict(),
    }


def _write_json(path: str, data: Dict[str, Any]) -> None:
    if path == "-":
        json.dump(data, sys.stdout, indent=2, sort_keys=True)
        sys.stdout.write("\n")
        return
    d = os.path.dirname(os.path.abspath(path))
    os.makedirs(d, exist_ok=True)
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8", newline="\n") as f:
        json.dump(data, f, indent=2, sort_keys=True)
        f.write("\n")
    os.replace(tmp, path)


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Compile adblock/hosts filter lists into prioritized match rules")
    ap.add_argument(
        "--list",
        dest="lists",
        action="append",
        default=[],
        metavar="PATH[:CATEGORY[:FORMAT]]",
        help="Filter list file; category defaults to 'ads', format to 'adblock' (or 'hosts'). Repeatable.",
    )
    ap.add_argument(
        "--categories",
        default="",
        help="Comma-separated categories to compile (default: every category given with --list)",
    )
    ap.add_argument("--max-rules", type=int, default=30_000, help="Ceiling on compiled list rules")
    ap.add_argument("--custom-allow", action="append", default=[], metavar="PATTERN", help="User allow rule")
    ap.add_argument("--custom-block", action="append", default=[], metavar="PATTERN", help="User block rule")
    ap.add_argument("--whitelist", action="append", default=[], metavar="DOMAIN", help="Never block on this site")
    ap.add_argument("--blacklist", action="append", default=[], metavar="DOMAIN", help="Always block this site")
    ap.add_argument("--out", default="-", help="Output JSON file ('-' for stdout)")
    ns = ap.parse_args(argv)

    lists: List[FilterList] = []
    for i, arg in enumerate(ns.lists):
        try:
            path, category, fmt = _split_list_arg(arg)
            lists.append(_load_list(path, category, fmt, i))
        except (OSError, ValueError) as e:
            print(f"[filter_compile] cannot read list {arg!r}: {e}", file=sys.stderr)
            return 2

    try:
        custom = _custom_rules(ns.custom_allow, ns.custom_block)
    except ValueError as e:
        print(f"[filter_compile] invalid custom rule: {e}", file=sys.stderr)
        return 2

    if ns.categories.strip():
        categories = [c.strip().lower() for c in ns.categories.split(",") if c.strip()]
    else:
        categories = sorted({fl.category for fl in lists})

    result = compile_rules(
        lists,
        custom,
        categories,
        whitelist=ns.whitelist,
        blacklist=ns.blacklist,
        config=CompileConfig(max_list_rules=max(0, int(ns.max_rules))),
    )

    try:
        _write_json(str(ns.out), build_report(result))
    except OSError as e:
        print(f"[filter_compile] cannot write {ns.out}: {e}", file=sys.stderr)
        return 2

    diag = result.diagnostics
    print(
        f"[filter_compile] compiled: rules={len(result.rules)} network={diag.counts['network']} "
        f"custom={diag.counts['custom']} cosmetic={len(result.cosmetics)} scriptlets={len(result.scriptlets)} "
        f"invalid={diag.invalid_patterns} over_ceiling={diag.capacity_dropped} "
        f"range_exhausted={sum(diag.range_exhausted.values())}",
        file=sys.stderr,
        flush=True,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
