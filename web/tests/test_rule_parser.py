import pytest

from filterforge.backend import InMemoryRuleBackend
from filterforge.compiler import compile_rules
from filterforge.models import Action, ElementHideRule, FilterList, ListFormat, NetworkRule, ScriptletRule
from filterforge.rule_parser import parse, parse_options, split_options
from filterforge.rule_sync import RuleSynchronizer


def test_comments_headers_and_blank_lines_are_skipped():
    res = parse("[Adblock Plus 2.0]\n! Title: test\n\n   \n# hosts style comment\n")
    assert res.rules == []
    assert res.failures == 0
    assert res.comments == 3


def test_element_hiding_rules_and_exceptions():
    res = parse("example.com,~shop.example.com##.banner-ad\n##.global-ad\nexample.com#@#.banner-ad")
    assert res.failures == 0
    scoped, glob, exc = res.rules
    assert isinstance(scoped, ElementHideRule)
    assert scoped.selector == ".banner-ad"
    assert scoped.domain_includes == ("example.com",)
    assert scoped.domain_excludes == ("shop.example.com",)
    assert not scoped.is_exception

    assert glob.domain_includes == () and glob.domain_excludes == ()
    assert exc.is_exception


def test_selector_is_kept_verbatim():
    res = parse('example.com##div[class^="ad-"] > a[href*="$"]')
    (rule,) = res.rules
    assert isinstance(rule, ElementHideRule)
    assert rule.selector == 'div[class^="ad-"] > a[href*="$"]'


def test_scriptlet_rules_are_stored_opaque():
    res = parse("example.com#%#//scriptlet('abort-on-property-read', 'ads')\nexample.com#@%#window.x=1")
    first, second = res.rules
    assert isinstance(first, ScriptletRule)
    assert first.script_body == "//scriptlet('abort-on-property-read', 'ads')"
    assert second.is_exception


def test_unsupported_cosmetic_markers_count_as_failures():
    res = parse("example.com#?#div:has(> .ad)\nexample.com#$#body { overflow: auto }\n||ads.test^")
    assert res.failures == 2
    assert len(res.network) == 1


def test_network_rule_with_exception_and_options():
    res = parse("@@||cdn.example.com/lib.js$script,domain=example.com|~beta.example.com,third-party")
    (rule,) = res.rules
    assert isinstance(rule, NetworkRule)
    assert rule.is_exception
    assert rule.pattern == "||cdn.example.com/lib.js"
    assert rule.resource_types == ("script",)
    assert rule.domain_includes == ("example.com",)
    assert rule.domain_excludes == ("beta.example.com",)
    assert rule.third_party_only is True
    assert rule.original_text.startswith("@@||cdn.example.com")


def test_type_aliases_and_negations():
    o = parse_options("css,xhr,subdocument,frame,~image,important,1p,unknown-option,rewrite=abp-resource:blank-js")
    assert o.resource_types == ("stylesheet", "xmlhttprequest", "sub_frame")
    assert o.excluded_resource_types == ("image",)
    assert o.important is True
    assert o.first_party_only is True
    assert o.third_party_only is None


def test_unknown_options_do_not_reject_the_rule():
    res = parse("||ads.example.com^$some-future-option,another=thing")
    assert res.failures == 0
    (rule,) = res.rules
    assert rule.resource_types is None


def test_split_options_first_unescaped_dollar():
    assert split_options("/ads/*$script") == ("/ads/*", "script")
    assert split_options(r"/price\$5/") == (r"/price\$5/", "")
    assert split_options(r"path\$x$image") == (r"path\$x", "image")
    assert split_options("/ad[0-9]+$/") == ("/ad[0-9]+$/", "")
    assert split_options("/ad[0-9]+/$script") == ("/ad[0-9]+/", "script")


def test_malformed_network_lines_are_tallied_not_raised():
    res = parse("this has spaces in it\n*\n$script\n||ok.test^")
    assert res.failures == 3
    assert [r.pattern for r in res.network] == ["||ok.test^"]


@pytest.mark.parametrize("line", ["|", "||", "^", "|*", "*^", "||*^|", "@@||", "@@|", "@@*", "||$script"])
def test_anchor_only_patterns_match_everything_and_are_rejected(line):
    res = parse(line)
    assert res.failures == 1
    assert res.rules == []


def test_anchor_only_pattern_scoped_by_domain_becomes_wildcard():
    (rule,) = parse("@@||$domain=example.com").rules
    assert rule.pattern == "*"
    assert rule.domain_includes == ("example.com",)
    assert parse("/.*/$script").rules[0].pattern == "/.*/"


def test_stray_anchor_lines_do_not_reach_the_backend():
    text = "||ads.example.com^\n|\n||\n^\n|*\n@@||\n"
    fl = FilterList(id="l", display_name="l", source_uri="", category="ads", rules=parse(text).rules)
    backend = InMemoryRuleBackend()
    RuleSynchronizer(backend).reconcile(compile_rules([fl], [], {"ads"}).rules)
    assert len(backend) == 1
    assert backend.decide("https://news.example/article") is None
    assert backend.decide("https://ads.example.com/x.js") is Action.BLOCK


def test_hosts_format():
    text = "\n".join(
        [
            "# StevenBlack hosts",
            "127.0.0.1 localhost",
            "127.0.0.1 localhost.localdomain",
            "0.0.0.0 malware.test",
            "0.0.0.0 tracker.test  # inline comment",
            "0.0.0.0 a.test b.test",
            "0.0.0.0 nodot",
            "192.168.1.1 router.lan",
        ]
    )
    res = parse(text, ListFormat.HOSTS)
    assert [r.pattern for r in res.rules] == ["||malware.test^", "||tracker.test^", "||a.test^", "||b.test^"]
    assert res.failures == 2
    assert all(not r.is_exception for r in res.rules)


def test_format_accepts_strings_and_bytes():
    res = parse(b"0.0.0.0 malware.test\n", "hosts")
    assert len(res.rules) == 1


def test_parse_never_raises_on_garbage():
    garbage = "\x00\x01##\n@@\n|||\n$$$\n#@#\n" + "�" * 50
    res = parse(garbage)
    assert res.lines == 6
    assert res.failures >= 1
