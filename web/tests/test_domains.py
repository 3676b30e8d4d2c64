import unittest

from filterforge.domains import (
    applies,
    domain_matches,
    domain_suffixes,
    is_third_party,
    looks_like_host,
    split_domain_list,
)


class TestDomainMatching(unittest.TestCase):

    def test_dot_boundary_matching(self):
        self.assertTrue(domain_matches("example.com", "example.com"))
        self.assertTrue(domain_matches("sub.example.com", "example.com"))
        self.assertTrue(domain_matches("A.B.Example.COM.", "example.com"))
        self.assertFalse(domain_matches("notexample.com", "example.com"))
        self.assertFalse(domain_matches("example.com", "sub.example.com"))
        self.assertFalse(domain_matches("example.com.evil.net", "example.com"))
        self.assertFalse(domain_matches("", "example.com"))

    def test_no_includes_no_excludes_is_global(self):
        self.assertTrue(applies([], [], "example.com"))
        self.assertTrue(applies([], [], "anything.org"))

    def test_includes_restrict(self):
        self.assertTrue(applies(["example.com"], [], "example.com"))
        self.assertTrue(applies(["example.com"], [], "sub.example.com"))
        self.assertFalse(applies(["example.com"], [], "notexample.com"))
        self.assertFalse(applies(["example.com"], [], "other.com"))

    def test_excludes_only_is_global_with_carve_outs(self):
        self.assertFalse(applies([], ["example.com"], "example.com"))
        self.assertFalse(applies([], ["example.com"], "sub.example.com"))
        self.assertTrue(applies([], ["example.com"], "other.com"))
        self.assertTrue(applies([], ["example.com"], "notexample.com"))

    def test_exclude_wins_over_include(self):
        inc = ["example.com"]
        exc = ["shop.example.com"]
        self.assertTrue(applies(inc, exc, "example.com"))
        self.assertTrue(applies(inc, exc, "www.example.com"))
        self.assertFalse(applies(inc, exc, "shop.example.com"))
        self.assertFalse(applies(inc, exc, "cart.shop.example.com"))
        self.assertFalse(applies(inc, exc, "other.com"))
        # Same domain on both sides: the exclusion decides.
        self.assertFalse(applies(["example.com"], ["example.com"], "example.com"))

    def test_split_domain_list(self):
        inc, exc = split_domain_list(["example.com", "~shop.example.com", "EXAMPLE.com", "", "~a.com", "a.com"])
        self.assertEqual(inc, ("example.com",))
        self.assertEqual(exc, ("shop.example.com", "a.com"))

    def test_suffixes(self):
        self.assertEqual(domain_suffixes("a.b.example.com"), ["a.b.example.com", "b.example.com", "example.com", "com"])
        self.assertEqual(domain_suffixes(""), [])

    def test_host_shapes(self):
        self.assertTrue(looks_like_host("ads.example.com"))
        self.assertTrue(looks_like_host("xn--bcher-kva.example"))
        self.assertFalse(looks_like_host("bad host"))
        self.assertFalse(looks_like_host("a..b"))
        self.assertFalse(looks_like_host(""))

    def test_third_party(self):
        self.assertFalse(is_third_party("cdn.example.com", "www.example.com"))
        self.assertTrue(is_third_party("tracker.net", "example.com"))
        self.assertFalse(is_third_party("tracker.net", ""))


if __name__ == '__main__':
    unittest.main()
