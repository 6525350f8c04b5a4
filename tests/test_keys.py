"""
Tests for sharedmem.keys — default storage key derivation.
"""

import hashlib
import re

from sharedmem.keys import derive_key, text_key, url_hash


class TestUrlHash:
    def test_md5_prefix(self):
        url = "https://example.com/page"
        assert url_hash(url) == hashlib.md5(url.encode()).hexdigest()[:8]

    def test_length(self):
        assert len(url_hash("https://example.com/")) == 8
        assert len(url_hash("https://example.com/", length=12)) == 12


class TestDeriveKey:
    def test_domain_dots_to_underscores(self):
        url = "https://docs.example.com/guide/intro"
        assert derive_key(url) == f"docs_example_com_{url_hash(url)}"

    def test_http_scheme(self):
        url = "http://example.org"
        assert derive_key(url).startswith("example_org_")

    def test_port_kept(self):
        url = "http://example.com:8080/x"
        assert derive_key(url).startswith("example_com:8080_")

    def test_stable(self):
        assert derive_key("https://a.example/x") == derive_key("https://a.example/x")

    def test_distinct_paths_distinct_keys(self):
        assert derive_key("https://a.example/x") != derive_key("https://a.example/y")


class TestTextKey:
    def test_explicit_clock(self):
        assert text_key(1700000000123) == "text_1700000000123"

    def test_current_clock(self):
        assert re.fullmatch(r"text_\d{13}", text_key())
