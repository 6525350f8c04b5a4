"""
Tests for sharedmem.urlguard — SSRF validation of caller-supplied URLs.

DNS is never touched: every hostname test injects a resolver.
"""

import pytest

from sharedmem.errors import BlockedHost, DisallowedScheme, InvalidURL, SafetyRejection
from sharedmem.urlguard import check_addresses, is_private_address, validate_url


def fixed(*addrs):
    """Resolver returning the same address list for any host."""
    def resolve(host):
        return list(addrs)
    return resolve


def failing(host):
    raise OSError("Name or service not known")


# ---------------------------------------------------------------------------
# Address classification
# ---------------------------------------------------------------------------


class TestIsPrivateAddress:
    @pytest.mark.parametrize("addr", [
        "10.0.0.1", "10.255.255.255",
        "127.0.0.1", "127.1.2.3",
        "0.0.0.0", "0.1.2.3",
        "169.254.169.254",
        "172.16.0.1", "172.31.255.255",
        "192.168.1.1",
        "::1",
        "fc00::1", "fd12:3456::1",
        "fe80::1", "fe80::1%eth0",
        "::ffff:127.0.0.1", "::ffff:10.0.0.5",
    ])
    def test_private(self, addr):
        assert is_private_address(addr)

    @pytest.mark.parametrize("addr", [
        "8.8.8.8", "93.184.216.34",
        "172.15.255.255", "172.32.0.0",
        "192.169.0.1",
        "2606:4700::1111",
        "::ffff:8.8.8.8",
    ])
    def test_public(self, addr):
        assert not is_private_address(addr)

    def test_unparsable_is_unsafe(self):
        assert is_private_address("not-an-ip")
        assert is_private_address("")


class TestCheckAddresses:
    def test_all_public(self):
        check_addresses("example.com", ["93.184.216.34", "2606:2800::1"])

    def test_any_private_wins(self):
        with pytest.raises(BlockedHost, match="resolves to a private-network IP"):
            check_addresses("mixed.example", ["93.184.216.34", "10.0.0.7"])

    def test_empty_is_invalid(self):
        with pytest.raises(InvalidURL):
            check_addresses("nowhere.example", [])


# ---------------------------------------------------------------------------
# validate_url
# ---------------------------------------------------------------------------


class TestValidateUrl:
    def test_public_hostname_accepted(self):
        url = validate_url("https://example.com/page?q=1", resolver=fixed("93.184.216.34"))
        assert url == "https://example.com/page?q=1"

    def test_public_ip_literal_accepted_without_resolving(self):
        assert validate_url("http://93.184.216.34/", resolver=failing) == "http://93.184.216.34/"

    @pytest.mark.parametrize("url", ["", "   ", "not a url", "http://", "//example.com/x"])
    def test_invalid(self, url):
        with pytest.raises(InvalidURL, match="Invalid URL"):
            validate_url(url, resolver=fixed("93.184.216.34"))

    def test_non_string_is_invalid(self):
        with pytest.raises(InvalidURL):
            validate_url(None)

    @pytest.mark.parametrize("url", [
        "https://example.com/\x01",
        "https://example.com/a\x7fb",
        "https://exa\tmple.com/",
    ])
    def test_control_characters_are_invalid(self, url):
        with pytest.raises(InvalidURL, match="Invalid URL"):
            validate_url(url, resolver=fixed("93.184.216.34"))

    def test_bad_port_is_invalid(self):
        with pytest.raises(InvalidURL):
            validate_url("http://example.com:99999/", resolver=fixed("93.184.216.34"))

    @pytest.mark.parametrize("url", [
        "ftp://example.com/file",
        "file:///etc/passwd",
        "gopher://example.com/",
        "javascript://example.com/%0aalert(1)",
    ])
    def test_disallowed_scheme(self, url):
        with pytest.raises(DisallowedScheme, match="Only http/https URLs are allowed"):
            validate_url(url, resolver=fixed("93.184.216.34"))

    def test_scheme_is_case_insensitive(self):
        validate_url("HTTPS://example.com/", resolver=fixed("93.184.216.34"))

    @pytest.mark.parametrize("url", [
        "http://localhost/",
        "http://LOCALHOST:8080/admin",
        "http://api.localhost/",
        "http://localhost./",
    ])
    def test_localhost_blocked(self, url):
        with pytest.raises(BlockedHost, match="Refusing to fetch localhost"):
            validate_url(url, resolver=fixed("93.184.216.34"))

    @pytest.mark.parametrize("url", [
        "http://127.0.0.1/",
        "http://10.1.2.3:8080/",
        "http://169.254.169.254/latest/meta-data/",
        "http://192.168.0.1/",
        "http://172.20.0.1/",
        "http://0.0.0.0/",
        "http://[::1]/",
        "http://[fd00::1]/",
        "http://[fe80::1]/",
        "http://[::ffff:127.0.0.1]/",
    ])
    def test_private_ip_literal_blocked(self, url):
        with pytest.raises(BlockedHost, match="Refusing to fetch private-network IP"):
            validate_url(url, resolver=fixed("93.184.216.34"))

    def test_hostname_resolving_private_blocked(self):
        with pytest.raises(BlockedHost, match="resolves to a private-network IP"):
            validate_url("http://internal.example/", resolver=fixed("10.0.0.8"))

    def test_hostname_with_one_private_record_blocked(self):
        with pytest.raises(BlockedHost):
            validate_url(
                "http://rebind.example/",
                resolver=fixed("93.184.216.34", "127.0.0.1"),
            )

    def test_unresolvable_host_is_invalid(self):
        with pytest.raises(InvalidURL):
            validate_url("http://no-such-host.example/", resolver=failing)

    def test_resolver_receives_lowercased_host(self):
        seen = []

        def resolve(host):
            seen.append(host)
            return ["93.184.216.34"]

        validate_url("http://Example.COM/", resolver=resolve)
        assert seen == ["example.com"]

    def test_all_rejections_share_base(self):
        for url in ("ftp://x.example/", "http://localhost/", "nope"):
            with pytest.raises(SafetyRejection):
                validate_url(url, resolver=fixed("93.184.216.34"))
