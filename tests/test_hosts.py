"""Tests for deriving host:port from request URLs."""

import pytest

from squid_log_exporter.services.hosts import classify_url


class TestClassifyUrl:
    @pytest.mark.parametrize(
        "method,url,expected",
        [
            ("GET", "http://example.com/", ("example.com", "80")),
            ("GET", "https://example.com/path?q=1", ("example.com", "443")),
            ("GET", "http://Example.COM:8080/x", ("example.com", "8080")),
            ("CONNECT", "api.example.com:443", ("api.example.com", "443")),
            ("CONNECT", "api.example.com", ("api.example.com", "443")),
            ("CONNECT", "[2001:db8::1]:8443", ("2001:db8::1", "8443")),
            ("GET", "example.net/index.html", ("example.net", "80")),
            ("GET", "example.net:0443", ("example.net", "443")),
        ],
    )
    def test_routable(self, method: str, url: str, expected: tuple) -> None:
        assert classify_url(method, url) == expected

    @pytest.mark.parametrize(
        "url",
        [
            "",
            "-",
            "cache_object://localhost/info",
            "http://localhost/",
            "http://example.com:99999/",
            "example.com:http",
        ],
    )
    def test_unroutable(self, url: str) -> None:
        assert classify_url("GET", url) is None

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("ftp://ftp.example.com/pub/file.iso", ("ftp.example.com", "21")),
            ("ftp://ftp.example.com:2121/pub/", ("ftp.example.com", "2121")),
            ("HTTP://Example.COM/", ("example.com", "80")),
            ("HTTPS://Example.COM/login", ("example.com", "443")),
            ("gopher://gopher.example.org/", ("gopher.example.org", "80")),
        ],
    )
    def test_scheme_is_never_the_host(self, url: str, expected: tuple) -> None:
        assert classify_url("GET", url) == expected

    @pytest.mark.parametrize("url", ["CACHE_OBJECT://x/info", "Mgr://localhost/menu", "URN:isbn:123"])
    def test_internal_urls_match_case_insensitively(self, url: str) -> None:
        assert classify_url("GET", url) is None

    def test_https_ipv6_literal(self) -> None:
        assert classify_url("GET", "https://[2001:db8::2]/") == ("2001:db8::2", "443")
