"""
Host classification - derives host:port from a Squid request URL.
"""

import re
from typing import Optional, Tuple
from urllib.parse import urlsplit

# Squid-internal pseudo URLs; never real upstream traffic
INTERNAL_PREFIXES = ("cache_object://", "mgr://", "internal://", "urn:")
IGNORED_HOSTS = ("", "-", "localhost")

DEFAULT_PORTS = {"http": "80", "https": "443", "ftp": "21"}
FALLBACK_PORT = "80"

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


def _normalize_port(port: str) -> Optional[str]:
    if not port.isdigit():
        return None
    value = int(port)
    if value > 65535:
        return None
    return str(value)


def _split_host_port(target: str, default_port: str) -> Tuple[str, str]:
    """Split "host[:port][/path]", keeping bracketed IPv6 literals intact"""
    target = target.split("/", 1)[0]
    if target.startswith("["):
        end = target.find("]")
        if end == -1:
            return "", ""
        host = target[1:end]
        rest = target[end + 1:]
        port = rest[1:] if rest.startswith(":") else ""
        return host, port or default_port

    host, sep, port = target.partition(":")
    if sep and ":" in port:
        # bare IPv6 without brackets; no port can be told apart
        return target, default_port
    return host, port or default_port


def classify_url(method: str, raw_url: str) -> Optional[Tuple[str, str]]:
    """
    Return (host, port) for a request, or None when it has no routable host.

    CONNECT targets are "host[:port]" (default 443). Absolute URLs of any
    scheme are split with urlsplit and default to the scheme's well-known
    port (80 when it has none). Anything else is treated as "host[:port]"
    with the http default. Schemes match case-insensitively.
    """
    if not raw_url or raw_url == "-":
        return None
    if raw_url.lower().startswith(INTERNAL_PREFIXES):
        return None

    if method == "CONNECT":
        host, port = _split_host_port(raw_url, "443")
    elif _SCHEME_RE.match(raw_url):
        try:
            parts = urlsplit(raw_url)
            port_num = parts.port
        except ValueError:
            return None
        host = parts.hostname or ""
        if port_num is not None:
            port = str(port_num)
        else:
            port = DEFAULT_PORTS.get(parts.scheme, FALLBACK_PORT)
    else:
        host, port = _split_host_port(raw_url, FALLBACK_PORT)

    host = host.strip().lower()
    if host in IGNORED_HOSTS:
        return None

    port = _normalize_port(port)
    if port is None:
        return None
    return host, port
