"""Address and MAC validation helpers."""

import ipaddress
import re
from typing import Optional

_IPV4_RE = re.compile(
    r"^(?:(?:25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)\.){3}"
    r"(?:25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)$"
)
_MAC_RE = re.compile(r"^(?:[0-9A-Fa-f]{2}[:-]){5}[0-9A-Fa-f]{2}$")


def validate_ipv4(value: Optional[str]) -> bool:
    """Return True for a well-formed dotted-quad IPv4 string.

    Leading zeros in an octet are rejected ("10.0.0.05").
    """
    if not value:
        return False
    return bool(_IPV4_RE.fullmatch(value))


def ip_to_int(value: str) -> int:
    """Convert an IPv4 string to an integer for sorting."""
    return int(ipaddress.IPv4Address(value))


def validate_mac_address(value: Optional[str]) -> bool:
    """Return True for a MAC written as six hex pairs separated by ':' or '-'."""
    if not value:
        return False
    return bool(_MAC_RE.fullmatch(value))


def normalize_mac_address(value: str) -> str:
    """Upper-case a MAC and use ':' separators."""
    return value.replace("-", ":").upper()


def mesh_strength_from_latency(latency_ms: Optional[float]) -> int:
    """Derive a 0-100 signal score from round-trip latency.

    Every 10ms of latency costs one point; missing latency counts as 0ms.
    """
    if latency_ms is None:
        return 100
    return max(0, min(100, int(100 - latency_ms / 10)))
