"""
admission/client.py -- Derive the client key that admission budgets count against.

The key is the best available client address:

  1. If the transport peer is a trusted proxy, walk X-Forwarded-For from the
     right and take the first hop that is not itself a trusted proxy. Hops to
     the left of that one were supplied by the client and can be forged, so
     they are never used.
  2. If the trusted peer sent no X-Forwarded-For, use X-Real-IP.
  3. Otherwise (untrusted peer, or unusable headers) use the peer address.

Forwarding headers from an untrusted peer are ignored entirely; otherwise
any client could pick a fresh key per request and dodge its budget.
"""

from __future__ import annotations

import ipaddress
from collections.abc import Iterable, Mapping

UNKNOWN_CLIENT = "unknown"


class TrustedProxies:
    """Set of proxy addresses / networks whose forwarding headers are believed."""

    def __init__(self, entries: Iterable[str] = ()) -> None:
        self._networks = [ipaddress.ip_network(entry.strip(), strict=False) for entry in entries if entry.strip()]

    def __contains__(self, address: object) -> bool:
        ip = _parse_ip(address) if isinstance(address, str) else None
        if ip is None:
            return False
        return any(ip in network for network in self._networks)


def resolve_client_key(peer: str | None, headers: Mapping[str, str], trusted: TrustedProxies) -> str:
    """Return the address to count requests against."""
    fallback = peer or UNKNOWN_CLIENT
    if peer is None or peer not in trusted:
        return fallback

    forwarded = headers.get("x-forwarded-for", "")
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    if hops:
        for hop in reversed(hops):
            if hop not in trusted:
                return hop if _parse_ip(hop) is not None else fallback
        # Every hop is one of ours: the leftmost is the originating proxy.
        return hops[0]

    real_ip = headers.get("x-real-ip", "").strip()
    if real_ip and _parse_ip(real_ip) is not None:
        return real_ip
    return fallback


def _parse_ip(value: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    try:
        return ipaddress.ip_address(value)
    except ValueError:
        return None
