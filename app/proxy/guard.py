"""SSRF guard — refuses targets on private, loopback, link-local or metadata networks.

Called before every outbound fetch AND again for every redirect hop, before the
hop is requested, so a public page cannot 302 the proxy into the LAN.

Two entry points:

  check_url(url)             sync, no I/O. Scheme, URL shape, hostname deny-lists,
                             IP literal ranges (including integer / hex / octal
                             IPv4 spellings and IPv6 embeddings of IPv4).
  resolve_target(url)        check_url() + DNS resolution. Every resolved address
                             must pass the same range checks; the validated
                             addresses are returned so the fetcher can pin the
                             connection to them (closes the DNS-rebinding gap
                             between "check" and "connect").

Anything ambiguous — unparsable ports, numeric hosts that don't decode, hosts
with characters no resolver should see — is refused. Fail closed.
"""

from __future__ import annotations

import asyncio
import ipaddress
import re
import socket
from typing import NamedTuple, Optional, Union
from urllib.parse import urlsplit

from app.config import SecurityConfig
from app.constants import DNS_RESOLVE_TIMEOUT_S
from app.models.errors import ForbiddenError, NetworkError
from app.models.proxy import ResolvedTarget
IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

# ─── Deny-lists ───────────────────────────────────────────────────────────────

ALLOWED_SCHEMES: frozenset[str] = frozenset({"http", "https"})

BLOCKED_IPV4_NETWORKS: tuple[ipaddress.IPv4Network, ...] = tuple(
    ipaddress.IPv4Network(net)
    for net in (
        "0.0.0.0/8",        # "this network"
        "10.0.0.0/8",       # RFC 1918
        "100.64.0.0/10",    # carrier-grade NAT
        "127.0.0.0/8",      # loopback
        "169.254.0.0/16",   # link-local / cloud metadata
        "172.16.0.0/12",    # RFC 1918
        "192.0.0.0/24",     # IETF protocol assignments
        "192.168.0.0/16",   # RFC 1918
        "198.18.0.0/15",    # benchmarking
    )
)

BLOCKED_IPV6_NETWORKS: tuple[ipaddress.IPv6Network, ...] = tuple(
    ipaddress.IPv6Network(net)
    for net in (
        "::/96",            # unspecified, loopback, deprecated IPv4-compatible
        "fc00::/7",         # unique-local
        "fe80::/10",        # link-local
        "fec0::/10",        # deprecated site-local
        "ff00::/8",         # multicast
    )
)

_NAT64_NETWORK = ipaddress.IPv6Network("64:ff9b::/96")

BLOCKED_HOSTNAMES: frozenset[str] = frozenset(
    {
        "localhost",
        "localhost.localdomain",
        "ip6-localhost",
        "ip6-loopback",
        "metadata",
        "metadata.google.internal",
        "instance-data",
    }
)

BLOCKED_HOSTNAME_SUFFIXES: tuple[str, ...] = (".localhost", ".local", ".internal")

# Wildcard DNS services that resolve attacker-chosen labels (e.g.
# 127.0.0.1.nip.io, 7f000001.rbndr.us) to arbitrary addresses.
REBINDING_DOMAINS: frozenset[str] = frozenset(
    {
        "nip.io",
        "sslip.io",
        "xip.io",
        "nip.direct",
        "traefik.me",
        "localtest.me",
        "lvh.me",
        "vcap.me",
        "fuf.me",
        "lacolhost.com",
        "localhost.run",
        "1u.ms",
        "rbndr.us",
        "backname.io",
    }
)

# A last label that looks numeric makes the whole host an IPv4 spelling.
_NUMERIC_LABEL = re.compile(r"^(?:0x[0-9a-f]*|[0-9]+)$", re.IGNORECASE)
_HOSTNAME_CHARS = re.compile(r"^[a-z0-9_.-]+$")


class _CheckedUrl(NamedTuple):
    scheme: str
    hostname: str
    port: int
    literal: Optional[IPAddress]


# ─── Address checks ───────────────────────────────────────────────────────────


def is_blocked_address(addr: IPAddress) -> bool:
    """True when ``addr`` lies in a private, loopback, link-local or reserved range.

    IPv6 addresses that embed an IPv4 address (IPv4-mapped, 6to4, NAT64) are
    judged by the embedded IPv4 address.
    """
    if isinstance(addr, ipaddress.IPv6Address):
        embedded = addr.ipv4_mapped or addr.sixtofour
        if embedded is None and addr in _NAT64_NETWORK:
            embedded = ipaddress.IPv4Address(int(addr) & 0xFFFFFFFF)
        if embedded is not None:
            return is_blocked_address(embedded)
        if any(addr in net for net in BLOCKED_IPV6_NETWORKS):
            return True
        return addr.is_multicast or addr.is_reserved or addr.is_unspecified

    if any(addr in net for net in BLOCKED_IPV4_NETWORKS):
        return True
    return addr.is_multicast or addr.is_reserved or addr.is_unspecified


def parse_legacy_ipv4(host: str) -> Optional[ipaddress.IPv4Address]:
    """Decode the inet_aton spellings of an IPv4 address.

    Handles 1–4 dot-separated parts, each decimal, octal (leading ``0``) or hex
    (``0x``); the last part fills the remaining bytes. ``2130706433``,
    ``0x7f000001``, ``0177.0.0.1`` and ``127.1`` all decode to 127.0.0.1.

    Returns None when ``host`` is not a decodable IPv4 spelling.
    """
    parts = host.split(".")
    if not 1 <= len(parts) <= 4:
        return None

    numbers: list[int] = []
    for part in parts:
        if not part:
            return None
        if part[:2].lower() == "0x":
            digits, base = part[2:] or "0", 16
        elif len(part) > 1 and part[0] == "0":
            digits, base = part[1:], 8
        else:
            digits, base = part, 10
        try:
            numbers.append(int(digits, base))
        except ValueError:
            return None

    *head, last = numbers
    if any(n > 255 for n in head):
        return None
    if last >= 256 ** (4 - len(head)):
        return None

    value = last
    for index, number in enumerate(head):
        value += number << (8 * (3 - index))
    return ipaddress.IPv4Address(value)


def _is_rebinding_domain(hostname: str, extra: tuple[str, ...] = ()) -> bool:
    for domain in (*REBINDING_DOMAINS, *extra):
        if hostname == domain or hostname.endswith("." + domain):
            return True
    return False


def _is_blocked_hostname(hostname: str, extra: tuple[str, ...] = ()) -> bool:
    if hostname in BLOCKED_HOSTNAMES or hostname.endswith(BLOCKED_HOSTNAME_SUFFIXES):
        return True
    for blocked in extra:
        if hostname == blocked or hostname.endswith("." + blocked):
            return True
    return False


# ─── URL check (no I/O) ───────────────────────────────────────────────────────


def check_url(url: str, security: Optional[SecurityConfig] = None) -> _CheckedUrl:
    """Validate ``url`` without touching the network.

    Returns:
        The scheme, normalised ASCII hostname, effective port and — for IP
        literals — the parsed address.

    Raises:
        ForbiddenError: On any failed check.
    """
    security = security or SecurityConfig()

    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as exc:
        raise ForbiddenError(details=f"Malformed URL: {exc}") from exc

    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        raise ForbiddenError(details=f"Scheme not allowed: {scheme or '(none)'}")

    if parts.username is not None or parts.password is not None:
        raise ForbiddenError(details="URLs with embedded credentials are not allowed")

    raw_host = parts.hostname
    if not raw_host:
        raise ForbiddenError(details="URL has no hostname")

    effective_port = port if port is not None else (443 if scheme == "https" else 80)

    # ── IPv6 literal ([::1], [fe80::1%eth0]) ──────────────────────────────────
    if ":" in raw_host:
        try:
            address: IPAddress = ipaddress.IPv6Address(raw_host)
        except ValueError as exc:
            raise ForbiddenError(details=f"Malformed IPv6 host: {raw_host}") from exc
        if is_blocked_address(address):
            raise ForbiddenError(details="Cannot access private or localhost addresses")
        return _CheckedUrl(scheme, raw_host, effective_port, address)

    # ── Hostname normalisation ────────────────────────────────────────────────
    try:
        hostname = raw_host.rstrip(".").encode("idna").decode("ascii").lower()
    except UnicodeError as exc:
        raise ForbiddenError(details=f"Malformed hostname: {raw_host}") from exc

    if not hostname or not _HOSTNAME_CHARS.match(hostname):
        raise ForbiddenError(details=f"Malformed hostname: {raw_host}")

    # ── IPv4 in any spelling ──────────────────────────────────────────────────
    if _NUMERIC_LABEL.match(hostname.rsplit(".", 1)[-1]):
        address = parse_legacy_ipv4(hostname)
        if address is None:
            raise ForbiddenError(details=f"Ambiguous numeric host: {raw_host}")
        if is_blocked_address(address):
            raise ForbiddenError(details="Cannot access private or localhost addresses")
        return _CheckedUrl(scheme, str(address), effective_port, address)

    # ── Named hosts ───────────────────────────────────────────────────────────
    if _is_blocked_hostname(hostname, tuple(security.extra_blocked_hosts)):
        raise ForbiddenError(details="Cannot access private or localhost addresses")

    if _is_rebinding_domain(hostname, tuple(security.extra_rebinding_domains)):
        raise ForbiddenError(details=f"DNS rebinding helper domain not allowed: {hostname}")

    return _CheckedUrl(scheme, hostname, effective_port, None)


def is_safe(url: str, security: Optional[SecurityConfig] = None) -> bool:
    """Boolean form of check_url() — True when ``url`` may be fetched."""
    try:
        check_url(url, security)
    except ForbiddenError:
        return False
    return True


# ─── DNS resolution ───────────────────────────────────────────────────────────


async def resolve_host(hostname: str, port: int) -> list[str]:
    """Resolve ``hostname`` to a de-duplicated list of IP address strings.

    Raises:
        NetworkError: On resolver failure or timeout (this is a network
                      failure, not a policy refusal).
    """
    loop = asyncio.get_running_loop()
    try:
        infos = await asyncio.wait_for(
            loop.getaddrinfo(hostname, port, type=socket.SOCK_STREAM),
            timeout=DNS_RESOLVE_TIMEOUT_S,
        )
    except asyncio.TimeoutError as exc:
        raise NetworkError(details=f"DNS resolution timed out for {hostname}") from exc
    except OSError as exc:
        raise NetworkError(details=f"DNS resolution failed for {hostname}: {exc}") from exc

    seen: set[str] = set()
    addresses: list[str] = []
    for _family, _type, _proto, _canonname, sockaddr in infos:
        ip = str(sockaddr[0])
        if ip not in seen:
            seen.add(ip)
            addresses.append(ip)
    return addresses


async def resolve_target(url: str, security: Optional[SecurityConfig] = None) -> ResolvedTarget:
    """Validate ``url`` and (when enabled) every address its hostname resolves to.

    Raises:
        ForbiddenError: URL or any resolved address is blocked.
        NetworkError:   DNS resolution failed or returned nothing.
    """
    security = security or SecurityConfig()
    checked = check_url(url, security)

    if checked.literal is not None:
        addresses: tuple[str, ...] = (str(checked.literal),)
    elif security.resolve_dns:
        resolved = await resolve_host(checked.hostname, checked.port)
        if not resolved:
            raise NetworkError(details=f"DNS resolution returned no addresses for {checked.hostname}")
        for ip in resolved:
            try:
                address = ipaddress.ip_address(ip)
            except ValueError as exc:
                raise ForbiddenError(details=f"Unparsable resolved address: {ip}") from exc
            if is_blocked_address(address):
                raise ForbiddenError(
                    details=f"{checked.hostname} resolves to a private address ({ip})"
                )
        addresses = tuple(resolved)
    else:
        addresses = ()

    return ResolvedTarget(
        absolute_url=url,
        scheme=checked.scheme,
        hostname=checked.hostname,
        port=checked.port,
        addresses=addresses,
    )
