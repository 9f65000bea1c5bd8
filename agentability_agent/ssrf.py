"""
Safe outbound fetch primitive.

Every URL the evaluator touches is caller-controlled, so each hop is checked
before any bytes leave the process: scheme allow-list, hostname deny-list,
DNS resolution with blocked-range filtering, and a manual redirect loop that
re-validates the next host. Bodies are streamed against a hard byte cap.
"""
from __future__ import annotations

import asyncio
import hashlib
import ipaddress
import logging
import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable

import httpx

from .models import FetchResult, RedirectHop

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 15000
DEFAULT_CONNECT_TIMEOUT_MS = 5000
DEFAULT_MAX_BYTES = 2 * 1024 * 1024
DEFAULT_MAX_REDIRECTS = 5

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})

BLOCKED_HOSTNAMES = frozenset({"localhost", "localhost.localdomain", "local"})

_BLOCKED_V4: tuple[tuple[str, ipaddress.IPv4Network], ...] = tuple(
    (name, ipaddress.IPv4Network(cidr))
    for name, cidr in (
        ("unspecified", "0.0.0.0/8"),
        ("broadcast", "255.255.255.255/32"),
        ("multicast", "224.0.0.0/4"),
        ("link_local", "169.254.0.0/16"),
        ("loopback", "127.0.0.0/8"),
        ("carrier_grade_nat", "100.64.0.0/10"),
        ("private", "10.0.0.0/8"),
        ("private", "172.16.0.0/12"),
        ("private", "192.168.0.0/16"),
        ("reserved", "192.0.0.0/24"),
        ("reserved", "192.0.2.0/24"),
        ("reserved", "192.88.99.0/24"),
        ("reserved", "198.18.0.0/15"),
        ("reserved", "198.51.100.0/24"),
        ("reserved", "203.0.113.0/24"),
        ("reserved", "240.0.0.0/4"),
    )
)

_BLOCKED_V6: tuple[tuple[str, ipaddress.IPv6Network], ...] = tuple(
    (name, ipaddress.IPv6Network(cidr))
    for name, cidr in (
        ("unspecified", "::/128"),
        ("loopback", "::1/128"),
        ("link_local", "fe80::/10"),
        ("multicast", "ff00::/8"),
        ("unique_local", "fc00::/7"),
        ("site_local", "fec0::/10"),
        ("discard", "100::/64"),
        ("reserved", "2001::/23"),
        ("reserved", "2001:db8::/32"),
    )
)

_NAT64 = ipaddress.IPv6Network("64:ff9b::/96")


class FetchError(Exception):
    """Base class for every failure SafeFetcher can raise."""

    code = "transport_error"

    def __init__(self, message: str, *, url: str | None = None):
        super().__init__(message)
        self.message = message
        self.url = url

    def describe(self) -> str:
        return f"{self.code}: {self.message}"


class InvalidSchemeError(FetchError):
    code = "invalid_scheme"


class BlockedHostError(FetchError):
    code = "blocked_host"


class BlockedIpError(FetchError):
    code = "blocked_ip"


class DnsFailedError(FetchError):
    code = "dns_failed"


class TooManyRedirectsError(FetchError):
    code = "too_many_redirects"


class BodyTooLargeError(FetchError):
    code = "body_too_large"


class TransportError(FetchError):
    code = "transport_error"


FETCH_ERROR_CODES = tuple(
    cls.code
    for cls in (
        InvalidSchemeError,
        BlockedHostError,
        BlockedIpError,
        DnsFailedError,
        TooManyRedirectsError,
        BodyTooLargeError,
        TransportError,
    )
)


@dataclass(frozen=True)
class FetchLimits:
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS
    max_bytes: int = DEFAULT_MAX_BYTES
    max_redirects: int = DEFAULT_MAX_REDIRECTS


Resolver = Callable[[str], Awaitable[list[str]]]


async def resolve_host(hostname: str) -> list[str]:
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError) as e:
        raise DnsFailedError(f"DNS resolution failed for {hostname}: {e}") from None
    addresses: list[str] = []
    for info in infos:
        addr = str(info[4][0]).split("%", 1)[0]
        if addr not in addresses:
            addresses.append(addr)
    return addresses


def _embedded_ipv4(addr: ipaddress.IPv6Address) -> ipaddress.IPv4Address | None:
    if addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    if addr.sixtofour is not None:
        return addr.sixtofour
    if addr in _NAT64:
        return ipaddress.IPv4Address(int(addr) & 0xFFFFFFFF)
    # deprecated IPv4-compatible form ::a.b.c.d
    if int(addr) >> 32 == 0 and int(addr) > 1:
        return ipaddress.IPv4Address(int(addr))
    return None


def blocked_range(ip: str) -> str | None:
    """Name of the blocked range `ip` falls in, or None when it is public."""
    try:
        addr = ipaddress.ip_address(ip.strip("[]").split("%", 1)[0])
    except ValueError:
        return None

    if isinstance(addr, ipaddress.IPv6Address):
        for name, net in _BLOCKED_V6:
            if addr in net:
                return name
        embedded = _embedded_ipv4(addr)
        if embedded is None:
            # ::/8 counts as reserved, so this runs only after mapped forms are unwrapped
            return "reserved" if addr.is_reserved or addr.is_site_local else None
        addr = embedded

    for name, net in _BLOCKED_V4:
        if addr in net:
            return name
    return None


def is_blocked_hostname(hostname: str) -> bool:
    normalized = hostname.strip().lower().rstrip(".")
    return normalized in BLOCKED_HOSTNAMES or normalized.endswith(".local")


def _is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host.strip("[]"))
        return True
    except ValueError:
        return False


def _parse_url(url: str) -> httpx.URL:
    try:
        target = httpx.URL(url)
    except (httpx.InvalidURL, TypeError, ValueError) as e:
        raise InvalidSchemeError(f"Malformed URL: {e}", url=url) from None
    if target.scheme not in ("http", "https"):
        raise InvalidSchemeError("Only http/https URLs are allowed", url=url)
    return target


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SafeFetcher:
    """One bounded HTTP exchange per call, with every hop vetted.

    `resolver` and `transport` exist so tests can run without DNS or sockets;
    production callers leave them at their defaults.
    """

    def __init__(
        self,
        *,
        limits: FetchLimits | None = None,
        user_agent: str | None = None,
        resolver: Resolver | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.limits = limits or FetchLimits()
        self.user_agent = user_agent
        self._resolver = resolver or resolve_host
        self._transport = transport

    async def assert_public_host(self, hostname: str, *, url: str | None = None) -> list[str]:
        """Raise unless `hostname` and every address it resolves to are public."""
        host = (hostname or "").strip().lower().rstrip(".")
        if not host:
            raise BlockedHostError("URL has no host", url=url)
        if is_blocked_hostname(host):
            raise BlockedHostError(f"Blocked hostname {host}", url=url)

        if _is_ip_literal(host):
            addresses = [host.strip("[]")]
        else:
            try:
                addresses = await self._resolver(host)
            except FetchError:
                raise
            except OSError as e:
                raise DnsFailedError(f"DNS resolution failed for {host}: {e}", url=url) from None
            if not addresses:
                raise DnsFailedError(f"DNS resolution returned no records for {host}", url=url)

        for addr in addresses:
            range_name = blocked_range(addr)
            if range_name is not None:
                raise BlockedIpError(f"{host} resolves to {addr} ({range_name})", url=url)
        return addresses

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        body: str | bytes | None = None,
        limits: FetchLimits | None = None,
    ) -> FetchResult:
        limits = limits or self.limits
        try:
            return await asyncio.wait_for(
                self._fetch(url, method.upper(), headers or {}, body, limits),
                timeout=limits.timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            err = TransportError(f"Request exceeded total deadline of {limits.timeout_ms} ms", url=url)
            logger.info("fetch failed code=%s url=%s: %s", err.code, url, err.message)
            raise err from None
        except FetchError as err:
            logger.info("fetch failed code=%s url=%s: %s", err.code, err.url or url, err.message)
            raise

    async def _fetch(
        self,
        url: str,
        method: str,
        headers: dict[str, str],
        body: str | bytes | None,
        limits: FetchLimits,
    ) -> FetchResult:
        request_headers = {k.lower(): v for k, v in headers.items()}
        if self.user_agent and "user-agent" not in request_headers:
            request_headers["user-agent"] = self.user_agent

        current = url
        current_method = method
        current_body = body
        remaining = limits.max_redirects
        chain: list[RedirectHop] = []

        timeout = httpx.Timeout(limits.timeout_ms / 1000, connect=limits.connect_timeout_ms / 1000)
        async with httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=False,
            transport=self._transport,
            trust_env=False,
        ) as client:
            while True:
                target = _parse_url(current)
                await self.assert_public_host(target.host, url=current)

                try:
                    request = client.build_request(
                        current_method, target, headers=request_headers, content=current_body
                    )
                    res = await client.send(request, stream=True)
                except httpx.TimeoutException as e:
                    raise TransportError(f"Timed out: {type(e).__name__}", url=current) from None
                except httpx.HTTPError as e:
                    raise TransportError(f"{type(e).__name__}: {e}", url=current) from None

                try:
                    location = res.headers.get("location")
                    if res.status_code in REDIRECT_STATUSES and location:
                        if remaining <= 0:
                            raise TooManyRedirectsError(
                                f"More than {limits.max_redirects} redirects", url=current
                            )
                        try:
                            next_url = str(target.join(location))
                        except (httpx.InvalidURL, ValueError) as e:
                            raise InvalidSchemeError(f"Malformed redirect location: {e}", url=current) from None
                        chain.append(RedirectHop(url=current, status=res.status_code))
                        if res.status_code == 303 or (res.status_code in (301, 302) and current_method == "POST"):
                            current_method = "GET"
                            current_body = None
                        remaining -= 1
                        current = next_url
                        continue

                    data = await self._read_body(res, current_method, limits.max_bytes, current)
                finally:
                    await res.aclose()

                response_headers = {k.lower(): v for k, v in res.headers.items()}
                content_length = _declared_length(response_headers.get("content-length"))
                if content_length is None and data is not None:
                    content_length = len(data)

                return FetchResult(
                    url=current,
                    requested_url=url,
                    method=current_method,
                    status=res.status_code,
                    headers=response_headers,
                    content_type=response_headers.get("content-type"),
                    content_length=content_length,
                    body=data.decode("utf-8", errors="replace") if data is not None else None,
                    sha256=hashlib.sha256(data).hexdigest() if data is not None else None,
                    fetched_at=_now_iso(),
                    redirect_chain=chain,
                )

    async def _read_body(
        self, res: httpx.Response, method: str, max_bytes: int, url: str
    ) -> bytes | None:
        if method == "HEAD" or res.status_code in (204, 304):
            return None

        declared = _declared_length(res.headers.get("content-length"))
        if declared is not None and declared > max_bytes and not res.headers.get("content-encoding"):
            raise BodyTooLargeError(f"Declared body of {declared} bytes exceeds {max_bytes}", url=url)

        buf = bytearray()
        try:
            async for chunk in res.aiter_bytes():
                if len(buf) + len(chunk) > max_bytes:
                    raise BodyTooLargeError(f"Body exceeds {max_bytes} bytes", url=url)
                buf.extend(chunk)
        except httpx.TimeoutException as e:
            raise TransportError(f"Timed out reading body: {type(e).__name__}", url=url) from None
        except httpx.HTTPError as e:
            raise TransportError(f"{type(e).__name__}: {e}", url=url) from None
        return bytes(buf)


def _declared_length(value: str | None) -> int | None:
    if not value or not value.strip().isdigit():
        return None
    return int(value.strip())
