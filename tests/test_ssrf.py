import asyncio
import hashlib

import httpx
import pytest

from agentability_agent.ssrf import (
    FETCH_ERROR_CODES,
    BlockedHostError,
    BlockedIpError,
    BodyTooLargeError,
    DnsFailedError,
    FetchError,
    InvalidSchemeError,
    TooManyRedirectsError,
    TransportError,
    blocked_range,
    is_blocked_hostname,
)

from conftest import Site, make_fetcher, stub_resolver, text_route


@pytest.mark.parametrize(
    "ip,expected",
    [
        ("10.1.2.3", "private"),
        ("172.16.0.1", "private"),
        ("192.168.1.1", "private"),
        ("127.0.0.1", "loopback"),
        ("169.254.169.254", "link_local"),
        ("100.64.0.1", "carrier_grade_nat"),
        ("0.0.0.0", "unspecified"),
        ("255.255.255.255", "broadcast"),
        ("224.0.0.1", "multicast"),
        ("240.0.0.1", "reserved"),
        ("198.18.0.1", "reserved"),
        ("::1", "loopback"),
        ("::", "unspecified"),
        ("fe80::1", "link_local"),
        ("fd12:3456::1", "unique_local"),
        ("ff02::1", "multicast"),
        ("::ffff:10.0.0.1", "private"),
        ("::ffff:127.0.0.1", "loopback"),
        ("64:ff9b::a00:1", "private"),
        ("2002:a00:1::", "private"),
        ("::10.0.0.1", "private"),
        ("100::1", "discard"),
        ("2001::1", "reserved"),
        ("2001:1ff::1", "reserved"),
        ("fec0::1", "site_local"),
        ("4000::1", "reserved"),
    ],
)
def test_blocked_ranges(ip, expected):
    assert blocked_range(ip) == expected


@pytest.mark.parametrize(
    "ip", ["93.184.216.34", "8.8.8.8", "2606:4700::1111", "::ffff:8.8.8.8", "2001:4860:4860::8888", "2002:808:808::"]
)
def test_public_addresses_are_not_blocked(ip):
    assert blocked_range(ip) is None


@pytest.mark.parametrize("host", ["localhost", "LOCALHOST.", "localhost.localdomain", "local", "printer.local"])
def test_blocked_hostnames(host):
    assert is_blocked_hostname(host)


def test_error_codes_are_distinct():
    assert len(set(FETCH_ERROR_CODES)) == len(FETCH_ERROR_CODES) == 7


@pytest.mark.asyncio
async def test_fetch_success_records_hash_and_headers():
    site = Site({"/hello": text_route("hello world")})
    result = await make_fetcher(site).fetch("https://example.com/hello")

    assert result.status == 200
    assert result.body == "hello world"
    assert result.sha256 == hashlib.sha256(b"hello world").hexdigest()
    assert result.content_type.startswith("text/plain")
    assert all(k == k.lower() for k in result.headers)
    assert result.redirect_chain == []
    assert site.requests[0].headers["user-agent"] == "agentability-tests"


@pytest.mark.asyncio
@pytest.mark.parametrize("url", ["ftp://example.com/", "file:///etc/passwd", "not a url"])
async def test_rejects_non_http_schemes(url):
    with pytest.raises(InvalidSchemeError) as exc:
        await make_fetcher(Site()).fetch(url)
    assert exc.value.code == "invalid_scheme"


@pytest.mark.asyncio
@pytest.mark.parametrize("url", ["http://localhost/", "http://printer.local/x", "http://LOCALHOST./"])
async def test_rejects_blocked_hostnames(url):
    site = Site()
    with pytest.raises(BlockedHostError):
        await make_fetcher(site).fetch(url)
    assert site.requests == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "url", ["http://127.0.0.1/", "http://10.0.0.8:8080/", "http://[::1]/", "http://[::ffff:127.0.0.1]/"]
)
async def test_rejects_literal_blocked_ips(url):
    site = Site()
    with pytest.raises(BlockedIpError):
        await make_fetcher(site).fetch(url)
    assert site.requests == []


@pytest.mark.asyncio
async def test_rejects_hostname_resolving_to_any_blocked_address():
    resolver = stub_resolver({"mixed.example": ["93.184.216.34", "10.0.0.7"]})
    site = Site({"/": text_route("x")})
    with pytest.raises(BlockedIpError) as exc:
        await make_fetcher(site, resolver=resolver).fetch("https://mixed.example/")
    assert "10.0.0.7" in exc.value.message
    assert site.requests == []


@pytest.mark.asyncio
@pytest.mark.parametrize("answer", [[], DnsFailedError("no such host"), OSError("resolver down")])
async def test_dns_failures(answer):
    resolver = stub_resolver({"missing.example": answer})
    with pytest.raises(DnsFailedError) as exc:
        await make_fetcher(Site(), resolver=resolver).fetch("https://missing.example/")
    assert exc.value.code == "dns_failed"


@pytest.mark.asyncio
async def test_redirect_to_blocked_host_is_rejected_before_following():
    resolver = stub_resolver({"internal.example": ["10.0.0.5"]})
    site = Site({"/start": lambda _r: httpx.Response(302, headers={"location": "http://internal.example/admin"})})

    with pytest.raises(BlockedIpError):
        await make_fetcher(site, resolver=resolver).fetch("https://example.com/start")
    assert [r.url.host for r in site.requests] == ["example.com"]


@pytest.mark.asyncio
async def test_redirect_to_literal_metadata_address_is_rejected():
    site = Site({"/start": lambda _r: httpx.Response(301, headers={"location": "http://169.254.169.254/latest"})})
    with pytest.raises(BlockedIpError):
        await make_fetcher(site).fetch("https://example.com/start")
    assert len(site.requests) == 1


@pytest.mark.asyncio
async def test_follows_relative_redirects_and_keeps_chain():
    site = Site({
        "/old": lambda _r: httpx.Response(301, headers={"location": "/older"}),
        "/older": lambda _r: httpx.Response(308, headers={"location": "https://example.com/new"}),
        "/new": text_route("moved"),
    })
    result = await make_fetcher(site).fetch("https://example.com/old")

    assert result.url == "https://example.com/new"
    assert result.requested_url == "https://example.com/old"
    assert [(h.url, h.status) for h in result.redirect_chain] == [
        ("https://example.com/old", 301),
        ("https://example.com/older", 308),
    ]


@pytest.mark.asyncio
async def test_too_many_redirects():
    def loop(request):
        n = int(request.url.path.strip("/") or 0)
        return httpx.Response(302, headers={"location": f"/{n + 1}"})

    site = Site({f"/{i}": loop for i in range(10)})
    with pytest.raises(TooManyRedirectsError):
        await make_fetcher(site, max_redirects=2).fetch("https://example.com/0")
    assert len(site.requests) == 3


@pytest.mark.asyncio
async def test_303_after_post_switches_to_get():
    site = Site({
        ("POST", "/submit"): lambda _r: httpx.Response(303, headers={"location": "/done"}),
        ("GET", "/done"): text_route("ok"),
    })
    result = await make_fetcher(site).fetch("https://example.com/submit", method="POST", body="{}")
    assert result.method == "GET"
    assert site.requests[-1].method == "GET"
    assert site.requests[-1].content == b""


@pytest.mark.asyncio
async def test_body_exactly_at_cap_succeeds():
    payload = b"a" * 1024
    site = Site({"/blob": lambda _r: httpx.Response(200, content=payload)})
    result = await make_fetcher(site, max_bytes=1024).fetch("https://example.com/blob")
    assert result.content_length == 1024
    assert result.sha256 == hashlib.sha256(payload).hexdigest()


@pytest.mark.asyncio
async def test_body_one_byte_over_cap_fails():
    site = Site({"/blob": lambda _r: httpx.Response(200, content=b"a" * 1025)})
    with pytest.raises(BodyTooLargeError) as exc:
        await make_fetcher(site, max_bytes=1024).fetch("https://example.com/blob")
    assert exc.value.code == "body_too_large"


@pytest.mark.asyncio
async def test_streamed_body_without_length_is_capped():
    async def chunks():
        yield b"x" * 600
        yield b"x" * 600

    site = Site({"/stream": lambda _r: httpx.Response(200, content=chunks())})
    with pytest.raises(BodyTooLargeError):
        await make_fetcher(site, max_bytes=1024).fetch("https://example.com/stream")


@pytest.mark.asyncio
async def test_transport_errors_are_wrapped():
    def boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransportError) as exc:
        await make_fetcher(Site({"/": boom})).fetch("https://example.com/")
    assert exc.value.describe().startswith("transport_error: ConnectError")


@pytest.mark.asyncio
async def test_total_deadline_aborts_slow_exchange():
    async def slow(request):
        await asyncio.sleep(1)
        return httpx.Response(200, text="late")

    fetcher = make_fetcher(slow, timeout_ms=50)
    with pytest.raises(TransportError) as exc:
        await fetcher.fetch("https://example.com/")
    assert "deadline" in exc.value.message


@pytest.mark.asyncio
async def test_head_and_204_have_no_body():
    site = Site({"/empty": lambda _r: httpx.Response(204)})
    result = await make_fetcher(site).fetch("https://example.com/empty")
    assert result.body is None and result.sha256 is None


def test_fetch_error_hierarchy():
    for cls in (InvalidSchemeError, BlockedHostError, BlockedIpError, DnsFailedError,
                TooManyRedirectsError, BodyTooLargeError, TransportError):
        assert issubclass(cls, FetchError)
