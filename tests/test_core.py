import asyncio
import logging

import pytest

from gateway.core import (
    GatewayServer,
    _rebuild_request_head,
    _split_target,
    GatewayError,
)
from gateway.rules import InvalidRuleError


async def _upstream(seen):
    async def handle(reader, writer):
        head = b""
        while not head.endswith(b"\r\n\r\n"):
            line = await reader.readline()
            if not line:
                break
            head += line
        seen.append(head.decode())
        body = b"hello from upstream"
        writer.write(b"HTTP/1.1 200 OK\r\nContent-Length: %d\r\nConnection: close\r\n\r\n%s"
                     % (len(body), body))
        await writer.drain()
        writer.close()

    return await asyncio.start_server(handle, "127.0.0.1", 0)


async def _request(port, headers):
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    head = "GET / HTTP/1.1\r\nHost: gateway.local\r\n"
    head += "".join(f"{k}: {v}\r\n" for k, v in headers)
    writer.write(head.encode() + b"\r\n")
    await writer.drain()
    data = await asyncio.wait_for(reader.read(), timeout=5)
    writer.close()
    return data.decode()


def _round_trip(make_config, headers_for, **overrides):
    seen = []

    async def scenario():
        upstream = await _upstream(seen)
        up_port = upstream.sockets[0].getsockname()[1]
        gateway = GatewayServer(make_config(**overrides))
        server = await gateway.start()
        gw_port = server.sockets[0].getsockname()[1]
        try:
            return await _request(gw_port, headers_for(up_port))
        finally:
            server.close()
            upstream.close()
            await server.wait_closed()
            await upstream.wait_closed()
            gateway.logger.close()

    return asyncio.run(scenario()), seen


def test_allowed_request_is_forwarded_to_target(make_config):
    response, seen = _round_trip(
        make_config,
        lambda port: [
            ("X-Forwarded-For", "10.1.2.3, 172.16.0.1"),
            ("X-CF-Forwarded-Url", f"http://127.0.0.1:{port}/public/page?q=1"),
            ("X-Custom", "kept"),
        ],
        accept_source_ips="10.0.0.0/8",
    )
    assert response.startswith("HTTP/1.1 200 OK")
    assert response.endswith("hello from upstream")
    (upstream_head,) = seen
    assert upstream_head.startswith("GET /public/page?q=1 HTTP/1.1\r\n")
    assert "x-custom: kept" in upstream_head
    assert "gateway.local" not in upstream_head


def test_rejected_request_gets_503_and_never_reaches_upstream(make_config):
    response, seen = _round_trip(
        make_config,
        lambda port: [
            ("X-Forwarded-For", "192.168.5.5"),
            ("X-CF-Forwarded-Url", f"http://127.0.0.1:{port}/admin/users"),
        ],
        deny_source_ips="192.168.0.0/16",
        deny_url_paths="admin",
    )
    assert response.startswith("HTTP/1.1 503 Service Unavailable")
    assert seen == []


def test_missing_forwarded_for_gets_503(make_config):
    response, seen = _round_trip(
        make_config,
        lambda port: [("X-CF-Forwarded-Url", f"http://127.0.0.1:{port}/")],
    )
    assert response.startswith("HTTP/1.1 503")
    assert seen == []


def test_missing_forwarded_url_gets_503(make_config):
    response, seen = _round_trip(
        make_config,
        lambda port: [("X-Forwarded-For", "8.8.8.8")],
    )
    assert response.startswith("HTTP/1.1 503")
    assert seen == []


def test_bad_rule_aborts_startup(make_config):
    with pytest.raises(InvalidRuleError):
        GatewayServer(make_config(deny_source_ips="10.0.0.0/8,10.0.0.0/abc"))


def test_split_target():
    assert _split_target("https://user@app.example.com/a/b?x=1") == (
        "app.example.com", 443, True, "/a/b?x=1", "app.example.com"
    )
    assert _split_target("http://h:8081") == ("h", 8081, False, "/", "h:8081")


def test_split_target_needs_absolute_http_url():
    with pytest.raises(GatewayError) as exc:
        _split_target("/relative/only")
    assert exc.value.status == 502


def test_rebuild_request_head_substitutes_uri_and_host():
    head = _rebuild_request_head(
        "POST", "/x?y=1", "HTTP/1.1",
        {"host": ["old"], "connection": ["keep-alive"], "x-forwarded-for": ["1.1.1.1"]},
        "new:8080",
    ).decode()
    assert head.startswith("POST /x?y=1 HTTP/1.1\r\nHost: new:8080\r\n")
    assert "old" not in head
    assert "keep-alive" not in head
    assert "x-forwarded-for: 1.1.1.1\r\n" in head
    assert head.endswith("Connection: close\r\n\r\n")


def test_bad_rule_releases_the_access_log(make_config):
    with pytest.raises(InvalidRuleError):
        GatewayServer(make_config(accept_source_ips="bogus"))
    assert logging.getLogger("gateway").handlers == []


def test_malformed_target_gets_503_not_502(make_config):
    response, seen = _round_trip(
        make_config,
        lambda port: [
            ("X-Forwarded-For", "10.0.0.1"),
            ("X-CF-Forwarded-Url", f"http://127.0.0.1:{port}/%zz"),
        ],
        accept_source_ips="10.0.0.0/8",
    )
    assert response.startswith("HTTP/1.1 503")
    assert seen == []
