"""
gateway.core
~~~~~~~~~~~~
Non-blocking route service: every request is either forwarded to the URL in
X-Cf-Forwarded-Url or answered with 503, as decided by the access policy.
"""

from __future__ import annotations

import asyncio
import ssl
import time
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from .config import Config
from .decision import AccessPolicy, DecisionEngine
from .logger import GatewayLogger

CRLF = b"\r\n"
BUFFER = 65_536

X_FORWARDED_FOR = "x-forwarded-for"
X_CF_FORWARDED_URL = "x-cf-forwarded-url"

Headers = Dict[str, List[str]]


def run_gateway(config: Config) -> None:
    gateway = GatewayServer(config)
    try:
        asyncio.run(gateway.serve_forever())
    except KeyboardInterrupt:
        print("\n▸ Gateway shut down.")
    finally:
        gateway.logger.close()


class GatewayServer:
    def __init__(self, cfg: Config) -> None:
        self.cfg = cfg
        # logger first so the rule dump lands in the access log
        self.logger = GatewayLogger(cfg.log_path)
        try:
            self.engine = DecisionEngine(AccessPolicy.from_config(cfg))
        except Exception:
            self.logger.close()
            raise

    async def start(self) -> asyncio.AbstractServer:
        return await asyncio.start_server(
            self._handle_client,
            host=self.cfg.listen_host,
            port=self.cfg.listen_port,
        )

    async def serve_forever(self) -> None:
        server = await self.start()

        bind_str = ", ".join(str(s.getsockname()) for s in server.sockets)
        print(f"▸ Gateway listening on {bind_str}")

        async with server:
            await server.serve_forever()

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        start_ts = time.time()
        peer = writer.get_extra_info("peername")
        peer_ip = peer[0] if peer else "-"
        method, url = "-", "-"

        try:
            req_line, headers = await _read_request_head(reader)
            method, target, version = _parse_request_line(req_line)
            forwarded_url = _first(headers, X_CF_FORWARDED_URL)
            url = forwarded_url or target

            decision = self.engine.evaluate(headers.get(X_FORWARDED_FOR), forwarded_url)
            self.logger.verdict(peer_ip, method, url, decision)

            if not decision.allowed or not forwarded_url:
                await _send_simple_response(writer, 503)
                self.logger.end(method, url, 503, _elapsed_ms(start_ts))
                return

            await self._forward(reader, writer, method, version, headers, forwarded_url)
            self.logger.end(method, url, 200, _elapsed_ms(start_ts))

        except GatewayError as e:
            try:
                await _send_simple_response(writer, e.status, e.msg.encode())
            except OSError:
                pass
            self.logger.error(method, url, e.status, e.msg)
        except Exception as e:  # noqa: BLE001
            try:
                await _send_simple_response(writer, 500, b"Internal Server Error")
            except OSError:
                pass
            self.logger.error(method, url, 500, repr(e))
        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except OSError:
                pass

    async def _forward(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        method: str,
        version: str,
        headers: Headers,
        forwarded_url: str,
    ) -> None:
        host, port, tls, uri, authority = _split_target(forwarded_url)
        try:
            remote_reader, remote_writer = await asyncio.wait_for(
                asyncio.open_connection(
                    host, port, ssl=ssl.create_default_context() if tls else None
                ),
                timeout=self.cfg.upstream_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise GatewayError(502, f"Upstream connect failed: {e}") from e

        remote_writer.write(_rebuild_request_head(method, uri, version, headers, authority))
        await remote_writer.drain()

        await asyncio.gather(
            _pipe_stream(client_reader, remote_writer),
            _pipe_stream(remote_reader, client_writer),
        )


class GatewayError(Exception):
    def __init__(self, status: int, msg: str):
        self.status = status
        self.msg = msg
        super().__init__(f"{status} {msg}")


def _elapsed_ms(start_ts: float) -> int:
    return int((time.time() - start_ts) * 1000)


def _first(headers: Headers, name: str) -> Optional[str]:
    values = headers.get(name)
    return values[0] if values else None


async def _read_request_head(reader: asyncio.StreamReader) -> Tuple[bytes, Headers]:
    head = b""
    while True:
        line = await reader.readline()
        if not line:
            raise GatewayError(400, "Bad Request: EOF before headers complete")
        head += line
        if line == CRLF:
            break

    lines = head.split(CRLF)[:-1]
    if not lines:
        raise GatewayError(400, "Bad Request: empty head")

    req_line = lines[0]
    hdrs: Headers = {}
    for raw in lines[1:]:
        if b":" in raw:
            k, v = raw.split(b":", 1)
            hdrs.setdefault(k.decode("latin-1").strip().lower(), []).append(
                v.decode("latin-1").strip()
            )
    return req_line, hdrs


def _parse_request_line(line: bytes) -> Tuple[str, str, str]:
    try:
        method, target, version = line.decode("latin-1").strip().split()
    except ValueError:
        raise GatewayError(400, "Bad Request: malformed request-line") from None
    return method, target, version


def _split_target(url: str) -> Tuple[str, int, bool, str, str]:
    """host, port, use_tls, request-uri and Host value for the forwarded URL."""
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    if scheme not in ("http", "https") or not parts.hostname:
        raise GatewayError(502, f"Cannot forward to {url!r}")
    tls = scheme == "https"
    port = parts.port or (443 if tls else 80)
    uri = parts.path or "/"
    if parts.query:
        uri += "?" + parts.query
    return parts.hostname, port, tls, uri, parts.netloc.rpartition("@")[2]


_HOP_BY_HOP = {
    "proxy-authorization",
    "proxy-connection",
    "connection",
    "keep-alive",
    "te",
    "trailer",
    "upgrade",
    "host",
}


def _rebuild_request_head(
    method: str, uri: str, version: str, headers: Headers, authority: str
) -> bytes:
    head = bytearray(f"{method} {uri} {version}".encode("latin-1") + CRLF)
    head.extend(f"Host: {authority}".encode("latin-1") + CRLF)
    for k, values in headers.items():
        if k not in _HOP_BY_HOP:
            for v in values:
                head.extend(f"{k}: {v}".encode("latin-1") + CRLF)
    head.extend(b"Connection: close" + CRLF)
    head.extend(CRLF)
    return bytes(head)


async def _send_simple_response(writer: asyncio.StreamWriter, status: int, body: bytes = b"") -> None:
    reason = {200: "OK", 400: "Bad Request", 500: "Internal Server Error",
              502: "Bad Gateway", 503: "Service Unavailable"}.get(status, "Error")
    head = f"HTTP/1.1 {status} {reason}\r\n"
    head += f"Content-Length: {len(body)}\r\nConnection: close\r\n\r\n"
    writer.write(head.encode() + body)
    await writer.drain()


async def _pipe_stream(src: asyncio.StreamReader, dst: asyncio.StreamWriter) -> None:
    try:
        while not src.at_eof():
            chunk = await src.read(BUFFER)
            if not chunk:
                break
            dst.write(chunk)
            await dst.drain()
    except OSError:
        pass
    finally:
        try:
            dst.close()
            await dst.wait_closed()
        except OSError:
            pass
