"""Rewriting reverse proxy in front of the browser's debug endpoint.

HTTP responses with textual bodies (``/json/list``, ``/json/version``, the
DevTools frontend) are buffered and have their loopback URLs replaced with
the public tunnel hostname, so a remote client follows ``wss://<hostname>``
instead of ``ws://127.0.0.1:<port>``.  Everything else, WebSocket traffic
included, is relayed untouched.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Iterable

import aiohttp
from aiohttp import WSCloseCode, WSMsgType, hdrs, web
from yarl import URL

from cdptunnel.capabilities.proxy.rewrite import is_rewritable, rewrite_body
from cdptunnel.core.errors import ProxyBindError
from cdptunnel.core.ports import is_port_free

logger = logging.getLogger(__name__)

PLACEHOLDER_HOSTNAME = "127.0.0.1"

_HOP_BY_HOP = frozenset({
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailer", "trailers", "transfer-encoding", "upgrade",
})
# Upstream requests carry their own Host and ask for identity encoding.
_REQUEST_DROP = _HOP_BY_HOP | {"host", "accept-encoding", "content-length"}
_WS_REQUEST_DROP = _REQUEST_DROP | {
    "origin", "sec-websocket-key", "sec-websocket-version",
    "sec-websocket-extensions", "sec-websocket-protocol", "sec-websocket-accept",
}
_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class ProxyConfiguration:
    listen_port: int
    upstream_port: int
    rewrite_hostname: str = PLACEHOLDER_HOSTNAME
    listen_host: str = "127.0.0.1"
    upstream_host: str = "127.0.0.1"

    def with_hostname(self, hostname: str) -> ProxyConfiguration:
        return replace(self, rewrite_hostname=hostname)


def _filter_headers(headers: Iterable[tuple[str, str]], drop: frozenset | set) -> list[tuple[str, str]]:
    return [(k, v) for k, v in headers if k.lower() not in drop]


def _error_response(error: BaseException) -> web.Response:
    detail = str(error) or type(error).__name__
    return web.Response(status=502, text=f"Proxy error: {detail}", content_type="text/plain")


class RewritingProxy:
    """One bound listener with a fixed configuration.

    The configuration cannot change while bound; to point the rewrites at a
    new hostname, close this instance and start another on the same port.
    """

    def __init__(self, config: ProxyConfiguration, shutdown_timeout: float = 2.0) -> None:
        self._config = config
        self._shutdown_timeout = shutdown_timeout
        self._runner: web.AppRunner | None = None
        self._session: aiohttp.ClientSession | None = None
        self._websockets: set[web.WebSocketResponse] = set()

    @property
    def config(self) -> ProxyConfiguration:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    async def start(self) -> None:
        cfg = self._config
        if self._runner:
            raise ProxyBindError("Proxy is already bound")
        if not is_port_free(cfg.listen_port, cfg.listen_host):
            raise ProxyBindError(f"Proxy port {cfg.listen_port} is already in use")

        app = web.Application(client_max_size=64 * 1024 * 1024)
        app.router.add_route("*", "/{tail:.*}", self._handle)
        runner = web.AppRunner(app, access_log=None, shutdown_timeout=self._shutdown_timeout)
        await runner.setup()
        try:
            await web.TCPSite(runner, cfg.listen_host, cfg.listen_port).start()
        except OSError as e:
            await runner.cleanup()
            raise ProxyBindError(f"Could not bind proxy on port {cfg.listen_port}: {e}") from e

        self._runner = runner
        self._session = aiohttp.ClientSession(
            auto_decompress=False,
            timeout=aiohttp.ClientTimeout(total=None, sock_connect=5, sock_read=30),
        )
        logger.info(
            "Proxy listening on http://%s:%d -> port %d (hostname rewrite: %s)",
            cfg.listen_host, cfg.listen_port, cfg.upstream_port, cfg.rewrite_hostname,
        )

    async def close(self) -> None:
        for ws in list(self._websockets):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"proxy closing")
        runner, self._runner = self._runner, None
        session, self._session = self._session, None
        if runner:
            await runner.cleanup()
        if session:
            await session.close()
        if runner:
            logger.info("Proxy on port %d stopped", self._config.listen_port)

    # ------------------------------------------------------------------

    def _upstream_url(self, scheme: str, request: web.Request) -> URL:
        cfg = self._config
        return URL(f"{scheme}://{cfg.upstream_host}:{cfg.upstream_port}{request.raw_path}", encoded=True)

    async def _handle(self, request: web.Request) -> web.StreamResponse:
        if request.headers.get(hdrs.UPGRADE, "").lower() == "websocket":
            return await self._proxy_websocket(request)
        return await self._proxy_http(request)

    async def _proxy_http(self, request: web.Request) -> web.StreamResponse:
        assert self._session is not None
        body = await request.read() if request.body_exists else None
        headers = _filter_headers(request.headers.items(), _REQUEST_DROP)
        headers.append((hdrs.ACCEPT_ENCODING, "identity"))
        try:
            upstream = await self._session.request(
                request.method,
                self._upstream_url("http", request),
                headers=headers,
                data=body,
                allow_redirects=False,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.warning("Upstream request %s %s failed: %s", request.method, request.path, e)
            return _error_response(e)

        async with upstream:
            rewritable = request.method != "HEAD" and is_rewritable(
                upstream.headers.get(hdrs.CONTENT_TYPE),
                upstream.headers.get(hdrs.CONTENT_ENCODING),
            )
            if rewritable:
                return await self._buffered_response(request, upstream)
            return await self._streamed_response(request, upstream)

    async def _buffered_response(
        self,
        request: web.Request,
        upstream: aiohttp.ClientResponse,
    ) -> web.Response:
        try:
            body = await upstream.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Reading upstream body for %s failed: %s", request.path, e)
            return _error_response(e)

        try:
            body = rewrite_body(
                body, self._config.rewrite_hostname, self._config.upstream_port, upstream.charset,
            )
        except (UnicodeError, LookupError) as e:
            logger.warning("Could not rewrite response for %s, forwarding as-is: %s", request.path, e)

        headers = _filter_headers(upstream.headers.items(), _HOP_BY_HOP | {"content-length"})
        headers.append((hdrs.CONTENT_LENGTH, str(len(body))))
        return web.Response(status=upstream.status, reason=upstream.reason, body=body, headers=headers)

    async def _streamed_response(
        self,
        request: web.Request,
        upstream: aiohttp.ClientResponse,
    ) -> web.StreamResponse:
        response = web.StreamResponse(
            status=upstream.status,
            reason=upstream.reason,
            headers=_filter_headers(upstream.headers.items(), _HOP_BY_HOP),
        )
        await response.prepare(request)
        try:
            async for chunk in upstream.content.iter_chunked(_CHUNK_SIZE):
                await response.write(chunk)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Upstream stream for %s ended early: %s", request.path, e)
        await response.write_eof()
        return response

    async def _proxy_websocket(self, request: web.Request) -> web.StreamResponse:
        assert self._session is not None
        protocols = [
            p.strip()
            for p in request.headers.get(hdrs.SEC_WEBSOCKET_PROTOCOL, "").split(",")
            if p.strip()
        ]
        try:
            upstream = await self._session.ws_connect(
                self._upstream_url("ws", request),
                headers=_filter_headers(request.headers.items(), _WS_REQUEST_DROP),
                protocols=protocols,
                max_msg_size=0,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.warning("WebSocket upstream %s failed: %s", request.path, e)
            return _error_response(e)

        downstream = web.WebSocketResponse(protocols=protocols, max_msg_size=0)
        try:
            await downstream.prepare(request)
        except Exception:
            await upstream.close()
            raise

        self._websockets.add(downstream)
        logger.info("WebSocket connected: %s", request.path)
        pumps = [
            asyncio.create_task(_pump(downstream, upstream)),
            asyncio.create_task(_pump(upstream, downstream)),
        ]
        try:
            await asyncio.wait(pumps, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in pumps:
                task.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
            self._websockets.discard(downstream)
            await upstream.close()
            await downstream.close()
            logger.info("WebSocket closed: %s", request.path)
        return downstream


async def _pump(
    source: web.WebSocketResponse | aiohttp.ClientWebSocketResponse,
    target: web.WebSocketResponse | aiohttp.ClientWebSocketResponse,
) -> None:
    async for msg in source:
        try:
            if msg.type == WSMsgType.TEXT:
                await target.send_str(msg.data)
            elif msg.type == WSMsgType.BINARY:
                await target.send_bytes(msg.data)
            elif msg.type == WSMsgType.ERROR:
                logger.debug("WebSocket error: %s", source.exception())
                return
        except ConnectionResetError:
            return
