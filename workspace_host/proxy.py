"""Reverse proxy from ``/proxy/{port}/...`` to ``localhost:{port}/...``.

HTML pages are buffered and get the app's stylesheet inlined before
``</head>``: the mobile WebView loading the preview through the gateway
does not reliably fetch same-origin stylesheets. Everything else is
streamed through untouched apart from permissive CORS headers.
"""

import re
from typing import Optional

import httpx
import structlog
from fastapi import Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from workspace_host.env import PROXY_TIMEOUT
from workspace_host.errors import UpstreamUnreachable

logger = structlog.get_logger(__name__)

UPSTREAM_HOST = "127.0.0.1"
STYLESHEET_PATHS = ("/styles.css", "/style.css")

CORS_HEADERS = {
    "access-control-allow-origin": "*",
    "access-control-allow-methods": "GET, POST, PUT, PATCH, DELETE, HEAD, OPTIONS",
    "access-control-allow-headers": "*",
}

# Never forwarded in either direction.
HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "host",
    }
)

_HEAD_CLOSE = re.compile(r"</head\s*>", re.IGNORECASE)
_PROXY_PREFIX = re.compile(rb"^/proxy/[^/]*/?")


def inline_stylesheet(html: str, css: str) -> str:
    """Insert *css* as a ``<style>`` block before the first ``</head>``."""
    match = _HEAD_CLOSE.search(html)
    if not match:
        return html
    return f"{html[: match.start()]}<style>\n{css}\n</style>\n{html[match.start():]}"


def upstream_path(request: Request, decoded_path: str) -> str:
    """Path below ``/proxy/{port}`` exactly as the client encoded it."""
    raw_path = request.scope.get("raw_path")
    if not raw_path:
        return decoded_path
    raw_path = raw_path.split(b"?", 1)[0]
    return _PROXY_PREFIX.sub(b"", raw_path, count=1).decode("latin-1")


def _copy_headers(
    upstream: httpx.Response, response: Response, drop: frozenset = frozenset()
) -> Response:
    """Append upstream headers one by one so repeated ones (Set-Cookie) stay separate."""
    for key, value in upstream.headers.multi_items():
        name = key.lower()
        if name in HOP_BY_HOP or name in drop or name in CORS_HEADERS:
            continue
        response.headers.append(key, value)
    for key, value in CORS_HEADERS.items():
        response.headers[key] = value
    return response


class Gateway:
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = PROXY_TIMEOUT,
        stylesheet_paths: tuple[str, ...] = STYLESHEET_PATHS,
    ):
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=5.0),
            follow_redirects=False,
        )
        self.stylesheet_paths = stylesheet_paths

    async def aclose(self) -> None:
        await self._client.aclose()

    def upstream_url(self, port: int, path: str) -> str:
        return f"http://{UPSTREAM_HOST}:{port}/{path.lstrip('/')}"

    async def proxy(self, port: int, path: str, request: Request) -> Response:
        """Forward *request* to ``localhost:{port}/{path}``.

        Never raises for upstream failures; an unreachable port becomes a
        502 JSON body naming the port.
        """
        try:
            return await self._forward(port, path, request)
        except UpstreamUnreachable as e:
            logger.warning("Proxy upstream unreachable", port=port, path=path, error=e.message)
            return JSONResponse(
                status_code=502,
                content={"success": False, "error": e.message, "port": port},
                headers=CORS_HEADERS,
            )

    async def _forward(self, port: int, path: str, request: Request) -> Response:
        # Let httpx negotiate its own encoding so HTML can be decoded for rewriting.
        skipped = HOP_BY_HOP | {"accept-encoding", "content-length"}
        headers = [
            (key, value)
            for key, value in request.headers.raw
            if key.decode("latin-1").lower() not in skipped
        ]
        body = await request.body()

        upstream_request = self._client.build_request(
            request.method,
            self.upstream_url(port, path),
            params=list(request.query_params.multi_items()),
            headers=headers,
            content=body or None,
        )
        try:
            upstream = await self._client.send(upstream_request, stream=True)
        except httpx.TimeoutException as e:
            raise UpstreamUnreachable(port, "timed out") from e
        except httpx.TransportError as e:
            raise UpstreamUnreachable(port, "connection refused") from e

        content_type = upstream.headers.get("content-type", "")
        if request.method == "GET" and content_type.startswith("text/html"):
            return await self._rewrite_html(port, upstream)

        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        return _copy_headers(upstream, response, drop=frozenset({"content-length"}))

    async def _rewrite_html(self, port: int, upstream: httpx.Response) -> Response:
        try:
            await upstream.aread()
        except httpx.TransportError as e:
            raise UpstreamUnreachable(port, "connection closed while reading") from e
        finally:
            await upstream.aclose()

        html = upstream.text
        css = await self._fetch_stylesheet(port)
        if css:
            html = inline_stylesheet(html, css)

        response = Response(content=html, status_code=upstream.status_code, media_type="text/html")
        return _copy_headers(
            upstream,
            response,
            drop=frozenset({"content-length", "content-encoding", "content-type"}),
        )

    async def _fetch_stylesheet(self, port: int) -> Optional[str]:
        for path in self.stylesheet_paths:
            try:
                response = await self._client.get(self.upstream_url(port, path))
            except httpx.HTTPError:
                return None
            if response.status_code == 200 and "html" not in response.headers.get(
                "content-type", ""
            ):
                return response.text
        return None
