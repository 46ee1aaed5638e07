#!/usr/bin/env python3
"""Streaming interception proxy in front of an OpenAI-compatible chat completion API."""
import copy
import inspect
import json
import logging
import os
import sys
import time
import uuid
from contextlib import aclosing, asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from ..config.settings import Settings, load_settings
from ..core.exchange_log import ExchangeLogger
from ..transform.base import RequestTransformer
from ..transform.registry import default_registry
from ..utils.log_setup import get_logger
from .sse import DONE_SENTINEL, format_event, iter_events

CHAT_COMPLETIONS_PATH = '/v1/chat/completions'

# Credentials never copied into transformer metadata or the exchange log
SENSITIVE_HEADERS = {'authorization', 'proxy-authorization', 'cookie', 'x-api-key', 'openai-organization'}

# Forwarded verbatim on the chat route
FORWARDED_CHAT_HEADERS = ('authorization', 'openai-organization')

EXCLUDED_REQUEST_HEADERS = {'host', 'connection', 'content-length'}
EXCLUDED_RESPONSE_HEADERS = {'transfer-encoding', 'connection', 'keep-alive'}

CONFIG_ENV = 'KBPROXY_CONFIG'


async def maybe_await(value):
    """Await ``value`` when a transformer hook returned a coroutine."""
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass
class ProxyRequestContext:
    """Everything known about one chat completion request while it is in flight."""

    request_id: str
    original_body: bytes
    body: Dict[str, Any]
    stream: bool
    meta: Dict[str, Any]
    forwarded_body: bytes = b''
    started_at: float = field(default_factory=time.time)

    @property
    def duration_ms(self) -> int:
        return int((time.time() - self.started_at) * 1000)


class StreamingProxyService:
    """FastAPI application relaying chat completions through a transformer."""

    def __init__(self, settings: Settings, transformer: Optional[RequestTransformer] = None,
                 exchange_logger: Optional[ExchangeLogger] = None,
                 upstream_transport: Optional[httpx.AsyncBaseTransport] = None,
                 logger: Optional[logging.Logger] = None):
        """
        Initialise the proxy service.

        Args:
            settings: Resolved settings (upstream URL, transformer, log directory)
            transformer: Transformer instance; built from settings when omitted
            exchange_logger: JSONL exchange log; built from settings when omitted
            upstream_transport: httpx transport override (tests inject a MockTransport)
            logger: Access/error logger
        """
        self.settings = settings
        self.upstream_base_url = settings.upstream_base_url.rstrip('/')
        self.logger = logger or logging.getLogger('kbproxy.proxy')
        self.exchange_logger = exchange_logger or ExchangeLogger(settings.log_dir)
        if transformer is None:
            transformer = default_registry().create(
                settings.transformer, exchange_logger=self.exchange_logger, **settings.transformer_options
            )
        self.transformer = transformer

        self.client = self._create_async_client(upstream_transport)

        self.app = FastAPI(lifespan=self._lifespan)
        self.app.state.proxy_service = self
        self._setup_routes()

    def _create_async_client(self, transport: Optional[httpx.AsyncBaseTransport]) -> httpx.AsyncClient:
        """Create and configure an httpx AsyncClient."""
        timeout = httpx.Timeout(  # Allow long-running streaming responses
            timeout=None,
            connect=30.0,
            read=None,
            write=30.0,
            pool=None,
        )
        limits = httpx.Limits(
            max_connections=200,
            max_keepalive_connections=100,
        )
        # trust_env=False: the host may point HTTP(S)_PROXY at this very server
        return httpx.AsyncClient(timeout=timeout, limits=limits, trust_env=False, transport=transport)

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        yield
        await self.aclose()

    async def aclose(self):
        """Dispose the HTTP client and drain the exchange log."""
        await self.client.aclose()
        await self.exchange_logger.aclose()

    def _setup_routes(self):
        """Register the FastAPI routes."""

        @self.app.middleware("http")
        async def access_log(request: Request, call_next):
            request_id = request.headers.get('x-request-id') or str(uuid.uuid4())
            request.state.request_id = request_id
            start_time = time.time()
            response = await call_next(request)
            duration_ms = int((time.time() - start_time) * 1000)
            self.logger.info(
                f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({duration_ms}ms)"
            )
            return response

        @self.app.get("/ping")
        async def ping():
            return {"status": "ok"}

        @self.app.post(CHAT_COMPLETIONS_PATH)
        async def chat_completions(request: Request):
            return await self.chat_completions(request)

        @self.app.api_route(
            "/{path:path}",
            methods=['GET', 'POST', 'PUT', 'DELETE', 'PATCH', 'OPTIONS', 'HEAD']
        )
        async def proxy_route(path: str, request: Request):
            return await self.forward_raw(path, request)

    def build_meta(self, request: Request, body: Dict[str, Any], request_id: str) -> Dict[str, Any]:
        """Correlation metadata handed to the transformer alongside the payload."""
        headers = {k: v for k, v in request.headers.items() if k.lower() not in SENSITIVE_HEADERS}
        return {
            'request_id': request_id,
            'model': body.get('model'),
            'stream': bool(body.get('stream')),
            'headers': headers,
            'client_ip': request.client.host if request.client else None,
            'path': request.url.path,
            'method': request.method,
        }

    async def _transform_prompt(self, ctx: ProxyRequestContext) -> bytes:
        """Return the request bytes to forward; the original bytes on any transformer failure."""
        messages = ctx.body.get('messages')
        if not isinstance(messages, list):
            return ctx.original_body
        try:
            transformed = await maybe_await(
                self.transformer.process_prompt(copy.deepcopy(messages), ctx.meta)
            )
        except Exception as exc:
            self.logger.error(f"[{ctx.request_id}] Prompt transformer failed, forwarding original request: {exc}")
            return ctx.original_body

        if transformed is None:
            return ctx.original_body
        try:
            forwarded = dict(ctx.body)
            forwarded['messages'] = transformed
            return json.dumps(forwarded, ensure_ascii=False).encode('utf-8')
        except (TypeError, ValueError) as exc:
            self.logger.error(f"[{ctx.request_id}] Transformed prompt is not serialisable, forwarding original: {exc}")
            return ctx.original_body

    async def _transform_response(self, payload: Any, ctx: ProxyRequestContext) -> Any:
        """Run ``process_response``; the untouched payload is returned on failure."""
        try:
            result = await maybe_await(self.transformer.process_response(payload, ctx.meta))
        except Exception as exc:
            self.logger.error(f"[{ctx.request_id}] Response transformer failed, forwarding original: {exc}")
            return payload
        return payload if result is None else result

    def _chat_headers(self, request: Request) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json'}
        for name in FORWARDED_CHAT_HEADERS:
            value = request.headers.get(name)
            if value:
                headers[name] = value
        accept = request.headers.get('accept')
        if accept:
            headers['Accept'] = accept
        return headers

    async def chat_completions(self, request: Request):
        """Handle ``POST /v1/chat/completions``."""
        request_id = getattr(request.state, 'request_id', None) or str(uuid.uuid4())
        original_body = await request.body()
        try:
            body = json.loads(original_body or b'{}')
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            return JSONResponse({"error": "Invalid JSON body", "detail": str(exc)}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "Request body must be a JSON object"}, status_code=400)

        ctx = ProxyRequestContext(
            request_id=request_id,
            original_body=original_body,
            body=body,
            stream=bool(body.get('stream')),
            meta=self.build_meta(request, body, request_id),
        )
        ctx.forwarded_body = await self._transform_prompt(ctx)

        target_url = f"{self.upstream_base_url}{CHAT_COMPLETIONS_PATH}"
        try:
            request_out = self.client.build_request(
                method='POST',
                url=target_url,
                headers=self._chat_headers(request),
                content=ctx.forwarded_body,
            )
            response = await self.client.send(request_out, stream=True)
        except httpx.RequestError as exc:
            return self._upstream_error(exc, ctx.request_id)

        if not (200 <= response.status_code < 300):
            return await self._mirror_buffered(response)

        if ctx.stream:
            return StreamingResponse(
                self.relay_stream(response, ctx),
                status_code=response.status_code,
                media_type='text/event-stream',
                headers={'Cache-Control': 'no-cache'},
            )

        try:
            raw = await response.aread()
        except httpx.RequestError as exc:
            return self._upstream_error(exc, ctx.request_id)
        finally:
            await response.aclose()

        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            self.logger.warning(f"[{ctx.request_id}] Upstream returned a non-JSON body, mirroring it")
            return Response(content=raw, status_code=response.status_code,
                            media_type=response.headers.get('content-type'))

        result = await self._transform_response(payload, ctx)
        try:
            return JSONResponse(result, status_code=200)
        except (TypeError, ValueError) as exc:
            self.logger.error(f"[{ctx.request_id}] Transformed response is not serialisable, forwarding original: {exc}")
            return JSONResponse(payload, status_code=200)

    async def relay_stream(self, response: httpx.Response, ctx: ProxyRequestContext) -> AsyncIterator[bytes]:
        """Re-emit upstream SSE events after passing each payload through the transformer.

        Closing this generator (the caller disconnected) closes the upstream
        response, so nothing more is read from it.
        """
        try:
            async with aclosing(iter_events(response.aiter_bytes())) as events:
                async for event in events:
                    if event.is_done:
                        yield format_event(DONE_SENTINEL)
                        return
                    yield format_event(await self._stream_payload(event.data, ctx))
        except httpx.RequestError as exc:
            self.logger.error(f"[{ctx.request_id}] Upstream stream interrupted: {exc}")
        finally:
            await response.aclose()
            self.logger.info(f"[{ctx.request_id}] Stream closed after {ctx.duration_ms}ms")

    async def _stream_payload(self, data: str, ctx: ProxyRequestContext) -> str:
        result = await self._transform_response(data, ctx)
        if isinstance(result, str):
            return result
        try:
            return json.dumps(result, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            self.logger.error(f"[{ctx.request_id}] Transformed chunk is not serialisable, forwarding original: {exc}")
            return data

    async def _mirror_buffered(self, response: httpx.Response) -> Response:
        """Return an upstream error response with its status and body unchanged."""
        try:
            content = await response.aread()
        finally:
            await response.aclose()
        headers = {k: v for k, v in response.headers.items()
                   if k.lower() not in EXCLUDED_RESPONSE_HEADERS | {'content-length', 'content-encoding'}}
        return Response(content=content, status_code=response.status_code, headers=headers)

    async def forward_raw(self, path: str, request: Request):
        """Forward any other request upstream and mirror the raw response."""
        target_url = f"{self.upstream_base_url}/{path}"
        if request.url.query:
            target_url = f"{target_url}?{request.url.query}"

        headers = {k: v for k, v in request.headers.items() if k.lower() not in EXCLUDED_REQUEST_HEADERS}
        body = await request.body()

        try:
            request_out = self.client.build_request(
                method=request.method,
                url=target_url,
                headers=headers,
                content=body if body else None,
            )
            response = await self.client.send(request_out, stream=True)
        except httpx.RequestError as exc:
            request_id = getattr(request.state, 'request_id', '-')
            return self._upstream_error(exc, request_id)

        response_headers = {k: v for k, v in response.headers.items()
                            if k.lower() not in EXCLUDED_RESPONSE_HEADERS}

        async def iterator():
            try:
                async for chunk in response.aiter_raw():
                    if chunk:
                        yield chunk
            finally:
                await response.aclose()

        return StreamingResponse(
            iterator(),
            status_code=response.status_code,
            headers=response_headers,
        )

    def _upstream_error(self, exc: httpx.RequestError, request_id: str) -> JSONResponse:
        if isinstance(exc, httpx.ConnectTimeout):
            error_msg = "Connection timed out"
        elif isinstance(exc, httpx.ReadTimeout):
            error_msg = "Read timed out"
        elif isinstance(exc, httpx.ConnectError):
            error_msg = "Connection error"
        else:
            error_msg = "Request failed"
        self.logger.error(f"[{request_id}] {error_msg}: {exc}")
        return JSONResponse({"error": error_msg, "detail": str(exc)}, status_code=500)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Application factory (``uvicorn --factory kbproxy.proxy.server:create_app``)."""
    if settings is None:
        config_file = os.environ.get(CONFIG_ENV)
        settings = load_settings(Path(config_file) if config_file else None)
    return StreamingProxyService(settings).app


def run_server(port: int, config_file: Optional[Path] = None):
    """Serve the proxy on ``127.0.0.1:<port>`` until interrupted."""
    get_logger('kbproxy', stream=sys.stdout)
    settings = load_settings(config_file)
    logger = logging.getLogger('kbproxy.proxy')
    logger.info(f"Proxy listening on 127.0.0.1:{port}, upstream {settings.upstream_base_url}, "
                f"transformer {settings.transformer}")
    uvicorn.run(
        create_app(settings),
        host='127.0.0.1',
        port=port,
        http='h11',
        timeout_keep_alive=60,
        log_level='info',
    )
