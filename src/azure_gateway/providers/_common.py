# providers/_common.py
import json
import logging
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Iterable, Optional

import httpx
from fastapi.responses import JSONResponse, StreamingResponse

from azure_gateway.errors import AzureAPIError, error_body
from azure_gateway.load_config import AzureConfig
from azure_gateway.sanitize import sanitize_string

logger = logging.getLogger("azure_gateway.providers")

SSE_DONE = "data: [DONE]\n\n"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
    **CORS_HEADERS,
}

# Azure rejects these Responses/OpenAI-only request fields
UNSUPPORTED_PARAMS = ("stream_options", "include", "reasoning", "text")


def build_http_client() -> httpx.AsyncClient:
    # no deadline on the backend call; the caller's connection decides
    return httpx.AsyncClient(timeout=httpx.Timeout(None), follow_redirects=False)


def strip_unsupported_params(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Remove fields Azure does not accept and non-function tools. Mutates and returns `payload`."""
    for key in UNSUPPORTED_PARAMS:
        payload.pop(key, None)

    tools = payload.get("tools")
    if isinstance(tools, list):
        kept = [
            t for t in tools
            if isinstance(t, dict)
            and t.get("type") == "function"
            and isinstance(t.get("function"), dict)
            and t["function"].get("name")
        ]
        if kept:
            payload["tools"] = kept
        else:
            payload.pop("tools", None)
    return payload


def base_url(config: AzureConfig) -> str:
    return config.endpoint.rstrip("/")


def format_sse_data(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, separators=(',', ':'), ensure_ascii=False)}\n\n"


async def read_error_text(resp: httpx.Response, config: AzureConfig) -> str:
    raw = await resp.aread()
    text = raw.decode("utf-8", errors="replace")
    return sanitize_string(text, secrets=[config.api_key])


async def post_json(
    client: httpx.AsyncClient,
    url: str,
    headers: Dict[str, str],
    body: Dict[str, Any],
    config: AzureConfig,
) -> Dict[str, Any]:
    """Single blocking call. Non-2xx answers raise AzureAPIError."""
    resp = await client.post(url, headers=headers, json=body)
    if resp.status_code >= 400:
        safe = await read_error_text(resp, config)
        logger.error("[AZURE] error body (%s): %s", resp.status_code, safe[:2000])
        raise AzureAPIError(resp.status_code, resp.reason_phrase, safe)
    return resp.json()


class StreamState(str, Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class SSERelay:
    """
    Reads SSE lines from an open backend response and yields rewritten frames.

    `transform` receives each parsed `data:` JSON payload and returns the
    frames (already SSE-formatted strings) to emit in its place. `on_close`
    may emit trailing frames once the backend stream has ended.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        upstream: httpx.Response,
        transform: Callable[[Dict[str, Any]], Iterable[str]],
        on_close: Optional[Callable[[bool], Iterable[str]]] = None,
    ):
        self.client = client
        self.upstream = upstream
        self.transform = transform
        self.on_close = on_close
        self.state = StreamState.OPEN
        self.saw_done = False

    def _handle_line(self, line: str) -> Iterable[str]:
        if not line.strip():
            return []
        if not line.startswith("data:"):
            # event:, id:, retry: and comments belong to the next data line
            return [line + "\n"]

        data = line[5:].lstrip(" ")
        if data.strip() == "[DONE]":
            self.saw_done = True
            self.state = StreamState.CLOSING
            return [SSE_DONE]
        try:
            payload = json.loads(data)
        except ValueError:
            return [line + "\n\n"]
        if not isinstance(payload, dict):
            return [line + "\n\n"]
        return self.transform(payload)

    async def frames(self) -> AsyncIterator[bytes]:
        try:
            async for line in self.upstream.aiter_lines():
                for frame in self._handle_line(line):
                    yield frame.encode("utf-8")
            self.state = StreamState.CLOSING
            if self.on_close:
                for frame in self.on_close(self.saw_done):
                    yield frame.encode("utf-8")
        except httpx.HTTPError as e:
            logger.error("[STREAM] backend read failed: %s", sanitize_string(str(e)))
            raise
        finally:
            await self.upstream.aclose()
            await self.client.aclose()
            self.state = StreamState.CLOSED
            logger.debug("[STREAM] closed (done=%s)", self.saw_done)


async def forward_streaming(
    client: httpx.AsyncClient,
    url: str,
    headers: Dict[str, str],
    body: Dict[str, Any],
    config: AzureConfig,
    transform: Callable[[Dict[str, Any]], Iterable[str]],
    on_close: Optional[Callable[[bool], Iterable[str]]] = None,
):
    """
    Open the backend stream and relay it as SSE.

    A non-2xx answer becomes one JSON error body with the backend's status.
    Owns `client`: it is closed when the stream (or the error path) ends.
    """
    try:
        req = client.build_request("POST", url, headers=headers, json=body)
        upstream = await client.send(req, stream=True)
    except Exception:
        await client.aclose()
        raise

    if upstream.status_code >= 400:
        try:
            safe = await read_error_text(upstream, config)
        finally:
            await upstream.aclose()
            await client.aclose()
        logger.error("[AZURE] stream error body (%s): %s", upstream.status_code, safe[:2000])
        err = AzureAPIError(upstream.status_code, upstream.reason_phrase, safe)
        return JSONResponse(error_body(str(err), "azure_api_error"), status_code=upstream.status_code)

    relay = SSERelay(client, upstream, transform, on_close)
    return StreamingResponse(relay.frames(), media_type="text/event-stream", headers=SSE_HEADERS)
