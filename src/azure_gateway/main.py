# main.py
import os
import time
import socket
import logging
import datetime
from typing import Any, Dict, Iterable, Optional

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from azure_gateway import __version__
from azure_gateway.errors import GatewayError, MalformedRequestError, classify_error, error_body
from azure_gateway.load_config import (
    AzureConfig,
    MODEL_TYPE_CHAT,
    get_all_configured_models,
    get_azure_config,
    load_env,
    read_file_config,
    save_file_config,
    validate_config,
)
from azure_gateway.normalizer import normalize_messages
from azure_gateway.providers import _common, get_provider
from azure_gateway.sanitize import sanitize_error, sanitize_log_message

# .env first, so LOG_LEVEL and AZURE_* from the file are visible below
load_env()

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("azure_gateway")

# ---------------- App init ----------------
app = FastAPI(title="Azure OpenAI Gateway", version=__version__)

CHAT_CORS_HEADERS = _common.CORS_HEADERS
MODELS_CORS_HEADERS = {**_common.CORS_HEADERS, "Access-Control-Allow-Methods": "GET, OPTIONS"}


def _log_sanitized(level: int, message: str, *args: Any) -> None:
    msg, clean = sanitize_log_message(message, *args)
    logger.log(level, msg + " %s" * len(clean), *clean)


def _openai_error(exc: BaseException, secrets: Iterable[Optional[str]] = ()) -> JSONResponse:
    safe = sanitize_error(exc, secrets=secrets)
    status, code, message = classify_error(safe)
    logger.error("[GATEWAY] %s: %s", code, safe)
    return JSONResponse(error_body(message, code), status_code=status)


def _malformed(exc: MalformedRequestError) -> JSONResponse:
    return JSONResponse(
        error_body(str(exc), exc.code, type_="invalid_request_error", param=exc.param),
        status_code=400,
    )


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as e:
        raise MalformedRequestError("Invalid request: body must be valid JSON", "body", "invalid_json") from e


def _require_conversation(body: Dict[str, Any]):
    messages = normalize_messages(body)
    if messages is None:
        raise MalformedRequestError("Invalid request: messages array is required", "messages", "missing_messages")
    model = body.get("model")
    if not isinstance(model, str) or not model.strip():
        raise MalformedRequestError("Invalid request: model is required", "model", "missing_model")
    return messages, model


async def _proxy(body: Dict[str, Any], messages, config: AzureConfig, stream: bool):
    provider = get_provider(config.model_type)
    client = _common.build_http_client()
    if stream:
        # the stream relay owns the client from here on
        return await provider.forward_stream(client, body, messages, config)
    try:
        return await provider.forward(client, body, messages, config)
    finally:
        await client.aclose()


# ---------------- API Endpoints ----------------
@app.get("/", response_model=dict)
async def root():
    return {
        "ok": True,
        "now": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "host": socket.gethostname(),
        "message": "Azure OpenAI gateway running",
        "routes": ["/v1/chat/completions", "/v1/models", "/api/models/info", "/api/config", "/api/chat"],
    }


@app.get("/health", response_model=dict)
async def health():
    return {"ok": True, "now": datetime.datetime.now(datetime.timezone.utc).isoformat(), "message": "OK"}


@app.post("/v1/chat/completions")
async def chat_completions(request: Request):
    config: Optional[AzureConfig] = None
    try:
        raw = await _read_json(request)
        body = raw if isinstance(raw, dict) else {}
        _log_sanitized(logging.DEBUG, "[GATEWAY] Incoming /v1/chat/completions body:", body)

        messages, model = _require_conversation(body)

        config = get_azure_config(model)
        validate_config(config)
        logger.info(
            "[GATEWAY] model=%s deployment=%s type=%s stream=%s messages=%d",
            model, config.deployment_name, config.model_type, bool(body.get("stream")), len(messages),
        )

        if body.get("stream"):
            return await _proxy(body, messages, config, stream=True)
        result = await _proxy(body, messages, config, stream=False)
        return JSONResponse(result, headers=CHAT_CORS_HEADERS)
    except MalformedRequestError as e:
        return _malformed(e)
    except Exception as e:
        return _openai_error(e, secrets=[config.api_key] if config else ())


@app.options("/v1/chat/completions")
async def chat_completions_options():
    return Response(status_code=200, headers=CHAT_CORS_HEADERS)


@app.get("/v1/models")
async def list_models():
    try:
        names = get_all_configured_models()
    except Exception as e:
        safe = sanitize_error(e)
        logger.error("[GATEWAY] Error in /v1/models: %s", safe)
        return JSONResponse(
            error_body(safe or "Failed to get models", "configuration_error"),
            status_code=500,
        )
    created = int(time.time())
    return JSONResponse(
        {
            "object": "list",
            "data": [{"id": n, "object": "model", "created": created, "owned_by": "azure-openai"} for n in names],
        },
        headers=MODELS_CORS_HEADERS,
    )


@app.options("/v1/models")
async def list_models_options():
    return Response(status_code=200, headers=MODELS_CORS_HEADERS)


@app.get("/api/models/info")
async def models_info():
    info = []
    for name in get_all_configured_models():
        try:
            model_type = get_azure_config(name).model_type
        except GatewayError:
            model_type = MODEL_TYPE_CHAT
        info.append({"id": name, "name": name, "type": model_type})
    return {"models": info}


# config editor: shows real values, so nothing here is sanitized
@app.get("/api/config")
async def get_config():
    return read_file_config()


@app.post("/api/config")
async def update_config(request: Request):
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        return JSONResponse({"error": "Invalid config format"}, status_code=400)
    try:
        saved = save_file_config(payload)
    except OSError as e:
        logger.error("[CONFIG] Error saving config: %s", e)
        return JSONResponse({"error": str(e) or "Failed to save config file"}, status_code=500)
    return {"success": True, "message": "Config saved successfully", "config": saved}


@app.post("/api/chat")
async def simple_chat(request: Request):
    """Non-streaming chat against the default deployment."""
    config: Optional[AzureConfig] = None
    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict) or not isinstance(body.get("messages"), list):
        return JSONResponse({"error": "Invalid request: messages array is required"}, status_code=400)
    if not body.get("model"):
        return JSONResponse({"error": "Invalid request: model is required"}, status_code=400)

    try:
        config = get_azure_config()
        validate_config(config)
        result = await _proxy(body, body["messages"], config, stream=False)
        return JSONResponse(result)
    except Exception as e:
        safe = sanitize_error(e, secrets=[config.api_key] if config else ())
        status, code, message = classify_error(safe)
        logger.error("[GATEWAY] Error in /api/chat: %s", safe)
        return JSONResponse({"error": message}, status_code=status)


@app.options("/api/chat")
async def simple_chat_options():
    return Response(status_code=200, headers=CHAT_CORS_HEADERS)


if __name__ == "__main__":
    uvicorn.run("azure_gateway.main:app", host="127.0.0.1", port=8100, log_level="info")
