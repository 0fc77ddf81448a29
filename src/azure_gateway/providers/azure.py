# providers/azure.py
"""Chat mode: Azure OpenAI /chat/completions deployments."""
from typing import Any, Dict, List

import httpx

from azure_gateway.load_config import AzureConfig, DEFAULT_CHAT_API_VERSION
from azure_gateway.providers._common import (
    base_url,
    format_sse_data,
    forward_streaming,
    post_json,
    strip_unsupported_params,
)


def build_url(config: AzureConfig) -> str:
    version = config.api_version or DEFAULT_CHAT_API_VERSION
    return f"{base_url(config)}/openai/deployments/{config.deployment_name}/chat/completions?api-version={version}"


def build_headers(config: AzureConfig) -> Dict[str, str]:
    return {"Content-Type": "application/json", "api-key": config.api_key}


def build_body(data: Dict[str, Any], messages: List[Dict[str, Any]], stream: bool = False) -> Dict[str, Any]:
    # the deployment in the URL selects the model
    body = {k: v for k, v in data.items() if k not in ("model", "input")}
    body["messages"] = messages
    if stream:
        body["stream"] = True
    return strip_unsupported_params(body)


async def forward(
    client: httpx.AsyncClient, data: Dict[str, Any], messages: List[Dict[str, Any]], config: AzureConfig
) -> Dict[str, Any]:
    body = build_body(data, messages)
    result = await post_json(client, build_url(config), build_headers(config), body, config)
    result["model"] = data.get("model") or config.deployment_name
    return result


def rewrite_frame(payload: Dict[str, Any], model: str) -> str:
    payload["model"] = model
    return format_sse_data(payload)


async def forward_stream(
    client: httpx.AsyncClient, data: Dict[str, Any], messages: List[Dict[str, Any]], config: AzureConfig
):
    body = build_body(data, messages, stream=True)
    model = data.get("model") or config.deployment_name
    return await forward_streaming(
        client,
        build_url(config),
        build_headers(config),
        body,
        config,
        transform=lambda payload: [rewrite_frame(payload, model)],
    )
