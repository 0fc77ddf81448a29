# providers/azure_responses.py
"""
Codex mode: Azure OpenAI Responses API (/openai/responses).

Requests are rewritten from chat `messages` into the structured `input`
array. Responses come back in several shapes depending on the API version and
deployment; they are mapped back into chat.completion / chat.completion.chunk
objects so chat-completions clients can consume them unchanged.
"""
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx

from azure_gateway.errors import error_body
from azure_gateway.load_config import AzureConfig
from azure_gateway.normalizer import extract_text
from azure_gateway.providers._common import (
    SSE_DONE,
    base_url,
    format_sse_data,
    forward_streaming,
    post_json,
    strip_unsupported_params,
)
from azure_gateway.sanitize import sanitize_string

logger = logging.getLogger("azure_gateway.providers.responses")

DEFAULT_RESPONSES_API_VERSION = "2025-04-01-preview"
DEFAULT_MAX_OUTPUT_TOKENS = 16384

_NOT_FORWARDED = ("model", "messages", "max_tokens", "stream", "input")


# ---------------- request ----------------
def build_url(config: AzureConfig) -> str:
    version = config.api_version or DEFAULT_RESPONSES_API_VERSION
    return f"{base_url(config)}/openai/responses?api-version={version}"


def build_headers(config: AzureConfig) -> Dict[str, str]:
    return {"Content-Type": "application/json", "Authorization": f"Bearer {config.api_key}"}


def messages_to_input(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "role": m.get("role"),
            "content": [{"type": "input_text", "text": extract_text(m.get("content"))}],
        }
        for m in messages
        if isinstance(m, dict)
    ]


def build_body(
    data: Dict[str, Any], messages: List[Dict[str, Any]], config: AzureConfig, stream: bool = False
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "input": messages_to_input(messages),
        "model": config.deployment_name,
    }
    body.update({k: v for k, v in data.items() if k not in _NOT_FORWARDED})
    strip_unsupported_params(body)

    if data.get("max_tokens") is not None:
        body["max_output_tokens"] = data["max_tokens"]
    elif not body.get("max_output_tokens"):
        body["max_output_tokens"] = DEFAULT_MAX_OUTPUT_TOKENS

    if stream:
        body["stream"] = True
    elif data.get("stream") is not None:
        body["stream"] = data["stream"]
    return body


# ---------------- blocking response ----------------
class ResponseShape(str, Enum):
    OUTPUT_ARRAY = "output_array"
    OUTPUT_TEXT = "output_text"
    CHOICES = "choices"
    TOP_LEVEL_OUTPUT = "top_level_output"
    UNRECOGNIZED = "unrecognized"


def _first_str(*values: Any) -> str:
    for v in values:
        if isinstance(v, str) and v:
            return v
    return ""


def extract_output_text(output: Any) -> str:
    """Text of a Responses API `output` array (or single item), joined with newlines."""
    if not output:
        return ""
    items = output if isinstance(output, list) else [output]
    texts: List[str] = []
    for item in items:
        if isinstance(item, str):
            texts.append(item)
            continue
        if not isinstance(item, dict):
            continue
        if item.get("type") == "message" and isinstance(item.get("content"), list):
            for block in item["content"]:
                if (
                    isinstance(block, dict)
                    and block.get("type") in ("output_text", "text")
                    and isinstance(block.get("text"), str)
                ):
                    texts.append(block["text"])
            continue
        if isinstance(item.get("text"), str):
            texts.append(item["text"])
        elif isinstance(item.get("content"), str):
            texts.append(item["content"])
    return "\n".join(t for t in texts if t)


def detect_shape(resp: Dict[str, Any]) -> ResponseShape:
    output = resp.get("output")
    if isinstance(output, list) and output:
        return ResponseShape.OUTPUT_ARRAY
    if resp.get("output_text"):
        return ResponseShape.OUTPUT_TEXT
    choices = resp.get("choices")
    if isinstance(choices, list) and choices:
        return ResponseShape.CHOICES
    if output is not None:
        return ResponseShape.TOP_LEVEL_OUTPUT
    return ResponseShape.UNRECOGNIZED


def map_usage(usage: Any) -> Dict[str, int]:
    usage = usage if isinstance(usage, dict) else {}

    def pick(*keys: str) -> int:
        for k in keys:
            if usage.get(k) is not None:
                return usage[k]
        return 0

    prompt = pick("input_tokens", "prompt_tokens")
    completion = pick("output_tokens", "completion_tokens")
    total = usage.get("total_tokens") or prompt + completion
    return {"prompt_tokens": prompt, "completion_tokens": completion, "total_tokens": total}


def _finish_reason(resp: Dict[str, Any]) -> str:
    if resp.get("finish_reason"):
        return resp["finish_reason"]
    details = resp.get("incomplete_details")
    if resp.get("status") == "incomplete" and isinstance(details, dict) and details.get("reason") == "max_output_tokens":
        return "length"
    return "stop"


def _single_choice(content: str, resp: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [
        {
            "index": 0,
            "message": {"role": "assistant", "content": content},
            "finish_reason": _finish_reason(resp),
        }
    ]


def _map_output_array(resp: Dict[str, Any]) -> List[Dict[str, Any]]:
    return _single_choice(extract_output_text(resp["output"]), resp)


def _map_output_text(resp: Dict[str, Any]) -> List[Dict[str, Any]]:
    value = resp["output_text"]
    if isinstance(value, str):
        content = value
    elif isinstance(value, dict):
        content = _first_str(value.get("text"), value.get("content"))
    else:
        content = ""
    return _single_choice(content, resp)


def _choice_text(choice: Dict[str, Any]) -> str:
    message = choice.get("message")
    if isinstance(message, dict) and message.get("content"):
        return extract_text(message["content"])
    if "output" in choice:
        output = choice["output"]
        if isinstance(output, str):
            return output
        if isinstance(output, dict):
            return _first_str(output.get("text"), output.get("content"), output.get("message"))
        return ""
    if "content" in choice:
        return choice["content"] if isinstance(choice["content"], str) else ""
    if "text" in choice:
        return choice["text"] if isinstance(choice["text"], str) else ""
    delta = choice.get("delta")
    if isinstance(delta, dict) and isinstance(delta.get("content"), str):
        return delta["content"]
    if isinstance(message, str):
        return message
    return ""


def _map_choices(resp: Dict[str, Any]) -> List[Dict[str, Any]]:
    out = []
    for idx, choice in enumerate(resp["choices"]):
        if not isinstance(choice, dict):
            choice = {}
        message = choice.get("message")
        role = message.get("role") if isinstance(message, dict) and message.get("role") else "assistant"
        out.append(
            {
                "index": choice.get("index", idx),
                "message": {"role": role, "content": _choice_text(choice)},
                "finish_reason": choice.get("finish_reason") or "stop",
            }
        )
    return out


def _map_top_level_output(resp: Dict[str, Any]) -> List[Dict[str, Any]]:
    output = resp["output"]
    content = ""
    if isinstance(output, str):
        content = output
    elif isinstance(output, dict):
        nested = ""
        choices = output.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            msg = choices[0].get("message")
            if isinstance(msg, dict):
                nested = msg.get("content")
        content = _first_str(output.get("text"), output.get("content"), output.get("message"), nested)
    return _single_choice(content, resp)


def _map_unrecognized(resp: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [{"index": 0, "message": {"role": "assistant", "content": ""}, "finish_reason": "stop"}]


SHAPE_MAPPERS: Dict[ResponseShape, Callable[[Dict[str, Any]], List[Dict[str, Any]]]] = {
    ResponseShape.OUTPUT_ARRAY: _map_output_array,
    ResponseShape.OUTPUT_TEXT: _map_output_text,
    ResponseShape.CHOICES: _map_choices,
    ResponseShape.TOP_LEVEL_OUTPUT: _map_top_level_output,
    ResponseShape.UNRECOGNIZED: _map_unrecognized,
}


def to_chat_response(resp: Dict[str, Any], model: str) -> Dict[str, Any]:
    """Map any supported Responses API body to a chat.completion object."""
    if not isinstance(resp, dict):
        resp = {}
    shape = detect_shape(resp)
    now = int(time.time())
    response_id = resp.get("id") or f"resp_{int(time.time() * 1000)}"

    if shape is ResponseShape.UNRECOGNIZED:
        logger.warning(
            "[RESPONSES] Unexpected response format for %s: %s",
            response_id,
            sanitize_string(str(resp))[:300],
        )
        usage = {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
    else:
        usage = map_usage(resp.get("usage"))

    choices = SHAPE_MAPPERS[shape](resp)
    if usage["completion_tokens"] and not any(c["message"]["content"] for c in choices):
        logger.warning(
            "[RESPONSES] Response %s reports %s output tokens but no text (shape=%s, keys=%s)",
            response_id,
            usage["completion_tokens"],
            shape.value,
            list(resp.keys())[:10],
        )

    created = now
    if shape is not ResponseShape.UNRECOGNIZED:
        created = resp.get("created") or resp.get("created_at") or now
    return {
        "id": response_id,
        "object": "chat.completion",
        "created": created,
        "model": model,
        "choices": choices,
        "usage": usage,
    }


async def forward(
    client: httpx.AsyncClient, data: Dict[str, Any], messages: List[Dict[str, Any]], config: AzureConfig
) -> Dict[str, Any]:
    body = build_body(data, messages, config)
    result = await post_json(client, build_url(config), build_headers(config), body, config)
    return to_chat_response(result, data.get("model") or config.deployment_name)


# ---------------- streaming ----------------
def rewrite_codex_frame(payload: Dict[str, Any], model: str) -> Dict[str, Any]:
    """
    Rewrite one completions-style chunk into chat.completion.chunk shape.

    `choices[].text` moves into `choices[].delta.content`; a placeholder
    assistant `message` is added for clients that read that field instead.
    """
    payload["model"] = model
    choices = payload.get("choices")
    if not isinstance(choices, list):
        return payload
    for choice in choices:
        if not isinstance(choice, dict):
            continue
        if "text" in choice and choice.get("delta") is None:
            choice["delta"] = {"content": choice.pop("text")}
        if choice.get("message") is None:
            choice["message"] = {"role": "assistant", "content": ""}
    payload["object"] = "chat.completion.chunk"
    return payload


class ResponsesStreamAccumulator:
    """
    Per-stream state for turning a Responses API stream into chat chunks.

    Handles both completions-style frames (rewritten in place) and typed
    `response.*` events (reassembled into chunks). Lives for one stream.
    """

    def __init__(self, model: str):
        self.model = model
        self.response_id: Optional[str] = None
        self.created = int(time.time())
        self.saw_content = False
        self.saw_events = False

    def _chunk(self, delta: Dict[str, Any], finish_reason: Optional[str] = None) -> Dict[str, Any]:
        return {
            "id": self.response_id or f"chatcmpl-{self.created}",
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }

    def _remember_response(self, response: Any) -> None:
        if not isinstance(response, dict):
            return
        if isinstance(response.get("id"), str) and response["id"]:
            self.response_id = response["id"]
        created = response.get("created_at") or response.get("created")
        if isinstance(created, (int, float)):
            self.created = int(created)

    def _from_event(self, event_type: str, event: Dict[str, Any]) -> List[str]:
        self.saw_events = True

        if event_type in ("response.created", "response.in_progress"):
            self._remember_response(event.get("response"))
            return []

        if event_type == "response.output_text.delta":
            text = event.get("delta")
            if not isinstance(text, str) or not text:
                return []
            # role goes on the first content chunk only
            delta: Dict[str, Any] = {"content": text} if self.saw_content else {"role": "assistant", "content": text}
            self.saw_content = True
            return [format_sse_data(self._chunk(delta))]

        if event_type in ("response.completed", "response.incomplete"):
            response = event.get("response") if isinstance(event.get("response"), dict) else {}
            self._remember_response(response)
            delta = {} if self.saw_content else {"role": "assistant", "content": ""}
            chunk = self._chunk(delta, _finish_reason(response))
            chunk["usage"] = map_usage(response.get("usage"))
            return [format_sse_data(chunk)]

        if event_type in ("response.failed", "error"):
            response = event.get("response") if isinstance(event.get("response"), dict) else {}
            err = response.get("error") or event.get("error") or event
            message = err.get("message") if isinstance(err, dict) else str(err)
            safe = sanitize_string(str(message or "Responses stream failed"))
            logger.error("[RESPONSES] stream reported failure: %s", safe)
            return [format_sse_data(error_body(safe, "azure_api_error"))]

        # lifecycle events without a chat counterpart
        return []

    def transform(self, payload: Dict[str, Any]) -> List[str]:
        event_type = payload.get("type")
        if isinstance(event_type, str) and (event_type.startswith("response.") or event_type == "error"):
            return self._from_event(event_type, payload)
        frame = rewrite_codex_frame(payload, self.model)
        for choice in frame.get("choices") or []:
            if isinstance(choice, dict) and isinstance(choice.get("delta"), dict) and choice["delta"].get("content"):
                self.saw_content = True
        return [format_sse_data(frame)]

    def on_close(self, saw_done: bool) -> List[str]:
        # the event protocol has no [DONE]; chat clients wait for one
        if self.saw_events and not saw_done:
            return [SSE_DONE]
        return []


async def forward_stream(
    client: httpx.AsyncClient, data: Dict[str, Any], messages: List[Dict[str, Any]], config: AzureConfig
):
    body = build_body(data, messages, config, stream=True)
    acc = ResponsesStreamAccumulator(data.get("model") or config.deployment_name)
    return await forward_streaming(
        client,
        build_url(config),
        build_headers(config),
        body,
        config,
        transform=acc.transform,
        on_close=acc.on_close,
    )
