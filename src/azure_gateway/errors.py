# errors.py
import re
from typing import Optional, Tuple

AZURE_API_ERROR_PREFIX = "Azure OpenAI API error"

_STATUS_RE = re.compile(r"\b(\d{3})\b")


class GatewayError(Exception):
    """Base class for errors raised while handling a proxied request."""


class MalformedRequestError(GatewayError):
    """The inbound body is missing messages or model."""

    def __init__(self, message: str, param: str, code: str):
        super().__init__(message)
        self.param = param
        self.code = code


class ConfigurationError(GatewayError):
    """The resolved Azure configuration is missing or unusable."""


class AzureAPIError(GatewayError):
    """Azure answered with a non-2xx status. `body` is already sanitized."""

    def __init__(self, status_code: int, reason: str, body: str):
        self.status_code = status_code
        self.reason = reason
        self.body = body
        super().__init__(f"{AZURE_API_ERROR_PREFIX}: {status_code} {reason}. {body}".rstrip())


def extract_status(message: str) -> Optional[int]:
    """First three-digit number after the API error prefix, if it is an HTTP status."""
    idx = message.find(AZURE_API_ERROR_PREFIX)
    tail = message[idx + len(AZURE_API_ERROR_PREFIX):] if idx >= 0 else message
    m = _STATUS_RE.search(tail)
    if not m:
        return None
    status = int(m.group(1))
    if 100 <= status <= 599:
        return status
    return None


def classify_error(safe_message: str) -> Tuple[int, str, str]:
    """
    Map an already sanitized error message to (status, code, outward message).

    Classification looks only at the text, so untyped exceptions raised by
    lower layers are mapped the same way as our own.
    """
    if AZURE_API_ERROR_PREFIX in safe_message:
        return extract_status(safe_message) or 500, "azure_api_error", safe_message
    if "configuration" in safe_message or "required" in safe_message or "valid URL" in safe_message:
        return 500, "configuration_error", safe_message
    return 500, "internal_error", "Internal server error"


def error_body(message: str, code: str, type_: str = "server_error", param: Optional[str] = None) -> dict:
    err = {"message": message, "type": type_, "code": code}
    if param is not None:
        err["param"] = param
    return {"error": err}
