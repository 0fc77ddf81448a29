# sanitize.py
"""
Secret redaction for log lines and error messages.

Everything that leaves the gateway as error text, and every request body we
log, goes through here first.
"""
import json
import re
from typing import Any, Iterable, List, Optional, Tuple

REDACTED_MARKER = "[REDACTED]"

# matched case-insensitively as substrings of the field name
SENSITIVE_FIELDS = (
    "apikey",
    "api-key",
    "api_key",
    "authorization",
    "token",
    "access_token",
    "access-token",
    "secret",
    "password",
    "passwd",
    "pwd",
)

_API_KEY_ASSIGN_RE = re.compile(r"""(['"]?api[-_]?key['"]?\s*[:=]\s*['"]?)([^'",}\s]+)""", re.IGNORECASE)
_HEADER_RE = re.compile(r"""(authorization|api[-_]?key)\s*[:=]\s*['"]?(?:bearer\s+)?([^'",}\s]+)""", re.IGNORECASE)
_TOKEN_ASSIGN_RE = re.compile(r"""(['"]?token['"]?\s*[:=]\s*['"]?)([^'",}\s]+)""", re.IGNORECASE)
# sk-..., ek-... style keys
_KEY_SHAPED_RE = re.compile(r"\b[a-z]{2}-[a-z0-9]{20,}\b", re.IGNORECASE)


def is_sensitive_field(name: str, extra: Iterable[str] = ()) -> bool:
    lower = name.lower()
    return any(f in lower for f in SENSITIVE_FIELDS) or any(f.lower() in lower for f in extra)


def mask_value(value: str) -> str:
    """Keep the first and last four characters of long values."""
    if not value or len(value) <= 8:
        return REDACTED_MARKER
    return value[:4] + "*" * (len(value) - 8) + value[-4:]


def _hide(value: str, mask: bool) -> str:
    return mask_value(value) if mask else REDACTED_MARKER


def sanitize_string(text: Any, mask: bool = False, secrets: Iterable[Optional[str]] = ()) -> Any:
    """
    Redact credentials found in free text.

    `secrets` are literal values (for example the configured API key) that are
    removed wherever they occur, whatever their shape.
    """
    if not text or not isinstance(text, str):
        return text

    out = text
    for s in secrets:
        if s:
            out = out.replace(s, REDACTED_MARKER)

    out = _API_KEY_ASSIGN_RE.sub(lambda m: m.group(1) + _hide(m.group(2), mask), out)
    out = _HEADER_RE.sub(lambda m: f"{m.group(1)}: {_hide(m.group(2), mask)}", out)
    out = _TOKEN_ASSIGN_RE.sub(lambda m: m.group(1) + _hide(m.group(2), mask), out)
    out = _KEY_SHAPED_RE.sub(lambda m: _hide(m.group(0), mask), out)
    return out


def sanitize_object(obj: Any, mask: bool = False, fields: Iterable[str] = ()) -> Any:
    """Return a copy of `obj` with values under sensitive keys redacted. The input is not modified."""
    fields = tuple(fields)
    if isinstance(obj, dict):
        out = {}
        for k, v in obj.items():
            if isinstance(k, str) and is_sensitive_field(k, fields):
                if isinstance(v, str):
                    out[k] = _hide(v, mask)
                elif v is not None:
                    out[k] = REDACTED_MARKER
                else:
                    out[k] = v
            else:
                out[k] = sanitize_object(v, mask, fields)
        return out
    if isinstance(obj, list):
        return [sanitize_object(v, mask, fields) for v in obj]
    return obj


def sanitize_error(error: Any, secrets: Iterable[Optional[str]] = ()) -> str:
    if error is None or error == "":
        return "Unknown error"
    if isinstance(error, BaseException):
        return sanitize_string(str(error), secrets=secrets) or error.__class__.__name__
    if isinstance(error, str):
        return sanitize_string(error, secrets=secrets)
    if isinstance(error, (dict, list)):
        try:
            return sanitize_string(json.dumps(error), secrets=secrets)
        except (TypeError, ValueError):
            return REDACTED_MARKER
    return str(error)


def sanitize_log_message(message: str, *args: Any) -> Tuple[str, List[Any]]:
    """Sanitize a log message and its arguments (strings and JSON-like objects)."""
    clean: List[Any] = []
    for a in args:
        if isinstance(a, str):
            clean.append(sanitize_string(a))
        elif isinstance(a, (dict, list)):
            clean.append(sanitize_object(a))
        else:
            clean.append(a)
    return sanitize_string(message), clean
