# normalizer.py
"""
Recover the chat message list from loosely shaped request bodies.

Clients do not agree on where the conversation lives. Some send a proper
`messages` array, others send a Responses-style `input` (string, list of
strings, or list of content-block messages), and some wrap either of those in
`data`, `payload`, `request`, `inputs` or `params`. The body is probed along
CANDIDATE_PATHS in order; each candidate goes through CLASSIFIERS in order and
the first one that yields at least one turn wins.
"""
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger("azure_gateway.normalizer")

Message = Dict[str, Any]

# priority order matters: several of these can be present at once
CANDIDATE_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("input",),
    ("messages",),
    ("prompt",),
    ("text",),
    ("data", "messages"),
    ("data", "input"),
    ("payload", "messages"),
    ("payload", "input"),
    ("request", "messages"),
    ("request", "input"),
    ("inputs", "messages"),
    ("inputs", "input"),
    ("params", "messages"),
)


def _text_of_part(item: Any) -> str:
    if isinstance(item, str):
        return item
    if not isinstance(item, dict):
        return ""
    for key in ("text", "content", "input_text", "value"):
        if isinstance(item.get(key), str):
            return item[key]
    for key in ("text", "content"):
        nested = item.get(key)
        if isinstance(nested, dict) and isinstance(nested.get("value"), str):
            return nested["value"]
    return ""


def _join_parts(parts: List[Any]) -> str:
    return "\n".join(t for t in (_text_of_part(p) for p in parts) if t)


def extract_text(content: Any) -> str:
    """Flatten the many shapes a message's content can take into plain text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return _join_parts(content)
    if isinstance(content, dict):
        if isinstance(content.get("content"), list):
            return _join_parts(content["content"])
        return _text_of_part(content)
    return ""


def _first_present(item: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if item.get(k) is not None:
            return item[k]
    return None


def _turn_from_item(item: Any) -> Optional[Message]:
    if not isinstance(item, dict):
        return None
    nested = item.get("message") if isinstance(item.get("message"), dict) else {}
    role = item.get("role") if item.get("role") is not None else nested.get("role")
    source = _first_present(item, "content", "text")
    if source is None:
        source = nested.get("content")
    if source is None:
        source = _first_present(item, "input", "parts")
    text = extract_text(source)
    if not role or not text:
        return None
    return {"role": role, "content": text}


# ---------------- classifiers ----------------
def _from_string(candidate: Any) -> Optional[List[Message]]:
    if isinstance(candidate, str) and candidate.strip():
        return [{"role": "user", "content": candidate}]
    return None


def _from_turn_list(candidate: Any) -> Optional[List[Message]]:
    if not isinstance(candidate, list):
        return None
    turns = [t for t in (_turn_from_item(item) for item in candidate) if t]
    return turns or None


def _from_string_list(candidate: Any) -> Optional[List[Message]]:
    if isinstance(candidate, list) and candidate and all(isinstance(s, str) for s in candidate):
        return [{"role": "user", "content": "\n".join(candidate)}]
    return None


def _from_wrapper(candidate: Any) -> Optional[List[Message]]:
    if not isinstance(candidate, dict):
        return None
    for key in ("messages", "input"):
        if isinstance(candidate.get(key), list):
            return classify(candidate[key])
    return None


def _from_role_object(candidate: Any) -> Optional[List[Message]]:
    if isinstance(candidate, dict) and candidate.get("role") is not None:
        turn = _turn_from_item(candidate)
        return [turn] if turn else None
    return None


CLASSIFIERS: Tuple[Callable[[Any], Optional[List[Message]]], ...] = (
    _from_string,
    _from_turn_list,
    _from_string_list,
    _from_wrapper,
    _from_role_object,
)


def classify(candidate: Any) -> Optional[List[Message]]:
    if candidate is None:
        return None
    for fn in CLASSIFIERS:
        turns = fn(candidate)
        if turns:
            return turns
    return None


def _dig(body: Dict[str, Any], path: Tuple[str, ...]) -> Any:
    cur: Any = body
    for key in path:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _is_turn_like(item: Any) -> bool:
    if not isinstance(item, dict):
        return False
    role = item.get("role")
    if not isinstance(role, str) or not role:
        return False
    # tool-call turns usually carry "" or None content
    if item.get("tool_calls"):
        return True
    content = item.get("content")
    if isinstance(content, str):
        return bool(content)
    if isinstance(content, list):
        return bool(content)
    if isinstance(content, dict):
        return bool(extract_text(content))
    return False


def normalize_messages(body: Any) -> Optional[List[Message]]:
    """
    Return the conversation carried by `body`, or None when there is none.

    A well-formed `messages` array is returned as-is (shallow copies, so
    tool-call fields survive). The body is never mutated.
    """
    if not isinstance(body, dict):
        return None

    messages = body.get("messages")
    if isinstance(messages, list) and messages and all(_is_turn_like(m) for m in messages):
        return [dict(m) for m in messages]

    for path in CANDIDATE_PATHS:
        candidate = _dig(body, path)
        if candidate is None:
            continue
        turns = classify(candidate)
        logger.debug(
            "[NORMALIZE] %s %s -> %d turn(s)", ".".join(path), summarize_candidate(candidate), len(turns or [])
        )
        if turns:
            return turns

    # a messages array was sent but nothing usable was in it
    if isinstance(messages, list):
        return [dict(m) if isinstance(m, dict) else m for m in messages]
    return None


def summarize_candidate(candidate: Any) -> Dict[str, Any]:
    """Shape description of a candidate, safe for debug logs."""
    if isinstance(candidate, list):
        return {"type": "array", "length": len(candidate)}
    if isinstance(candidate, dict):
        return {"type": "object", "keys": list(candidate.keys())[:10]}
    return {"type": type(candidate).__name__}
