"""Unwrapping of the JSON envelopes the Gateway wraps its results in.

List endpoints answer with one of a few known shapes::

    [...]
    {"data": [...]}
    {"data": {"data": [...]}}
    {"data": {"items": [...]}}
    {"items": [...]}

``unwrap_rows`` tries them in that order and raises ``EnvelopeError`` when
none fits, so callers branch on a single exception instead of probing dicts.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union


class EnvelopeError(ValueError):
    def __init__(self, reason: str, detail: str = ""):
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail


@dataclass
class Rows:
    items: List[Dict[str, Any]] = field(default_factory=list)
    shape: str = "data"
    total: Optional[int] = None
    has_more: Optional[bool] = None

    def __len__(self) -> int:
        return len(self.items)

    def __bool__(self) -> bool:
        return bool(self.items)


_LIST_SHAPES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("data", ("data",)),
    ("data.data", ("data", "data")),
    ("data.items", ("data", "items")),
    ("items", ("items",)),
)


def parse_json(body: Union[bytes, str]) -> Any:
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    if not body.strip():
        raise EnvelopeError("empty_body")
    try:
        return json.loads(body)
    except json.JSONDecodeError as exc:
        raise EnvelopeError("invalid_json", str(exc)) from exc


def _dig(payload: Any, keys: Tuple[str, ...]) -> Tuple[bool, Any]:
    node = payload
    for key in keys:
        if not isinstance(node, dict) or key not in node:
            return False, None
        node = node[key]
    return True, node


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _pagination_meta(payload: Any) -> Tuple[Optional[int], Optional[bool]]:
    total: Optional[int] = None
    has_more: Optional[bool] = None
    candidates = [payload]
    if isinstance(payload, dict):
        for key in ("pagination", "meta", "data"):
            if isinstance(payload.get(key), dict):
                candidates.append(payload[key])
    for node in candidates:
        if not isinstance(node, dict):
            continue
        if total is None:
            total = _as_int(node.get("total"))
        if has_more is None and isinstance(node.get("has_more"), bool):
            has_more = node["has_more"]
    return total, has_more


def unwrap_rows(payload: Any) -> Rows:
    if isinstance(payload, list):
        return Rows(items=[r for r in payload if isinstance(r, dict)], shape="list")
    if not isinstance(payload, dict):
        raise EnvelopeError("unexpected_shape", type(payload).__name__)
    for shape, keys in _LIST_SHAPES:
        found, value = _dig(payload, keys)
        if not found:
            continue
        # A null list is how some endpoints say "no rows".
        if value is None or isinstance(value, list):
            total, has_more = _pagination_meta(payload)
            items = [r for r in (value or []) if isinstance(r, dict)]
            return Rows(items=items, shape=shape, total=total, has_more=has_more)
    raise EnvelopeError("no_rows", ",".join(sorted(payload.keys())))


def unwrap_body(body: Union[bytes, str]) -> Rows:
    return unwrap_rows(parse_json(body))


def unwrap_object(payload: Any) -> Dict[str, Any]:
    """Return the record inside ``{"data": {...}}``, or the payload itself."""
    if isinstance(payload, dict):
        inner = payload.get("data")
        if isinstance(inner, dict):
            return inner
        return payload
    raise EnvelopeError("unexpected_shape", type(payload).__name__)
