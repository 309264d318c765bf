"""
Terminal wire protocol — tagged JSON messages over one connection.

Client -> server:
    {"type": "input", "data": "<keystrokes>"}
    {"type": "resize", "cols": 100, "rows": 40}

Server -> client:
    {"type": "status", "message": "..."}
    {"type": "ready"}
    {"type": "output", "data": "..."}
    {"type": "error", "message": "..."}

Anything the client sends that is not one of the two known shapes parses to
None and is dropped. Browsers and proxies send keepalives; they are not errors.
"""

import json
from dataclasses import dataclass
from typing import Optional, Union


@dataclass
class InputMessage:
    """Keystrokes or pasted text for the terminal."""
    data: str


@dataclass
class ResizeMessage:
    """New terminal geometry."""
    cols: int
    rows: int


ClientMessage = Union[InputMessage, ResizeMessage]


def _positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def parse_client_message(raw: Union[str, bytes, None]) -> Optional[ClientMessage]:
    """
    Parse one inbound frame.

    Returns:
        InputMessage, ResizeMessage, or None for anything unusable
        (empty, not JSON, not an object, unknown type, missing fields)
    """
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if not raw.strip():
        return None

    try:
        msg = json.loads(raw)
    except (ValueError, RecursionError):
        # RecursionError: nesting deeper than the decoder's stack allows
        return None
    if not isinstance(msg, dict):
        return None

    kind = msg.get("type")
    if kind == "input":
        data = msg.get("data")
        if isinstance(data, str):
            return InputMessage(data=data)
    elif kind == "resize":
        cols, rows = msg.get("cols"), msg.get("rows")
        if _positive_int(cols) and _positive_int(rows):
            return ResizeMessage(cols=cols, rows=rows)
    return None


def status(message: str) -> str:
    return json.dumps({"type": "status", "message": message})


def ready() -> str:
    return json.dumps({"type": "ready"})


def output(data: str) -> str:
    return json.dumps({"type": "output", "data": data})


def error(message: str) -> str:
    return json.dumps({"type": "error", "message": message})
