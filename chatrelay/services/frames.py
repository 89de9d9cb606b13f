"""Line-framed data stream used on the chat response body.

Each line is ``<kind>:<json>``:

- ``0:"text"``: a text delta
- ``3:{"message": ..., "code": ...}``: an error after streaming started
- ``d:{"finishReason": "stop"}``: the stream completed normally
"""

from __future__ import annotations

import json
from typing import Any, NamedTuple

TEXT = "0"
ERROR = "3"
FINISH = "d"

STREAM_HEADER = "X-Chat-Stream"
STREAM_VERSION = "v1"


class Frame(NamedTuple):
    kind: str
    value: Any


def encode_text(text: str) -> str:
    return f"{TEXT}:{json.dumps(text, ensure_ascii=False)}\n"


def encode_error(message: str, code: str = "stream_interrupted") -> str:
    return f"{ERROR}:{json.dumps({'message': message, 'code': code}, ensure_ascii=False)}\n"


def encode_finish(reason: str = "stop") -> str:
    return f"{FINISH}:{json.dumps({'finishReason': reason})}\n"


def parse_frame(line: str) -> Frame | None:
    """Parse one line; blank or unknown lines return None."""
    line = line.strip()
    if not line:
        return None
    kind, sep, payload = line.partition(":")
    if not sep or kind not in (TEXT, ERROR, FINISH):
        return None
    try:
        value = json.loads(payload)
    except ValueError:
        return None
    return Frame(kind, value)
