"""NDJSON event sink.

Every event is one self-contained JSON line on stdout. Strings are stripped
of control characters and length-capped; a line that still exceeds 10 KiB
is replaced by an ``ERR_STATE_CORRUPT`` report instead of being cut.
"""

import json
import logging
import re
import sys
from typing import Any, TextIO

from escrow_watch.errors import ErrorCode
from escrow_watch.schemas.events import WatchEvent

logger = logging.getLogger(__name__)

MAX_EVENT_BYTES = 10 * 1024
MAX_MESSAGE_CHARS = 500
MAX_STRING_CHARS = 1000

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_SHORT_FIELDS = frozenset({"message", "suggestion"})


def sanitize(value: Any, key: str | None = None) -> Any:
    if isinstance(value, str):
        cleaned = _CONTROL_CHARS.sub("", value)
        cap = MAX_MESSAGE_CHARS if key in _SHORT_FIELDS else MAX_STRING_CHARS
        return cleaned[:cap]
    if isinstance(value, dict):
        return {k: sanitize(v, k) for k, v in value.items()}
    if isinstance(value, list):
        return [sanitize(v, key) for v in value]
    return value


def render(event: WatchEvent) -> str:
    payload = sanitize(event.model_dump(mode="json", by_alias=True))
    line = json.dumps(payload, separators=(",", ":"))
    if len(line.encode()) > MAX_EVENT_BYTES:
        logger.error("Dropping oversized %s event (%d bytes)", event.event, len(line.encode()))
        line = json.dumps({
            "event": "error",
            "code": ErrorCode.STATE_CORRUPT.value,
            "message": f"Event exceeded {MAX_EVENT_BYTES}B cap",
            "retryable": False,
        }, separators=(",", ":"))
    return line


class EventSink:
    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream

    def emit(self, event: WatchEvent) -> str:
        line = render(event)
        stream = self._stream if self._stream is not None else sys.stdout
        stream.write(line + "\n")
        stream.flush()
        return line
