"""Decoder for realtime payloads that may carry several JSON frames at once."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from typing import Any

from pydantic import ValidationError

from .models import HEARTBEAT_TYPES, INBOUND_TYPES, InboundFrame, inbound_frame_adapter

logger = logging.getLogger(__name__)


def split_objects(payload: str) -> Iterator[dict[str, Any]]:
    """
    Yield every top-level JSON object found in ``payload``, in order.

    The transport may coalesce several frames into one delivery, so the
    payload is scanned for balanced ``{...}`` spans. Braces inside string
    literals (including escaped quotes) do not affect the depth. A segment
    that fails to parse is logged and skipped; scanning resumes after it.
    If the final span never balances, the remainder is parsed as one
    trailing object before giving up.
    """
    pos = 0
    length = len(payload)
    while pos < length:
        start = payload.find("{", pos)
        if start < 0:
            return

        depth = 0
        in_string = False
        escaped = False
        end = -1
        for i in range(start, length):
            ch = payload[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    end = i
                    break

        if end < 0:
            obj = _parse_segment(payload[start:].strip())
            if obj is not None:
                yield obj
            return

        obj = _parse_segment(payload[start : end + 1])
        if obj is not None:
            yield obj
        pos = end + 1


def _parse_segment(segment: str) -> dict[str, Any] | None:
    try:
        obj = json.loads(segment)
    except json.JSONDecodeError as e:
        logger.warning("Dropping malformed frame segment (%s): %.200s", e, segment)
        return None
    if not isinstance(obj, dict):
        logger.warning("Dropping non-object frame segment: %.200s", segment)
        return None
    return obj


class FrameDecoder:
    """Turns raw transport payloads into typed inbound frames."""

    def __init__(self) -> None:
        self.invalid_count = 0
        self.heartbeat_count = 0

    def decode(self, payload: str | bytes) -> list[InboundFrame]:
        """Decode a payload into frames, skipping heartbeats and bad objects."""
        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode("utf-8", errors="replace")

        frames: list[InboundFrame] = []
        for obj in split_objects(payload):
            frame = self.decode_object(obj)
            if frame is not None:
                frames.append(frame)
        return frames

    def decode_object(self, obj: dict[str, Any]) -> InboundFrame | None:
        """Validate one decoded JSON object as an inbound frame."""
        frame_type = obj.get("type")
        if frame_type in HEARTBEAT_TYPES:
            self.heartbeat_count += 1
            return None
        if frame_type not in INBOUND_TYPES:
            logger.warning("Unknown frame type: %r", frame_type)
            return None
        try:
            return inbound_frame_adapter.validate_python(obj)
        except ValidationError as e:
            self.invalid_count += 1
            logger.warning("Invalid %s frame: %s", frame_type, e.errors(include_url=False))
            return None
