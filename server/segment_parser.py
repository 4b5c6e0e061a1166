#!/usr/bin/env python3
"""
segment_parser.py — Incremental classifier for raw model output.

Model output arrives as decoded text fragments of arbitrary size. This module
splits that stream into:
  1. an optional leading reasoning block  <think> ... </think>   (discarded)
  2. user-visible content                                        (TextDelta)
  3. tool invocations  <tool_call>{"name": ..., "arguments": ...}</tool_call>
                                                                 (ToolCallEvent)

Content is emitted eagerly, except for the shortest tail that could still turn
into a control tag once more text arrives. A tag is therefore never split
across two text deltas, and never reported as content too early.

Usage:
    parser = SegmentParser()
    for fragment in fragments:
        for event in parser.feed(fragment):
            ...
    events = parser.end()          # final TextDelta (if any) + Finish
"""

import json
import logging
import random
import string
from dataclasses import dataclass
from typing import Any, List, Set, Union

log = logging.getLogger("segment_parser")

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"
TOOL_OPEN = "<tool_call>"
TOOL_CLOSE = "</tool_call>"

STATE_INIT = "init"
STATE_THINKING = "thinking"
STATE_CONTENT = "content"
STATE_TOOL_CALL = "tool_call"

FINISH_STOP = "stop"
FINISH_TOOL_CALLS = "tool_calls"

_ID_ALPHABET = string.ascii_lowercase + string.digits


# -------------------------
# Events
# -------------------------
@dataclass(frozen=True)
class ToolCallRecord:
    id: str
    name: str
    arguments: Any  # parsed JSON value


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallEvent:
    record: ToolCallRecord


@dataclass(frozen=True)
class Finish:
    reason: str  # "stop" | "tool_calls"


ParserEvent = Union[TextDelta, ToolCallEvent, Finish]


def unsafe_suffix_length(text: str, tag: str) -> int:
    """Length of the longest tail of `text` that is a proper prefix of `tag`."""
    for hold in range(min(len(tag) - 1, len(text)), 0, -1):
        if tag.startswith(text[-hold:]):
            return hold
    return 0


def parse_tool_payload(payload: str) -> Any:
    """Parse a tool-call body; raises ValueError unless it is {name, arguments}."""
    obj = json.loads(payload.strip())
    if not isinstance(obj, dict):
        raise ValueError("tool call payload is not a JSON object")
    if not isinstance(obj.get("name"), str) or "arguments" not in obj:
        raise ValueError("tool call payload needs 'name' and 'arguments'")
    return obj


class SegmentParser:
    """
    Stateful classifier over one generation's output.

    States: init -> (thinking ->) content <-> tool_call.
    Not thread-safe; one instance per request.
    """

    def __init__(self) -> None:
        self.state = STATE_INIT
        self.has_tool_calls = False
        self._buf = ""
        self._tool_buf = ""
        self._ended = False
        self._issued_ids: Set[str] = set()

    @property
    def pending(self) -> str:
        return self._buf

    def feed(self, fragment: str) -> List[ParserEvent]:
        if self._ended:
            raise RuntimeError("feed() called after end()")
        events: List[ParserEvent] = []
        if not fragment:
            return events
        self._buf += fragment
        self._drain(events)
        return events

    def end(self) -> List[ParserEvent]:
        if self._ended:
            return []
        self._ended = True
        events: List[ParserEvent] = []
        if self.state == STATE_CONTENT and self._buf:
            events.append(TextDelta(self._buf))
            self._buf = ""
        elif self.state == STATE_TOOL_CALL:
            # Unterminated region is dropped, not flushed as text.
            log.debug(
                f"dropping unterminated tool call region "
                f"({len(self._tool_buf) + len(self._buf)} chars)"
            )
        events.append(
            Finish(FINISH_TOOL_CALLS if self.has_tool_calls else FINISH_STOP)
        )
        return events

    # ------------------------------------------------------------------
    #  Transition loop
    # ------------------------------------------------------------------

    def _drain(self, events: List[ParserEvent]) -> None:
        changed = True
        while changed:
            if self.state == STATE_INIT:
                changed = self._step_init()
            elif self.state == STATE_THINKING:
                changed = self._step_thinking()
            elif self.state == STATE_CONTENT:
                changed = self._step_content(events)
            else:
                changed = self._step_tool_call(events)

    def _step_init(self) -> bool:
        if self._buf.startswith(THINK_OPEN):
            self._buf = self._buf[len(THINK_OPEN) :]
            self.state = STATE_THINKING
            return True
        if self._buf and not THINK_OPEN.startswith(self._buf):
            self.state = STATE_CONTENT
            return True
        return False  # strict prefix of <think>: wait

    def _step_thinking(self) -> bool:
        idx = self._buf.find(THINK_CLOSE)
        if idx >= 0:
            self._buf = self._buf[idx + len(THINK_CLOSE) :]
            self.state = STATE_CONTENT
            return True
        keep = len(THINK_CLOSE) - 1
        if len(self._buf) > keep:
            self._buf = self._buf[-keep:]
        return False

    def _step_content(self, events: List[ParserEvent]) -> bool:
        idx = self._buf.find(TOOL_OPEN)
        if idx >= 0:
            if idx > 0:
                events.append(TextDelta(self._buf[:idx]))
            self._buf = self._buf[idx + len(TOOL_OPEN) :]
            self._tool_buf = ""
            self.state = STATE_TOOL_CALL
            return True
        safe = len(self._buf) - unsafe_suffix_length(self._buf, TOOL_OPEN)
        if safe > 0:
            events.append(TextDelta(self._buf[:safe]))
            self._buf = self._buf[safe:]
        return False

    def _step_tool_call(self, events: List[ParserEvent]) -> bool:
        idx = self._buf.find(TOOL_CLOSE)
        if idx < 0:
            safe = len(self._buf) - unsafe_suffix_length(self._buf, TOOL_CLOSE)
            self._tool_buf += self._buf[:safe]
            self._buf = self._buf[safe:]
            return False

        self._tool_buf += self._buf[:idx]
        self._buf = self._buf[idx + len(TOOL_CLOSE) :]
        self.state = STATE_CONTENT
        try:
            obj = parse_tool_payload(self._tool_buf)
        except ValueError as e:
            # json.JSONDecodeError is a ValueError subclass
            log.debug(f"tool call payload not parseable, passing through: {e}")
            events.append(TextDelta(f"{TOOL_OPEN}{self._tool_buf}{TOOL_CLOSE}"))
        else:
            self.has_tool_calls = True
            events.append(
                ToolCallEvent(
                    ToolCallRecord(
                        id=self._new_call_id(),
                        name=obj["name"],
                        arguments=obj["arguments"],
                    )
                )
            )
        self._tool_buf = ""
        return True

    def _new_call_id(self) -> str:
        while True:
            call_id = "call_" + "".join(random.choices(_ID_ALPHABET, k=9))
            if call_id not in self._issued_ids:
                self._issued_ids.add(call_id)
                return call_id
