#!/usr/bin/env python3
"""
chunk_encoder.py — OpenAI chat-completions wire shapes.

Turns SegmentParser events into `chat.completion.chunk` dicts for SSE, and
builds the single `chat.completion` body for non-streaming requests.

A tool call goes out as two chunks, in order:
    1. {"index", "id", "type", "function": {"name", "arguments": ""}}
    2. {"index", "function": {"arguments": "<json string>"}}
Clients accumulate `arguments` per index, so both halves are required even
though this server always knows the full call at once.
"""

import json
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional

from segment_parser import ParserEvent, TextDelta, ToolCallEvent, ToolCallRecord

SSE_DONE = "data: [DONE]\n\n"


def new_request_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex[:24]}"


def sse(obj: Dict[str, Any]) -> str:
    return f"data: {json.dumps(obj, ensure_ascii=False)}\n\n"


def usage(prompt_tokens: int, completion_tokens: int) -> Dict[str, int]:
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": prompt_tokens + completion_tokens,
    }


def error_body(message: str, err_type: str = "server_error") -> Dict[str, Any]:
    return {"error": {"message": message, "type": err_type}}


def tool_call_message(record: ToolCallRecord) -> Dict[str, Any]:
    """OpenAI `message.tool_calls[]` entry (arguments as a JSON string)."""
    return {
        "id": record.id,
        "type": "function",
        "function": {
            "name": record.name,
            "arguments": json.dumps(record.arguments, ensure_ascii=False),
        },
    }


class ChatChunkEncoder:
    """
    Per-response encoder. Keeps only the tool-call ordinal and whether the
    assistant role has been sent yet.
    """

    def __init__(
        self,
        model_id: str,
        request_id: Optional[str] = None,
        created: Optional[int] = None,
    ):
        self.model_id = model_id
        self.request_id = request_id or new_request_id()
        self.created = created if created is not None else int(time.time())
        self._tool_call_index = 0
        self._sent_role = False

    @property
    def tool_call_count(self) -> int:
        return self._tool_call_index

    def chunk(
        self,
        delta: Dict[str, Any],
        finish_reason: Optional[str] = None,
        usage_block: Optional[Dict[str, int]] = None,
    ) -> Dict[str, Any]:
        out = {
            "id": self.request_id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model_id,
            "choices": [
                {"index": 0, "delta": delta, "finish_reason": finish_reason}
            ],
        }
        if usage_block is not None:
            out["usage"] = usage_block
        return out

    def _with_role(self, delta: Dict[str, Any]) -> Dict[str, Any]:
        if not self._sent_role:
            delta = {"role": "assistant", **delta}
            self._sent_role = True
        return delta

    def encode(self, events: Iterable[ParserEvent]) -> List[Dict[str, Any]]:
        chunks: List[Dict[str, Any]] = []
        for event in events:
            if isinstance(event, TextDelta):
                chunks.append(self.chunk(self._with_role({"content": event.text})))
            elif isinstance(event, ToolCallEvent):
                chunks.extend(self._encode_tool_call(event.record))
            # Finish carries no chunk of its own; see final_chunk()
        return chunks

    def _encode_tool_call(self, record: ToolCallRecord) -> List[Dict[str, Any]]:
        idx = self._tool_call_index
        self._tool_call_index += 1
        head = self._with_role(
            {
                "tool_calls": [
                    {
                        "index": idx,
                        "id": record.id,
                        "type": "function",
                        "function": {"name": record.name, "arguments": ""},
                    }
                ]
            }
        )
        body = {
            "tool_calls": [
                {
                    "index": idx,
                    "function": {
                        "arguments": json.dumps(record.arguments, ensure_ascii=False)
                    },
                }
            ]
        }
        return [self.chunk(head), self.chunk(body)]

    def final_chunk(
        self, finish_reason: str, prompt_tokens: int, completion_tokens: int
    ) -> Dict[str, Any]:
        return self.chunk(
            {}, finish_reason, usage_block=usage(prompt_tokens, completion_tokens)
        )

    def build_completion(
        self,
        text: str,
        tool_calls: List[ToolCallRecord],
        finish_reason: str,
        prompt_tokens: int,
        completion_tokens: int,
    ) -> Dict[str, Any]:
        """Non-streaming `chat.completion` body."""
        message: Dict[str, Any] = {"role": "assistant"}
        content = text.strip()
        message["content"] = content or None
        if tool_calls:
            message["tool_calls"] = [tool_call_message(tc) for tc in tool_calls]
        return {
            "id": self.request_id,
            "object": "chat.completion",
            "created": self.created,
            "model": self.model_id,
            "choices": [
                {"index": 0, "message": message, "finish_reason": finish_reason}
            ],
            "usage": usage(prompt_tokens, completion_tokens),
        }
