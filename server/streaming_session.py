#!/usr/bin/env python3
"""
streaming_session.py — One chat completion, end to end.

StreamingSession drives a single streaming request:
    engine fragments -> SegmentParser.feed -> ChatChunkEncoder -> SSE strings

Every chunk is yielded as soon as the parser releases it. The terminal chunk
carries finish_reason + usage and is followed by `data: [DONE]`.

Cancellation:
  - cancel() or a disconnect probe returning True sets `cancelled`
  - the consumer closing the generator (client gone) does the same
  - once cancelled nothing else is yielded; closing the engine stream tells
    the generation thread to stop at its next token

Engine failures produce one error event and end the stream without [DONE].
Output already sent is never retracted.

complete_chat() is the non-streaming path over the same parser/encoder.
"""

import asyncio
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from chunk_encoder import SSE_DONE, ChatChunkEncoder, error_body, sse
from generation import GenerationEngine, SamplingParams
from request_log import (
    STATUS_CANCELLED,
    STATUS_ERROR,
    STATUS_TIMEOUT,
    RequestLog,
    RequestRecord,
)
from segment_parser import (
    FINISH_STOP,
    Finish,
    SegmentParser,
    TextDelta,
    ToolCallEvent,
    ToolCallRecord,
)

log = logging.getLogger("thinkstream")


@dataclass
class CollectedCompletion:
    text: str = ""
    tool_calls: List[ToolCallRecord] = field(default_factory=list)
    finish_reason: str = FINISH_STOP


def collect_completion(raw_text: str) -> CollectedCompletion:
    """Classify a complete model output in one shot."""
    parser = SegmentParser()
    events = parser.feed(raw_text) + parser.end()
    out = CollectedCompletion()
    parts: List[str] = []
    for event in events:
        if isinstance(event, TextDelta):
            parts.append(event.text)
        elif isinstance(event, ToolCallEvent):
            out.tool_calls.append(event.record)
        elif isinstance(event, Finish):
            out.finish_reason = event.reason
    out.text = "".join(parts)
    return out


def _finish_record(
    record: RequestRecord, t0: float, request_log: Optional[RequestLog]
) -> None:
    record.wall_time_s = time.time() - t0
    if record.completion_tokens and record.wall_time_s > 0:
        record.tokens_per_second = record.completion_tokens / record.wall_time_s
    if request_log is not None:
        request_log.record(record)


class StreamingSession:
    def __init__(
        self,
        engine: GenerationEngine,
        prompt_tokens: List[int],
        params: SamplingParams,
        *,
        model_id: Optional[str] = None,
        request_id: Optional[str] = None,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
        request_log: Optional[RequestLog] = None,
    ):
        self._engine = engine
        self._prompt_tokens = prompt_tokens
        self._params = params
        self._is_disconnected = is_disconnected
        self._request_log = request_log
        self.parser = SegmentParser()
        self.encoder = ChatChunkEncoder(model_id or engine.model_id, request_id)
        self.cancelled = False

    @property
    def request_id(self) -> str:
        return self.encoder.request_id

    def cancel(self) -> None:
        if not self.cancelled:
            log.info(f"{self.request_id}: client disconnected, stopping stream")
        self.cancelled = True

    async def _check_disconnected(self) -> bool:
        if not self.cancelled and self._is_disconnected is not None:
            if await self._is_disconnected():
                self.cancel()
        return self.cancelled

    async def events(self) -> AsyncIterator[str]:
        """Yield SSE-framed strings for the whole response."""
        prompt_len = len(self._prompt_tokens)
        record = RequestRecord(
            request_id=self.request_id,
            timestamp=time.time(),
            model_id=self.encoder.model_id,
            prompt_tokens=prompt_len,
            max_tokens_requested=self._params.max_tokens,
            is_stream=True,
        )
        t0 = time.time()
        generated = 0

        try:
            if await self._check_disconnected():
                record.status = STATUS_CANCELLED
                return

            async with aclosing(
                self._engine.stream(self._prompt_tokens, self._params)
            ) as fragments:
                async for fragment in fragments:
                    generated = fragment.generated_tokens or generated + 1
                    if await self._check_disconnected():
                        break
                    for chunk in self.encoder.encode(self.parser.feed(fragment.text)):
                        if self.cancelled:
                            break
                        yield sse(chunk)
            record.completion_tokens = generated

            if await self._check_disconnected():
                record.status = STATUS_CANCELLED
                return

            tail = self.parser.end()
            finish_reason = next(e.reason for e in tail if isinstance(e, Finish))
            for chunk in self.encoder.encode(tail):
                yield sse(chunk)
            yield sse(self.encoder.final_chunk(finish_reason, prompt_len, generated))
            yield SSE_DONE
            record.finish_reason = finish_reason
        except (asyncio.CancelledError, GeneratorExit):
            self.cancel()
            record.status = STATUS_CANCELLED
            record.completion_tokens = generated
            raise
        except Exception as e:
            log.error(f"{self.request_id}: generation error: {e}")
            record.status = STATUS_ERROR
            record.error_message = str(e)
            record.completion_tokens = generated
            if not self.cancelled:
                yield sse(error_body(str(e)))
        finally:
            record.tool_calls = self.encoder.tool_call_count
            _finish_record(record, t0, self._request_log)


async def complete_chat(
    engine: GenerationEngine,
    prompt_tokens: List[int],
    params: SamplingParams,
    *,
    model_id: Optional[str] = None,
    timeout: Optional[float] = None,
    request_log: Optional[RequestLog] = None,
) -> Dict[str, Any]:
    """Non-streaming completion: generate, decode, classify, build the body."""
    encoder = ChatChunkEncoder(model_id or engine.model_id)
    record = RequestRecord(
        request_id=encoder.request_id,
        timestamp=time.time(),
        model_id=encoder.model_id,
        prompt_tokens=len(prompt_tokens),
        max_tokens_requested=params.max_tokens,
    )
    t0 = time.time()
    try:
        output_ids = await asyncio.wait_for(
            engine.complete(prompt_tokens, params), timeout=timeout
        )
        collected = collect_completion(engine.decode(output_ids))
    except asyncio.TimeoutError:
        record.status = STATUS_TIMEOUT
        _finish_record(record, t0, request_log)
        raise
    except Exception as e:
        record.status = STATUS_ERROR
        record.error_message = str(e)
        _finish_record(record, t0, request_log)
        raise

    record.completion_tokens = len(output_ids)
    record.tool_calls = len(collected.tool_calls)
    record.finish_reason = collected.finish_reason
    _finish_record(record, t0, request_log)
    return encoder.build_completion(
        collected.text,
        collected.tool_calls,
        collected.finish_reason,
        prompt_tokens=len(prompt_tokens),
        completion_tokens=len(output_ids),
    )
