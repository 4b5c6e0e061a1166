from typing import Any, AsyncIterator, Dict, List, Optional

import pytest

from generation import Fragment, GenerationError, SamplingParams
from request_log import RequestLog

MODEL_ID = "test-model"


class FakeEngine:
    """Scripted engine: one character per token, fragments replayed as given."""

    def __init__(
        self,
        fragments: Optional[List[str]] = None,
        fail_after: Optional[int] = None,
        model_id: str = MODEL_ID,
    ):
        self.model_id = model_id
        self.fragments = list(fragments or [])
        self.fail_after = fail_after
        self.calls: List[SamplingParams] = []
        self.rendered: List[Dict[str, Any]] = []
        self.closed = False
        self.yielded = 0

    def render(self, messages, tools) -> str:
        self.rendered.append({"messages": messages, "tools": tools})
        return "".join(f"{m['role']}:{m.get('content') or ''}\n" for m in messages)

    def tokenize(self, text: str) -> List[int]:
        return [ord(c) for c in text]

    def decode(self, token_ids: List[int]) -> str:
        return "".join(chr(t) for t in token_ids)

    async def stream(
        self, prompt_tokens: List[int], params: SamplingParams
    ) -> AsyncIterator[Fragment]:
        self.calls.append(params)
        generated = 0
        try:
            for i, text in enumerate(self.fragments):
                if self.fail_after is not None and i == self.fail_after:
                    raise GenerationError("out of memory")
                generated += 1
                self.yielded += 1
                yield Fragment(text=text, generated_tokens=generated)
        finally:
            self.closed = True

    async def complete(self, prompt_tokens: List[int], params: SamplingParams) -> List[int]:
        self.calls.append(params)
        if self.fail_after is not None:
            raise GenerationError("out of memory")
        return self.tokenize("".join(self.fragments))


@pytest.fixture
def request_log() -> RequestLog:
    return RequestLog(persist=False, max_entries=100)


@pytest.fixture
def engine_factory():
    def _make(fragments=None, **kwargs) -> FakeEngine:
        return FakeEngine(fragments, **kwargs)

    return _make
