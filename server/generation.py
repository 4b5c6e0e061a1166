"""
generation.py — Contract between the HTTP layer and the generation engine.

The engine is an opaque producer of decoded text fragments. The streaming
session only needs the pieces below; mlx_engine.MlxEngine is the production
implementation.
"""

from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol


class GenerationError(RuntimeError):
    """The engine failed while producing a completion."""


@dataclass(frozen=True)
class SamplingParams:
    max_tokens: int
    temperature: float = 0.0
    top_p: float = 1.0


@dataclass(frozen=True)
class Fragment:
    text: str
    token: Optional[int] = None
    generated_tokens: int = 0  # running count, including this fragment


class GenerationEngine(Protocol):
    model_id: str

    def render(
        self, messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]]
    ) -> str: ...

    def tokenize(self, text: str) -> List[int]: ...

    def decode(self, token_ids: List[int]) -> str: ...

    def stream(
        self, prompt_tokens: List[int], params: SamplingParams
    ) -> AsyncIterator[Fragment]: ...

    async def complete(
        self, prompt_tokens: List[int], params: SamplingParams
    ) -> List[int]: ...
