#!/usr/bin/env python3
"""
mlx_engine.py — Single-model MLX generation engine.

Loaded once at process start and injected into the HTTP app. MLX runs one
generation at a time: every call holds `_lock` and runs the blocking
stream_generate loop on a dedicated worker thread. Decoded text fragments are
handed to the event loop through an asyncio.Queue.

Closing the async iterator returned by stream() sets a stop flag that the
worker checks after every token, so an abandoned request frees the model
within one decode step.
"""

import asyncio
import logging
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from mlx_lm.sample_utils import make_sampler
from mlx_lm.utils import load_model, load_tokenizer

# stream_generate import differs across mlx-lm branches
try:
    from mlx_lm.generate import stream_generate
except ImportError:
    from mlx_lm.utils import stream_generate

from generation import Fragment, GenerationError, SamplingParams

log = logging.getLogger("mlx_engine")

_DONE = object()


# -------------------------
# Custom tokenizer support
# -------------------------
class TokenizerWrapper:
    """Wrapper to handle encode kwargs that some custom tokenizers don't support."""

    def __init__(self, tokenizer):
        self._tok = tokenizer

    def __getattr__(self, name):
        return getattr(self._tok, name)

    def encode(self, text, **kwargs):
        return self._tok.encode(text)

    def decode(self, tokens, **kwargs):
        return self._tok.decode(tokens)


def load_custom_tokenizer(model_path: Path) -> TokenizerWrapper:
    """Load a tokenizer shipped as tokenization_*.py next to the weights."""
    sys.path.insert(0, str(model_path))

    for tok_file in model_path.glob("tokenization_*.py"):
        mod = __import__(tok_file.stem)
        for attr in dir(mod):
            cls = getattr(mod, attr)
            if isinstance(cls, type) and hasattr(cls, "from_pretrained"):
                try:
                    return TokenizerWrapper(cls.from_pretrained(model_path))
                except Exception as e:
                    log.debug(f"{tok_file.name}:{attr} failed to load: {e}")
    raise RuntimeError(f"Could not load custom tokenizer from {model_path}")


class MlxEngine:
    def __init__(self, model: Any, tokenizer: Any, model_id: str):
        self.model = model
        self.tokenizer = tokenizer
        self.model_id = model_id
        self._lock = asyncio.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="mlx-generate"
        )

    @classmethod
    def load(cls, model_dir: str, model_id: str) -> "MlxEngine":
        """
        Load weights eagerly (lazy=False) so the first request does not pay
        for materializing them.
        """
        model_path = Path(model_dir)
        log.info(f"loading model from {model_path} ...")
        t0 = time.time()
        model, _ = load_model(model_path, lazy=False)
        log.info(f"model loaded in {time.time() - t0:.1f}s")

        try:
            tok = load_tokenizer(model_path, {"trust_remote_code": True})
        except Exception as e:
            log.warning(f"standard tokenizer load failed ({e}), trying custom tokenizer")
            tok = load_custom_tokenizer(model_path)
        log.info("tokenizer loaded")
        return cls(model, tok, model_id)

    # ------------------------------------------------------------------
    #  Tokenizer / template
    # ------------------------------------------------------------------

    def render(
        self, messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]]
    ) -> str:
        if not hasattr(self.tokenizer, "apply_chat_template"):
            # Last resort: simple "ROLE: content" format
            parts = [f"{m['role'].upper()}: {m.get('content') or ''}" for m in messages]
            parts.append("ASSISTANT:")
            return "\n".join(parts)
        return self.tokenizer.apply_chat_template(
            messages,
            tokenize=False,
            add_generation_prompt=True,
            tools=tools or None,
        )

    def tokenize(self, text: str) -> List[int]:
        # Rendered templates usually carry their own BOS
        bos = getattr(self.tokenizer, "bos_token", None)
        add_special = bos is None or not text.startswith(bos)
        return list(self.tokenizer.encode(text, add_special_tokens=add_special))

    def decode(self, token_ids: List[int]) -> str:
        return self.tokenizer.decode(token_ids, skip_special_tokens=True)

    # ------------------------------------------------------------------
    #  Generation
    # ------------------------------------------------------------------

    def _produce(
        self,
        prompt_tokens: List[int],
        params: SamplingParams,
        loop: asyncio.AbstractEventLoop,
        queue: asyncio.Queue,
        stop: threading.Event,
    ) -> None:
        sampler = make_sampler(temp=params.temperature, top_p=params.top_p)
        try:
            for response in stream_generate(
                self.model,
                self.tokenizer,
                prompt_tokens,
                max_tokens=params.max_tokens,
                sampler=sampler,
            ):
                if stop.is_set():
                    log.info(f"generation stopped after {response.generation_tokens} tokens")
                    break
                loop.call_soon_threadsafe(
                    queue.put_nowait,
                    Fragment(
                        text=response.text,
                        token=int(response.token),
                        generated_tokens=response.generation_tokens,
                    ),
                )
        except Exception as e:
            log.error(f"stream_generate failed: {e}")
            loop.call_soon_threadsafe(queue.put_nowait, e)
            return
        loop.call_soon_threadsafe(queue.put_nowait, _DONE)

    async def stream(
        self, prompt_tokens: List[int], params: SamplingParams
    ) -> AsyncIterator[Fragment]:
        async with self._lock:
            loop = asyncio.get_running_loop()
            queue: asyncio.Queue = asyncio.Queue()
            stop = threading.Event()
            worker = loop.run_in_executor(
                self._executor, self._produce, prompt_tokens, params, loop, queue, stop
            )
            try:
                while True:
                    item = await queue.get()
                    if item is _DONE:
                        break
                    if isinstance(item, Exception):
                        raise GenerationError(str(item)) from item
                    yield item
            finally:
                stop.set()
                # Keep the lock until the model is free again
                await asyncio.shield(worker)

    async def complete(
        self, prompt_tokens: List[int], params: SamplingParams
    ) -> List[int]:
        out: List[int] = []
        async for fragment in self.stream(prompt_tokens, params):
            if fragment.token is not None:
                out.append(fragment.token)
        return out
