import argparse
import asyncio
import time
from pathlib import Path

from generation import SamplingParams
from mlx_engine import MlxEngine
from streaming_session import collect_completion


async def _run(engine: MlxEngine, prompt: str, max_tokens: int) -> None:
    messages = [{"role": "user", "content": prompt}]
    prompt_tokens = engine.tokenize(engine.render(messages, None))

    # warmup
    warmup = engine.tokenize(engine.render([{"role": "user", "content": "hi"}], None))
    await engine.complete(warmup, SamplingParams(max_tokens=8))

    t0 = time.time()
    out = await engine.complete(prompt_tokens, SamplingParams(max_tokens=max_tokens))
    secs = max(time.time() - t0, 1e-9)

    raw = engine.decode(out)
    collected = collect_completion(raw)

    print("==========")
    print(f"model={engine.model_id}")
    print(f"prompt_tokens={len(prompt_tokens)}")
    print(f"gen_tokens={len(out)}")
    print(f"seconds={secs:.3f}")
    print(f"tokens_per_sec={len(out) / secs:.3f}")
    print("--- full response (includes <think> reasoning) ---")
    print(raw)
    print("--- answer only ---")
    print(collected.text.strip())


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--model", required=True)
    ap.add_argument("--prompt", default="What is the capital of France? Reply in one sentence.")
    ap.add_argument("--max-tokens", type=int, default=512)
    args = ap.parse_args()

    t0 = time.time()
    engine = MlxEngine.load(args.model, Path(args.model).name)
    print(f"model loaded in {time.time() - t0:.1f}s")
    asyncio.run(_run(engine, args.prompt, args.max_tokens))


if __name__ == "__main__":
    main()
