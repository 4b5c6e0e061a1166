#!/usr/bin/env python3
"""
openai_server.py — OpenAI-compatible HTTP front end for one local MLX model.

Endpoints:
    POST /v1/chat/completions   streaming (SSE) and non-streaming
    GET  /v1/models             static single-model listing
    GET  /health
    GET  /requests/recent, /requests/stats

The generation engine is built once in main() and passed to create_app();
nothing in this module loads a model on import.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Union

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import StreamingResponse

from chunk_encoder import error_body
from config import ServerConfig
from generation import GenerationEngine, GenerationError, SamplingParams
from request_log import RequestLog
from streaming_session import StreamingSession, complete_chat

log = logging.getLogger("thinkstream")

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


# -------------------------
# OpenAI-ish schemas
# -------------------------
class ToolCallFunction(BaseModel):
    name: str
    arguments: Union[str, Dict[str, Any]]  # JSON string (OpenAI-style)


class ToolCall(BaseModel):
    id: str
    type: str = "function"
    function: ToolCallFunction


class ToolDefinitionFunction(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    description: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None  # JSON Schema


class ToolDefinition(BaseModel):
    type: str = "function"
    function: ToolDefinitionFunction


class ChatMessage(BaseModel):
    # Extra fields go to the chat template untouched
    model_config = ConfigDict(extra="allow")

    role: str
    content: Optional[Union[str, List[Dict[str, Any]]]] = None
    name: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None


class ChatCompletionsReq(BaseModel):
    model: Optional[str] = None  # accepted, a single model is served
    messages: List[ChatMessage]
    stream: Optional[bool] = False
    max_tokens: Optional[int] = None
    max_completion_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    tools: Optional[List[ToolDefinition]] = None
    tool_choice: Optional[Union[str, Dict[str, Any]]] = None


# -------------------------
# Admission control
# -------------------------
class AdmissionGate:
    """
    Counts admitted requests (running + waiting on the engine). The engine
    itself serializes generations; this only bounds the backlog.
    """

    def __init__(self, limit: int):
        self.limit = limit
        self.active = 0

    def try_acquire(self) -> bool:
        if self.active >= self.limit:
            return False
        self.active += 1
        return True

    def release(self) -> None:
        self.active = max(0, self.active - 1)


def sampling_params(req: ChatCompletionsReq, config: ServerConfig) -> SamplingParams:
    requested = req.max_tokens or req.max_completion_tokens
    temperature = req.temperature if req.temperature is not None else 0.0
    top_p = req.top_p if req.top_p is not None else 1.0
    return SamplingParams(
        max_tokens=config.clamp_max_tokens(requested),
        temperature=max(0.0, temperature),
        top_p=top_p,
    )


def _render_messages(req: ChatCompletionsReq) -> List[Dict[str, Any]]:
    return [m.model_dump(exclude_none=True) for m in req.messages]


def _render_tools(req: ChatCompletionsReq) -> Optional[List[Dict[str, Any]]]:
    if not req.tools:
        return None
    return [t.model_dump(exclude_none=True) for t in req.tools]


def create_app(
    engine: GenerationEngine,
    config: Optional[ServerConfig] = None,
    request_log: Optional[RequestLog] = None,
) -> FastAPI:
    config = config or ServerConfig(model_id=engine.model_id)
    gate = AdmissionGate(config.queue_max)

    app = FastAPI(
        title="thinkstream-server",
        description="OpenAI-compatible chat completions for a single local MLX model",
        version="0.1.0",
    )
    app.state.engine = engine
    app.state.config = config
    app.state.request_log = request_log
    app.state.gate = gate

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    # -------------------------
    # Error bodies
    # -------------------------
    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return JSONResponse(error_body("Not found", "not_found"), status_code=404)
        err_type = "invalid_request_error" if exc.status_code < 500 else "server_error"
        return JSONResponse(
            error_body(str(exc.detail), err_type),
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        where = ".".join(str(p) for p in first.get("loc", ()))
        message = f"{where}: {first.get('msg', 'invalid request')}" if where else "invalid request"
        return JSONResponse(error_body(message, "invalid_request_error"), status_code=400)

    @app.exception_handler(GenerationError)
    async def _generation_error(request: Request, exc: GenerationError):
        log.error(f"generation error: {exc}")
        return JSONResponse(error_body(str(exc)), status_code=500)

    # -------------------------
    # HTTP endpoints
    # -------------------------
    @app.get("/health")
    def health() -> dict:
        result = {
            "ok": True,
            "model": engine.model_id,
            "model_loaded": True,
            "queue_max": gate.limit,
            "queue_size": gate.active,
        }
        if request_log is not None:
            result["requests_total"] = request_log.entry_count
        return result

    @app.get("/v1/models")
    def list_models() -> dict:
        return {
            "object": "list",
            "data": [
                {
                    "id": engine.model_id,
                    "object": "model",
                    "created": int(time.time()),
                    "owned_by": "local",
                }
            ],
        }

    @app.get("/requests/recent")
    def requests_recent(n: int = 50) -> dict:
        if request_log is None:
            return {"requests": [], "count": 0}
        recent = request_log.recent(n)
        return {"requests": recent, "count": len(recent)}

    @app.get("/requests/stats")
    def requests_stats() -> dict:
        if request_log is None:
            return {"total_requests": 0}
        return request_log.stats()

    @app.post("/v1/chat/completions")
    async def chat_completions(req: ChatCompletionsReq, request: Request):
        n_tools = len(req.tools) if req.tools else 0
        log.info(f"messages={len(req.messages)} tools={n_tools} stream={bool(req.stream)}")

        if not gate.try_acquire():
            raise HTTPException(
                status_code=429, detail="Server busy (queue full). Try again later."
            )

        try:
            prompt = engine.render(_render_messages(req), _render_tools(req))
            prompt_tokens = engine.tokenize(prompt)
            params = sampling_params(req, config)
        except Exception as e:
            gate.release()
            log.error(f"failed to prepare prompt: {e}")
            return JSONResponse(error_body(str(e)), status_code=500)

        if req.stream:
            session = StreamingSession(
                engine,
                prompt_tokens,
                params,
                model_id=engine.model_id,
                is_disconnected=request.is_disconnected,
                request_log=request_log,
            )

            async def _body():
                try:
                    async for frame in session.events():
                        yield frame
                finally:
                    gate.release()

            return StreamingResponse(
                _body(), media_type="text/event-stream", headers=_SSE_HEADERS
            )

        try:
            return await complete_chat(
                engine,
                prompt_tokens,
                params,
                model_id=engine.model_id,
                timeout=config.req_timeout,
                request_log=request_log,
            )
        except asyncio.TimeoutError:
            raise HTTPException(status_code=504, detail="Request timed out")
        except GenerationError:
            raise
        except Exception as e:
            raise GenerationError(str(e)) from e
        finally:
            gate.release()

    return app


# -------------------------
# Main
# -------------------------
def main() -> None:
    config = ServerConfig.from_env()

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    # Imported here so the app can be built and tested without MLX present
    from mlx_engine import MlxEngine

    engine = MlxEngine.load(config.model_dir, config.model_id)
    rlog = RequestLog(path=config.request_log_path, max_entries=config.request_log_max)
    app = create_app(engine, config, rlog)

    log.info(f"OpenAI-compatible API at http://{config.host}:{config.port}/v1")
    log.info("  POST /v1/chat/completions  (streaming + non-streaming)")
    log.info("  GET  /v1/models")
    uvicorn.run(app, host=config.host, port=config.port, log_level="warning")


if __name__ == "__main__":
    main()
