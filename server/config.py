"""
config.py — Server settings, read from environment variables.
"""

import os
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ServerConfig:
    model_dir: str = ""
    model_id: str = "local-model"

    host: str = "0.0.0.0"
    port: int = 8741

    default_max_tokens: int = 4096
    hard_max_tokens: int = 8192

    # Backpressure / queueing
    queue_max: int = 8  # admitted requests, running + waiting
    req_timeout: float = 120.0  # non-streaming timeout (seconds)

    request_log_path: str = "logs/requests.jsonl"
    request_log_max: int = 10000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ServerConfig":
        model_dir = os.environ["MODEL_DIR"]  # REQUIRED
        return cls(
            model_dir=model_dir,
            model_id=os.environ.get("MODEL_ID", os.path.basename(model_dir.rstrip("/"))),
            host=os.environ.get("HOST", "0.0.0.0"),
            port=int(os.environ.get("PORT", "8741")),
            default_max_tokens=int(os.environ.get("MAX_TOKENS", "4096")),
            hard_max_tokens=int(os.environ.get("MLX_HARD_MAX_TOKENS", "8192")),
            queue_max=int(os.environ.get("QUEUE_MAX", "8")),
            req_timeout=float(os.environ.get("REQ_TIMEOUT", "120")),
            request_log_path=os.environ.get("REQUEST_LOG_PATH", "logs/requests.jsonl"),
            request_log_max=int(os.environ.get("REQUEST_LOG_MAX", "10000")),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )

    def clamp_max_tokens(self, requested: Optional[int]) -> int:
        """Clamp max_tokens to prevent runaway generation."""
        if requested is None or requested <= 0:
            return min(self.default_max_tokens, self.hard_max_tokens)
        return min(requested, self.hard_max_tokens)
