from __future__ import annotations

"""Runtime settings sourced from environment variables.

Env vars:
- REMOTE_VIBE_AUTH_TOKEN (shared bearer token; unset enables public mode)
- REMOTE_VIBE_PUBLIC_MODE (explicit override for public mode)
- REMOTE_VIBE_MODEL_TIMEOUT (seconds, default 120)
- REMOTE_VIBE_HISTORY_LIMIT (messages passed to the model, default 40)
- REMOTE_VIBE_QUESTION_TAIL_LINES (default 10)
- REMOTE_VIBE_OBSERVER_QUEUE_SIZE (default 1000)
- REMOTE_VIBE_CORS_ORIGINS (comma separated, default "*")
"""

import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _env_flag(env: Mapping[str, str], name: str) -> Optional[bool]:
    raw = env.get(name)
    if raw is None:
        return None
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    auth_token: Optional[str] = None
    public_mode: bool = True
    model_timeout_seconds: float = 120.0
    history_limit: int = 40
    question_tail_lines: int = 10
    observer_queue_size: int = 1000
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @staticmethod
    def from_env(env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = env if env is not None else os.environ
        token = (env.get("REMOTE_VIBE_AUTH_TOKEN") or "").strip() or None
        public = _env_flag(env, "REMOTE_VIBE_PUBLIC_MODE")
        if public is None:
            # No explicit setting: public only when no token has been configured
            public = token is None
        origins = [o.strip() for o in (env.get("REMOTE_VIBE_CORS_ORIGINS") or "*").split(",") if o.strip()]
        return Settings(
            auth_token=token,
            public_mode=public,
            model_timeout_seconds=_env_float(env, "REMOTE_VIBE_MODEL_TIMEOUT", 120.0),
            history_limit=_env_int(env, "REMOTE_VIBE_HISTORY_LIMIT", 40),
            question_tail_lines=_env_int(env, "REMOTE_VIBE_QUESTION_TAIL_LINES", 10),
            observer_queue_size=_env_int(env, "REMOTE_VIBE_OBSERVER_QUEUE_SIZE", 1000),
            cors_origins=origins or ["*"],
        )
