# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Environment-level configuration, read once at startup."""
    workspace: str = "."
    config_path: str = ".loom.yml"
    log_level: str = "INFO"
    runtime: str = "docker"
    step_timeout: Optional[float] = None
    poll_interval: float = 1.0
    stop_on_failure: bool = True
    host: str = "127.0.0.1"
    port: int = 4000

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        timeout = env.get("LOOM_STEP_TIMEOUT")
        return cls(
            workspace=env.get("LOOM_WORKSPACE", os.getcwd()),
            config_path=env.get("LOOM_CONFIG", ".loom.yml"),
            log_level=env.get("LOOM_LOG_LEVEL", "INFO").upper(),
            runtime=env.get("LOOM_RUNTIME", "docker"),
            step_timeout=float(timeout) if timeout else None,
            poll_interval=float(env.get("LOOM_POLL_INTERVAL", "1.0")),
            stop_on_failure=_flag(env.get("LOOM_STOP_ON_FAILURE", "true")),
            host=env.get("LOOM_HOST", "127.0.0.1"),
            port=int(env.get("LOOM_PORT", "4000")),
        )
