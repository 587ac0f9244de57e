from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping

DEFAULT_AI_ENDPOINT = "http://localhost:3000/api/calculate-ai"
TRUTHY_FLAGS = {"1", "true", "yes", "on"}


def _int_setting(environ: Mapping[str, str], name: str, default: int, minimum: int) -> int:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float_setting(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


@dataclass(slots=True, frozen=True)
class RuntimeSettings:
    ai_endpoint: str = DEFAULT_AI_ENDPOINT
    ai_timeout: float = 30.0
    ai_cache_size: int = 0
    cycle_policy: str = "evaluate"
    max_reactive_passes: int = 10
    hide_show_targets: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RuntimeSettings:
        env = os.environ if environ is None else environ

        cycle_policy = env.get("FORM_RUNTIME_CYCLE_POLICY", "evaluate").strip().lower() or "evaluate"
        if cycle_policy not in {"evaluate", "error"}:
            raise ValueError(f"FORM_RUNTIME_CYCLE_POLICY must be 'evaluate' or 'error', got {cycle_policy!r}")

        log_level = env.get("APP_LOG_LEVEL", "INFO").strip().upper() or "INFO"
        if not isinstance(getattr(logging, log_level, None), int):
            raise ValueError(f"APP_LOG_LEVEL is not a logging level: {log_level!r}")

        return cls(
            ai_endpoint=env.get("FORM_RUNTIME_AI_ENDPOINT", DEFAULT_AI_ENDPOINT).strip() or DEFAULT_AI_ENDPOINT,
            ai_timeout=_float_setting(env, "FORM_RUNTIME_AI_TIMEOUT", 30.0),
            ai_cache_size=_int_setting(env, "FORM_RUNTIME_AI_CACHE_SIZE", 0, minimum=0),
            cycle_policy=cycle_policy,
            max_reactive_passes=_int_setting(env, "FORM_RUNTIME_MAX_PASSES", 10, minimum=1),
            hide_show_targets=env.get("FORM_RUNTIME_HIDE_SHOW_TARGETS", "").strip().lower() in TRUTHY_FLAGS,
            log_level=log_level,
        )
