from __future__ import annotations

import os


def env_int(name: str, default: int) -> int:
    """Read ``name`` from the environment as an integer."""

    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):  # tolerate floats or junk values
        try:
            return int(float(str(raw)))
        except (TypeError, ValueError):
            return default


def env_float(name: str, default: float) -> float:
    """Read ``name`` from the environment as a float."""

    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


# Submission limits
MAX_TEXT_LENGTH = env_int("MAX_TEXT_LENGTH", 10000)

# Worker budgets
CHECK_TIMEOUT_S = env_float("CHECK_TIMEOUT_S", 120.0)
CHECK_MAX_RETRIES = env_int("CHECK_MAX_RETRIES", 2)
CHECK_RETRY_BASE_S = env_float("CHECK_RETRY_BASE_S", 1.5)
QUEUE_MAX_CONCURRENT = env_int("QUEUE_MAX_CONCURRENT", 3)
QUEUE_MAX_SIZE = env_int("QUEUE_MAX_SIZE", 1000)

# External calls
LLM_TIMEOUT_S = env_float("LLM_TIMEOUT_S", 40.0)
LMSTUDIO_TIMEOUT_S = env_float("LMSTUDIO_TIMEOUT_S", 90.0)
EMBEDDING_TIMEOUT_S = env_float("EMBEDDING_TIMEOUT_S", 60.0)

# Realtime channel
SSE_HEARTBEAT_S = env_float("SSE_HEARTBEAT_S", 20.0)
SSE_MAX_CONNECTION_S = env_float("SSE_MAX_CONNECTION_S", 90.0)
SSE_SUBSCRIBER_QUEUE = env_int("SSE_SUBSCRIBER_QUEUE", 100)


__all__ = [
    "MAX_TEXT_LENGTH",
    "CHECK_TIMEOUT_S",
    "CHECK_MAX_RETRIES",
    "CHECK_RETRY_BASE_S",
    "QUEUE_MAX_CONCURRENT",
    "QUEUE_MAX_SIZE",
    "LLM_TIMEOUT_S",
    "LMSTUDIO_TIMEOUT_S",
    "EMBEDDING_TIMEOUT_S",
    "SSE_HEARTBEAT_S",
    "SSE_MAX_CONNECTION_S",
    "SSE_SUBSCRIBER_QUEUE",
    "env_int",
    "env_float",
]
