import logging
import os
from dataclasses import dataclass
from datetime import timedelta

DEFAULT_NAMESPACE = "openshift-machine-api"


def _positive_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    value = int(raw)
    if value < 1:
        raise ValueError(f"{name} must be a positive integer, got {raw!r}")
    return value


@dataclass
class Settings:
    """Controller configuration, read from the environment"""
    namespace: str = DEFAULT_NAMESPACE
    workers: int = 4
    budget_cooldown: timedelta = timedelta(seconds=60)
    conflict_retry_attempts: int = 5
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        if not isinstance(logging.getLevelName(log_level), int):
            raise ValueError(f"LOG_LEVEL {log_level!r} is not a logging level")
        return cls(
            namespace=os.getenv("WATCH_NAMESPACE", DEFAULT_NAMESPACE),
            workers=_positive_int("WORKERS", 4),
            budget_cooldown=timedelta(seconds=_positive_int("BUDGET_COOLDOWN_SECONDS", 60)),
            conflict_retry_attempts=_positive_int("CONFLICT_RETRY_ATTEMPTS", 5),
            log_level=log_level,
        )
