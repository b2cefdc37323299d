from __future__ import annotations
import os
from dataclasses import dataclass

from .constants import DEFAULT_MAX_PARTICIPANTS, SESSION_SWEEP_S

_TRUE = {"1", "true", "yes", "on"}

def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUE

def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")

@dataclass(frozen=True)
class Settings:
    host: str = "127.0.0.1"
    port: int = 3001
    log_level: str = "INFO"
    log_json: bool = True
    sweep_interval_s: int = SESSION_SWEEP_S
    trust_forwarded_for: bool = False
    enforce_freshness: bool = True
    max_participants: int = DEFAULT_MAX_PARTICIPANTS

    @classmethod
    def from_env(cls) -> "Settings":
        settings = cls(
            host=os.getenv("CIPHERROOM_HOST", cls.host),
            port=_env_int("CIPHERROOM_PORT", cls.port),
            log_level=os.getenv("CIPHERROOM_LOG_LEVEL", cls.log_level).upper(),
            log_json=_env_bool("CIPHERROOM_LOG_JSON", cls.log_json),
            sweep_interval_s=_env_int("CIPHERROOM_SWEEP_INTERVAL", cls.sweep_interval_s),
            trust_forwarded_for=_env_bool("CIPHERROOM_TRUST_FORWARDED_FOR", cls.trust_forwarded_for),
            enforce_freshness=_env_bool("CIPHERROOM_ENFORCE_FRESHNESS", cls.enforce_freshness),
            max_participants=_env_int("CIPHERROOM_MAX_PARTICIPANTS", cls.max_participants),
        )
        if settings.sweep_interval_s <= 0:
            raise ValueError("CIPHERROOM_SWEEP_INTERVAL must be positive")
        if settings.max_participants < 1:
            raise ValueError("CIPHERROOM_MAX_PARTICIPANTS must be at least 1")
        return settings
