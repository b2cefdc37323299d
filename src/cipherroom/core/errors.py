from __future__ import annotations
from enum import Enum

class ProtocolError(Exception):
    pass

class ValidationError(ProtocolError):
    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message

class RateLimitError(ProtocolError):
    def __init__(self, retry_after_s: float, scope: str = "connection"):
        self.retry_after_s = max(0.0, retry_after_s)
        self.scope = scope
        super().__init__(f"rate limited ({scope}), retry in {int(self.retry_after_s)}s")

    @property
    def retry_after_min(self) -> int:
        minutes = -(-int(self.retry_after_s) // 60)
        return minutes or 5

class SessionFailure(Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    IDLE = "idle"
    REVOKED = "revoked"
    FULL = "full"
    UNAUTHORIZED = "unauthorized"
    NOT_IN_SESSION = "not_in_session"

class SessionError(ProtocolError):
    def __init__(self, failure: SessionFailure, message: str = ""):
        super().__init__(message or failure.value)
        self.failure = failure
        self.message = message or failure.value

class CryptoFailure(Enum):
    MALFORMED_PAYLOAD = "malformed_payload"
    INVALID_KEY = "invalid_key"
    AUTHENTICATION_FAILED = "authentication_failed"
    REPLAY_TOO_OLD = "replay_too_old"
    NO_KEY_DECRYPTS = "no_key_decrypts"

class CryptoError(ProtocolError):
    def __init__(self, failure: CryptoFailure, detail: str = ""):
        super().__init__(f"{failure.value}: {detail}" if detail else failure.value)
        self.failure = failure
