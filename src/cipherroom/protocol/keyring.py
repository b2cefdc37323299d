from __future__ import annotations
from collections import deque
from typing import Callable, Deque, List, Optional, Tuple

from ..core.constants import MAX_PREVIOUS_KEYS, MESSAGE_MAX_AGE_S
from ..core.crypto import DecryptedMessage, WireFormat, decrypt_message
from ..core.errors import CryptoError, CryptoFailure
from ..core.timeutil import now

class KeyRing:
    """Current session key plus a bounded ring of superseded keys.

    Superseded keys are decrypt-only; the newest is tried first.
    """

    def __init__(self, current: str = "", max_previous: int = MAX_PREVIOUS_KEYS):
        self.current = current
        self.previous: Deque[str] = deque(maxlen=max_previous)

    def rotate(self, new_key: str):
        if self.current and self.current != new_key:
            self.previous.appendleft(self.current)
        self.current = new_key

    def candidates(self) -> List[str]:
        keys = [self.current] if self.current else []
        return keys + list(self.previous)

    def clear(self):
        self.current = ""
        self.previous.clear()

    def decrypt_with_key(self, payload: str, enforce_freshness: bool = True,
                         max_age_s: float = MESSAGE_MAX_AGE_S,
                         clock: Callable[[], float] = now) -> Tuple[DecryptedMessage, str]:
        last: Optional[CryptoError] = None
        for key in self.candidates():
            try:
                msg = decrypt_message(payload, key, enforce_freshness=enforce_freshness,
                                      max_age_s=max_age_s, clock=clock)
            except CryptoError as e:
                # shape and age failures are the same under every key
                if e.failure in (CryptoFailure.MALFORMED_PAYLOAD, CryptoFailure.REPLAY_TOO_OLD):
                    raise
                last = e
                continue
            # a legacy HMAC mismatch means this key is not the one
            if msg.fmt is WireFormat.LEGACY and msg.verified is False:
                continue
            return msg, key

        raise CryptoError(CryptoFailure.NO_KEY_DECRYPTS, str(last) if last else "no keys held")

    def decrypt(self, payload: str, enforce_freshness: bool = True,
                max_age_s: float = MESSAGE_MAX_AGE_S,
                clock: Callable[[], float] = now) -> DecryptedMessage:
        return self.decrypt_with_key(payload, enforce_freshness, max_age_s, clock)[0]
