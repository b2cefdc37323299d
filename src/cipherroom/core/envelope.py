"""Wire shapes for encrypted payloads and signatures.

Two encodings coexist and carry no version tag, so a payload is
classified by shape: the current JSON shape is tried first, the legacy
colon-separated shape second, and anything else is rejected.
"""
from __future__ import annotations
import json
from dataclasses import dataclass
from typing import Optional, Union

from .errors import CryptoError, CryptoFailure

@dataclass(frozen=True)
class CurrentCiphertext:
    nonce: str
    ciphertext: str
    auth_tag: str

    def dumps(self) -> str:
        return json.dumps(
            {"nonce": self.nonce, "ciphertext": self.ciphertext, "authTag": self.auth_tag},
            separators=(",", ":"),
        )

@dataclass(frozen=True)
class LegacyCiphertext:
    iv: str
    ciphertext: str
    hmac: Optional[str] = None

    def dumps(self) -> str:
        parts = [self.iv, self.ciphertext]
        if self.hmac is not None:
            parts.append(self.hmac)
        return ":".join(parts)

@dataclass(frozen=True)
class CurrentSignature:
    signature: str
    timestamp: str

    def dumps(self) -> str:
        return json.dumps({"signature": self.signature, "timestamp": self.timestamp}, separators=(",", ":"))

@dataclass(frozen=True)
class LegacySignature:
    signature: str

    def dumps(self) -> str:
        return self.signature

EncryptedPayload = Union[CurrentCiphertext, LegacyCiphertext]
SignaturePayload = Union[CurrentSignature, LegacySignature]

def load_json_object(raw: str) -> Optional[dict]:
    try:
        parsed = json.loads(raw)
    except (ValueError, RecursionError):
        return None
    return parsed if isinstance(parsed, dict) else None

def _non_empty_str(v) -> bool:
    return isinstance(v, str) and len(v) > 0

def match_current_ciphertext(raw: str) -> Optional[CurrentCiphertext]:
    obj = load_json_object(raw)
    if obj is None:
        return None
    nonce, ct, tag = obj.get("nonce"), obj.get("ciphertext"), obj.get("authTag")
    if not (_non_empty_str(nonce) and _non_empty_str(ct) and _non_empty_str(tag)):
        return None
    return CurrentCiphertext(nonce=nonce, ciphertext=ct, auth_tag=tag)

def match_legacy_ciphertext(raw: str) -> Optional[LegacyCiphertext]:
    parts = raw.split(":")
    if len(parts) < 2 or not parts[0] or not parts[1]:
        return None
    return LegacyCiphertext(iv=parts[0], ciphertext=parts[1], hmac=parts[2] if len(parts) >= 3 else None)

def parse_encrypted(raw: str) -> EncryptedPayload:
    if not isinstance(raw, str) or not raw:
        raise CryptoError(CryptoFailure.MALFORMED_PAYLOAD, "empty payload")

    current = match_current_ciphertext(raw)
    if current is not None:
        return current

    legacy = match_legacy_ciphertext(raw)
    if legacy is not None:
        return legacy

    raise CryptoError(CryptoFailure.MALFORMED_PAYLOAD, "neither current nor legacy format")

def match_current_signature(raw: str) -> Optional[CurrentSignature]:
    obj = load_json_object(raw)
    if obj is None:
        return None
    sig, ts = obj.get("signature"), obj.get("timestamp")
    if not (_non_empty_str(sig) and _non_empty_str(ts)):
        return None
    return CurrentSignature(signature=sig, timestamp=ts)

def parse_signature(raw: str) -> SignaturePayload:
    if not isinstance(raw, str) or not raw:
        raise CryptoError(CryptoFailure.MALFORMED_PAYLOAD, "empty signature")
    return match_current_signature(raw) or LegacySignature(signature=raw)
