from __future__ import annotations
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .constants import (
    AUTH_TAG_BYTES, HKDF_INFO, HKDF_SALT, LEGACY_IV_BYTES, MESSAGE_MAX_AGE_S,
    NONCE_BYTES, SESSION_KEY_BYTES,
)
from .encoding import b64d, b64e, hexd, hexe
from .envelope import (
    CurrentCiphertext, CurrentSignature, LegacyCiphertext, LegacySignature,
    parse_encrypted, parse_signature,
)
from .errors import CryptoError, CryptoFailure
from .timeutil import now, to_millis

def hmac_sha256(k: bytes, b: bytes) -> bytes:
    return hmac.new(k, b, hashlib.sha256).digest()

def hkdf_sha256(ikm: bytes, salt: bytes, info: bytes, n: int) -> bytes:
    prk = hmac.new(salt, ikm, hashlib.sha256).digest()
    out, t = b"", b""
    c = 1
    while len(out) < n:
        t = hmac.new(prk, t + info + bytes([c]), hashlib.sha256).digest()
        out += t
        c += 1
    return out[:n]

def safe_compare(a: bytes, b: bytes, expected_length: int = None) -> bool:
    if expected_length and (len(a) != expected_length or len(b) != expected_length):
        return False
    return hmac.compare_digest(a, b)

class WireFormat(Enum):
    CURRENT = "current"
    LEGACY = "legacy"

@dataclass(frozen=True)
class DecryptedMessage:
    content: str
    fmt: WireFormat
    sent_at_ms: Optional[int] = None
    # None when the payload carried no integrity field to check
    verified: Optional[bool] = True
    stale: bool = False

@dataclass(frozen=True)
class KeyPair:
    private_hex: str
    public_hex: str

# --- Dependencies ---

def require_crypto():
    try:
        from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
        from cryptography.hazmat.primitives import padding
        return Cipher, algorithms, modes, padding
    except ImportError as e:
        raise RuntimeError("Missing dependency 'cryptography'") from e

def require_ec():
    try:
        from cryptography.hazmat.primitives.asymmetric import ec
        from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
        return ec, Encoding, PublicFormat
    except ImportError as e:
        raise RuntimeError("Missing dependency 'cryptography'") from e

# --- Keys ---

def key_bytes(key: str) -> bytes:
    """Decode a hex session key into AES key material."""
    try:
        k = hexd(key)
    except (ValueError, TypeError) as e:
        raise CryptoError(CryptoFailure.INVALID_KEY, str(e))
    if len(k) not in (16, 24, 32):
        raise CryptoError(CryptoFailure.INVALID_KEY, f"key must be 16, 24 or 32 bytes, got {len(k)}")
    return k

def generate_session_key() -> str:
    return hexe(secrets.token_bytes(SESSION_KEY_BYTES))

def generate_random_value(length: int = 16) -> str:
    return hexe(secrets.token_bytes(length))

def generate_key_pair() -> KeyPair:
    """Generate a P-256 key pair, hex encoded (uncompressed public point)."""
    ec, Encoding, PublicFormat = require_ec()
    priv = ec.generate_private_key(ec.SECP256R1())
    pub = priv.public_key().public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
    return KeyPair(
        private_hex=priv.private_numbers().private_value.to_bytes(32, "big").hex(),
        public_hex=hexe(pub),
    )

def derive_shared_secret(my_private_hex: str, their_public_hex: str, info: bytes = HKDF_INFO) -> str:
    """ECDH over P-256, then HKDF extract/expand into a 32-byte hex key.

    The raw ECDH output is never returned.
    """
    ec, _, _ = require_ec()
    try:
        priv = ec.derive_private_key(int.from_bytes(hexd(my_private_hex), "big"), ec.SECP256R1())
        peer = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), hexd(their_public_hex))
        shared = priv.exchange(ec.ECDH(), peer)
    except ValueError as e:
        raise CryptoError(CryptoFailure.INVALID_KEY, str(e))
    return hexe(hkdf_sha256(shared, salt=HKDF_SALT, info=info, n=SESSION_KEY_BYTES))

# --- Encryption ---

def _ctr_block(nonce: bytes) -> bytes:
    return nonce + b"\x00" * (16 - len(nonce))

def _auth_tag(k: bytes, nonce_hex: str, ct_b64: str) -> str:
    return hexe(hmac_sha256(k, (nonce_hex + ct_b64).encode("utf-8"))[:AUTH_TAG_BYTES])

def encrypt_message(message: str, key: str, fmt: WireFormat = WireFormat.CURRENT,
                    clock: Callable[[], float] = now) -> str:
    Cipher, algorithms, modes, padding = require_crypto()
    k = key_bytes(key)
    pt = message.encode("utf-8")

    if fmt is WireFormat.LEGACY:
        iv = secrets.token_bytes(LEGACY_IV_BYTES)
        padder = padding.PKCS7(128).padder()
        padded = padder.update(pt) + padder.finalize()
        enc = Cipher(algorithms.AES(k), modes.CBC(iv)).encryptor()
        ct = enc.update(padded) + enc.finalize()
        return LegacyCiphertext(iv=hexe(iv), ciphertext=b64e(ct), hmac=hexe(hmac_sha256(k, pt))).dumps()

    nonce = secrets.token_bytes(NONCE_BYTES)
    inner = json.dumps(
        {"content": message, "timestamp": str(to_millis(clock()))},
        ensure_ascii=False, separators=(",", ":"),
    ).encode("utf-8")
    enc = Cipher(algorithms.AES(k), modes.CTR(_ctr_block(nonce))).encryptor()
    ct = enc.update(inner) + enc.finalize()

    nonce_hex, ct_b64 = hexe(nonce), b64e(ct)
    return CurrentCiphertext(nonce=nonce_hex, ciphertext=ct_b64, auth_tag=_auth_tag(k, nonce_hex, ct_b64)).dumps()

def _check_age(sent_at_ms: int, max_age_s: float, enforce: bool, clock: Callable[[], float]) -> bool:
    """Returns True when the timestamp is outside the freshness window."""
    stale = to_millis(clock()) - sent_at_ms > max_age_s * 1000
    if stale and enforce:
        raise CryptoError(CryptoFailure.REPLAY_TOO_OLD, f"older than {int(max_age_s)}s")
    return stale

def _decrypt_current(env: CurrentCiphertext, k: bytes, enforce_freshness: bool,
                     max_age_s: float, clock: Callable[[], float]) -> DecryptedMessage:
    Cipher, algorithms, modes, _ = require_crypto()

    expected = _auth_tag(k, env.nonce, env.ciphertext)
    if not safe_compare(expected.encode("ascii"), env.auth_tag.encode("utf-8")):
        raise CryptoError(CryptoFailure.AUTHENTICATION_FAILED, "auth tag mismatch")

    try:
        nonce = hexd(env.nonce)
        ct = b64d(env.ciphertext)
    except ValueError as e:
        raise CryptoError(CryptoFailure.MALFORMED_PAYLOAD, str(e))
    if len(nonce) != NONCE_BYTES:
        raise CryptoError(CryptoFailure.MALFORMED_PAYLOAD, f"nonce must be {NONCE_BYTES} bytes")

    dec = Cipher(algorithms.AES(k), modes.CTR(_ctr_block(nonce))).decryptor()
    try:
        text = (dec.update(ct) + dec.finalize()).decode("utf-8")
    except UnicodeDecodeError as e:
        raise CryptoError(CryptoFailure.MALFORMED_PAYLOAD, str(e))

    try:
        inner = json.loads(text)
    except ValueError:
        inner = None
    if not isinstance(inner, dict) or not isinstance(inner.get("content"), str):
        return DecryptedMessage(content=text, fmt=WireFormat.CURRENT)

    try:
        sent_at_ms = int(inner.get("timestamp"))
    except (TypeError, ValueError):
        raise CryptoError(CryptoFailure.MALFORMED_PAYLOAD, "bad timestamp")

    stale = _check_age(sent_at_ms, max_age_s, enforce_freshness, clock)
    return DecryptedMessage(content=inner["content"], fmt=WireFormat.CURRENT, sent_at_ms=sent_at_ms, stale=stale)

def _decrypt_legacy(env: LegacyCiphertext, k: bytes) -> DecryptedMessage:
    Cipher, algorithms, modes, padding = require_crypto()
    try:
        iv = hexd(env.iv)
        ct = b64d(env.ciphertext)
    except ValueError as e:
        raise CryptoError(CryptoFailure.MALFORMED_PAYLOAD, str(e))
    if len(iv) != LEGACY_IV_BYTES or not ct or len(ct) % 16:
        raise CryptoError(CryptoFailure.MALFORMED_PAYLOAD, "bad legacy iv or ciphertext length")

    dec = Cipher(algorithms.AES(k), modes.CBC(iv)).decryptor()
    padded = dec.update(ct) + dec.finalize()
    try:
        unpadder = padding.PKCS7(128).unpadder()
        pt = unpadder.update(padded) + unpadder.finalize()
        text = pt.decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        raise CryptoError(CryptoFailure.AUTHENTICATION_FAILED, "legacy ciphertext did not decrypt")

    verified = None
    if env.hmac is not None:
        verified = safe_compare(hexe(hmac_sha256(k, pt)).encode("ascii"), env.hmac.encode("utf-8"))
    return DecryptedMessage(content=text, fmt=WireFormat.LEGACY, verified=verified)

def decrypt_message(payload: str, key: str, enforce_freshness: bool = True,
                    max_age_s: float = MESSAGE_MAX_AGE_S,
                    clock: Callable[[], float] = now) -> DecryptedMessage:
    """Decrypt either wire format.

    Current payloads hard-fail on a bad auth tag and, when enforced, on a
    timestamp outside the freshness window. Legacy payloads report an HMAC
    mismatch through ``verified`` instead of failing.
    """
    env = parse_encrypted(payload)
    k = key_bytes(key)
    if isinstance(env, CurrentCiphertext):
        return _decrypt_current(env, k, enforce_freshness, max_age_s, clock)
    return _decrypt_legacy(env, k)

# --- Signatures ---

def _signed_blob(message: str, timestamp: str) -> bytes:
    return json.dumps({"message": message, "timestamp": timestamp},
                      ensure_ascii=False, separators=(",", ":")).encode("utf-8")

def sign_message(message: str, key: str, fmt: WireFormat = WireFormat.CURRENT,
                 clock: Callable[[], float] = now) -> str:
    k = key_bytes(key)
    if fmt is WireFormat.LEGACY:
        return LegacySignature(hexe(hmac_sha256(k, message.encode("utf-8")))).dumps()

    ts = str(to_millis(clock()))
    return CurrentSignature(signature=hexe(hmac_sha256(k, _signed_blob(message, ts))), timestamp=ts).dumps()

def verify_signature(message: str, signature: str, key: str,
                     max_age_s: float = MESSAGE_MAX_AGE_S,
                     clock: Callable[[], float] = now) -> bool:
    try:
        k = key_bytes(key)
        sig = parse_signature(signature)
    except CryptoError:
        return False

    if isinstance(sig, CurrentSignature):
        try:
            signed_at = int(sig.timestamp)
        except ValueError:
            return False
        if to_millis(clock()) - signed_at > max_age_s * 1000:
            return False
        expected = hexe(hmac_sha256(k, _signed_blob(message, sig.timestamp)))
        return safe_compare(expected.encode("ascii"), sig.signature.encode("utf-8"))

    expected = hexe(hmac_sha256(k, message.encode("utf-8")))
    return safe_compare(expected.encode("ascii"), sig.signature.encode("utf-8"))
