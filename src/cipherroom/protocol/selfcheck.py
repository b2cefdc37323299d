from __future__ import annotations
import secrets
import sys

from ..core.crypto import (
    WireFormat, decrypt_message, derive_shared_secret, encrypt_message,
    generate_key_pair, generate_session_key, require_crypto, require_ec,
    sign_message, verify_signature,
)
from ..core.encoding import b64d
from ..core.envelope import CurrentCiphertext, match_current_ciphertext
from ..core.errors import CryptoError

def flip_first_hex(s: str) -> str:
    return ("0" if s[0] != "0" else "1") + s[1:]

def _round_trip(fmt: WireFormat) -> bool:
    key = generate_session_key()
    return decrypt_message(encrypt_message("self-check", key, fmt), key).content == "self-check"

def _tamper_detected() -> bool:
    key = generate_session_key()
    env = match_current_ciphertext(encrypt_message("self-check", key))
    forged = CurrentCiphertext(env.nonce, env.ciphertext, flip_first_hex(env.auth_tag)).dumps()
    try:
        decrypt_message(forged, key)
    except CryptoError:
        return True
    return False

def _ecdh_agrees() -> bool:
    a, b = generate_key_pair(), generate_key_pair()
    return derive_shared_secret(a.private_hex, b.public_hex) == derive_shared_secret(b.private_hex, a.public_hex)

def security_self_check(logger):
    checks = []

    checks.append(("Python >= 3.9", sys.version_info >= (3, 9), "Python 3.9+ required"))

    try:
        test = [secrets.randbits(16) for _ in range(10)]
        checks.append(("Random source", all(x != 0 for x in test), "Weak random detected"))
    except Exception:
        checks.append(("Random source", False, "Random test failed"))

    try:
        require_crypto()
        require_ec()
        checks.append(("Cryptography", True, ""))
    except Exception:
        checks.append(("Cryptography", False, "cryptography package not installed"))

    for fmt in WireFormat:
        try:
            checks.append((f"Round trip ({fmt.value})", _round_trip(fmt), "Decrypted text differs"))
        except Exception as e:
            checks.append((f"Round trip ({fmt.value})", False, str(e)))

    try:
        checks.append(("Auth tag tamper detection", _tamper_detected(), "Forged auth tag accepted"))
    except Exception as e:
        checks.append(("Auth tag tamper detection", False, str(e)))

    try:
        key = generate_session_key()
        ok = verify_signature("self-check", sign_message("self-check", key), key)
        checks.append(("Signature verification", ok, "Valid signature rejected"))
    except Exception as e:
        checks.append(("Signature verification", False, str(e)))

    try:
        checks.append(("ECDH agreement", _ecdh_agrees(), "Derived keys differ"))
    except Exception as e:
        checks.append(("ECDH agreement", False, str(e)))

    try:
        b64d("aW52YWxpZCBwYWRkaW5n")
        checks.append(("Base64 strict decode (valid)", True, ""))
    except Exception:
        checks.append(("Base64 strict decode (valid)", False, "Valid base64 rejected"))

    try:
        b64d("invalid!@#$")
        checks.append(("Base64 strict decode (invalid)", False, "Invalid base64 accepted"))
    except ValueError:
        checks.append(("Base64 strict decode (invalid)", True, ""))

    all_ok = True
    for name, ok, reason in checks:
        all_ok = all_ok and ok
        if ok:
            logger.info("security_check", check=name, status="OK")
        else:
            logger.error("security_check", check=name, status="FAILED", reason=reason)

    if not all_ok:
        raise RuntimeError("Security self-check failed")

    logger.info("security_self_check_passed")
    return True
