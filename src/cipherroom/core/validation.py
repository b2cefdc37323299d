from __future__ import annotations
import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .constants import (
    MAX_MSG_BYTES, MAX_JSON_DEPTH, MAX_JSON_KEYS,
    MAX_ENCRYPTED_CONTENT, MAX_SIGNATURE, MIN_SESSION_KEY, MAX_SESSION_KEY,
    SESSION_CODE_LENGTH,
)
from .envelope import load_json_object, match_current_ciphertext, match_current_signature
from .errors import ValidationError

def fuzz_resistant_json_loads(s: str) -> Dict[str, Any]:
    if len(s) > MAX_MSG_BYTES * 2:
        raise ValueError("Message too large")

    def object_hook(obj):
        if len(obj) > MAX_JSON_KEYS:
            raise ValueError("Too many JSON keys")
        return obj

    parsed = json.loads(s, object_hook=object_hook)

    def check_depth(obj, depth=0):
        if depth > MAX_JSON_DEPTH:
            raise ValueError("JSON nesting too deep")
        if isinstance(obj, dict):
            for v in obj.values():
                check_depth(v, depth + 1)
        elif isinstance(obj, list):
            for v in obj:
                check_depth(v, depth + 1)

    check_depth(parsed)
    if not isinstance(parsed, dict):
        raise ValueError("Message must be JSON object")
    return parsed

def json_dumps_sorted(o: Any) -> str:
    return json.dumps(o, ensure_ascii=False, separators=(",", ":"), sort_keys=True)

# --- Per-event field rules ---

_CODE_RE = re.compile(rf"^[A-Z0-9]{{{SESSION_CODE_LENGTH}}}$")

@dataclass(frozen=True)
class FieldRule:
    field: str
    check: Callable[[Any], bool]
    message: str
    optional: bool = False

def _bounded_str(v: Any, max_len: int, min_len: int = 1) -> bool:
    return isinstance(v, str) and min_len <= len(v) <= max_len

def _encrypted_content_ok(v: Any) -> bool:
    if not _bounded_str(v, MAX_ENCRYPTED_CONTENT):
        return False
    # JSON text must carry the current shape; any other string is taken as legacy
    if load_json_object(v) is not None:
        return match_current_ciphertext(v) is not None
    return True

def _signature_ok(v: Any) -> bool:
    if not _bounded_str(v, MAX_SIGNATURE):
        return False
    if load_json_object(v) is not None:
        return match_current_signature(v) is not None
    return True

VALIDATION_RULES: Dict[str, List[FieldRule]] = {
    "create-session": [],
    "join-session": [
        FieldRule("code", lambda v: isinstance(v, str) and bool(_CODE_RE.match(v)),
                  "Session code must be a 6-character alphanumeric string"),
    ],
    "send-message": [
        FieldRule("encryptedContent", _encrypted_content_ok,
                  "Message content must be a properly formatted encrypted message"),
        FieldRule("signature", _signature_ok,
                  "Message signature must be properly formatted", optional=True),
    ],
    "set-session-key": [
        FieldRule("sessionKey", lambda v: _bounded_str(v, MAX_SESSION_KEY, MIN_SESSION_KEY),
                  "Session key must be a string between 32 and 256 characters"),
    ],
    "leave-session": [],
    "end-session": [],
    "rotate-key": [],
}

def validate_event(event: str, data: Any) -> Dict[str, Any]:
    """Check an inbound payload against the rules for its event.

    Events without rules pass through untouched. Returns the payload as a
    dict, raises ValidationError naming the first offending field.
    """
    rules = VALIDATION_RULES.get(event)
    if rules is None:
        return data if isinstance(data, dict) else {}

    if data is None and not rules:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("payload", "Invalid data format")

    for rule in rules:
        value: Optional[Any] = data.get(rule.field)
        if value is None:
            if rule.optional:
                continue
            raise ValidationError(rule.field, rule.message)
        if not rule.check(value):
            raise ValidationError(rule.field, rule.message)
    return data
