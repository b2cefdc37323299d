from __future__ import annotations
import string

PROTO_NAME = "CIPHERROOM"
PROTO_VER = "1.0"

# --- Sessions ---

SESSION_CODE_ALPHABET = string.ascii_uppercase + string.digits
SESSION_CODE_LENGTH = 6

SESSION_TTL_S = 10 * 60
SESSION_IDLE_S = 5 * 60
KEY_ROTATION_S = 15 * 60
MAX_PREVIOUS_KEYS = 3
SESSION_SWEEP_S = 60
DEFAULT_MAX_PARTICIPANTS = 10

ALIAS_ADJECTIVES = ["Happy", "Brave", "Clever", "Gentle", "Wise", "Swift", "Calm", "Bold", "Bright", "Kind"]
ALIAS_ANIMALS = ["Panda", "Tiger", "Eagle", "Dolphin", "Fox", "Wolf", "Owl", "Bear", "Lion", "Hawk"]

# --- Rate limiting ---

RATE_WINDOW_S = 60
MAX_REQUESTS_PER_CONNECTION = 100
MAX_REQUESTS_PER_ADDRESS = 300

BLOCK_LADDER_S = (5 * 60, 15 * 60, 60 * 60, 24 * 60 * 60)
VIOLATION_EXPIRY_S = 24 * 60 * 60

EVENT_LIMITS = {
    "create-session": 5,
    "join-session": 10,
    "send-message": 60,
    "set-session-key": 5,
    "end-session": 5,
    "leave-session": 10,
    "rotate-key": 5,
}

# --- Crypto ---

MESSAGE_MAX_AGE_S = 5 * 60
SESSION_KEY_BYTES = 32
LEGACY_IV_BYTES = 16
NONCE_BYTES = 12
AUTH_TAG_BYTES = 16

HKDF_SALT = b"cipherroom-chat-salt"
HKDF_INFO = b"cipherroom|session-key|v1"

UNDECRYPTABLE_PLACEHOLDER = "[undecryptable message]"

# --- Wire limits ---

MAX_MSG_BYTES = 64 * 1024
MAX_JSON_DEPTH = 10
MAX_JSON_KEYS = 100

MAX_ENCRYPTED_CONTENT = 20000
MAX_SIGNATURE = 10000
MIN_SESSION_KEY = 32
MAX_SESSION_KEY = 256

MAX_B64_LENGTH = 64 * 1024  # Max base64 encoded length

UNIFORM_SESSION_DENIAL = "Invalid session code or session expired"
NOT_IN_SESSION = "You are not in a session"
