import pytest
from structlog.testing import capture_logs

from cipherroom.core.constants import NOT_IN_SESSION, UNIFORM_SESSION_DENIAL
from cipherroom.core.crypto import encrypt_message, generate_session_key, sign_message
from cipherroom.relay.coordinator import ConnectionContext

KEY = "a" * 64

def ctx(cid, address=None):
    return ConnectionContext(connection_id=cid, address=address)

def by_event(notes, event):
    return [n for n in notes if n.event == event]

def only(notes, event):
    found = by_event(notes, event)
    assert len(found) == 1, [n.event for n in notes]
    return found[0]

@pytest.fixture
def room(coordinator):
    """A session created by 'creator' with a key set and one guest joined."""
    created = only(coordinator.handle(ctx("creator"), "create-session", None), "session-created")
    code = created.payload["code"]
    coordinator.handle(ctx("creator"), "set-session-key", {"sessionKey": KEY})
    coordinator.handle(ctx("guest"), "join-session", {"code": code})
    return code

def test_create_session_reply(coordinator):
    note = only(coordinator.handle(ctx("c1"), "create-session", {}), "session-created")
    assert note.targets == ("c1",)
    assert set(note.payload) == {"code", "createdAt", "alias"}

def test_join_session_replies_and_roster(coordinator):
    code = only(coordinator.handle(ctx("creator"), "create-session", None), "session-created").payload["code"]
    coordinator.handle(ctx("creator"), "set-session-key", {"sessionKey": KEY})

    notes = coordinator.handle(ctx("guest"), "join-session", {"code": code})
    joined = only(notes, "session-joined")
    assert joined.targets == ("guest",)
    assert joined.payload["sessionKey"] == KEY
    assert joined.payload["creatorId"] == "creator"
    assert joined.payload["code"] == code

    announce = only(notes, "participant-joined")
    assert announce.targets == ("creator",)
    assert announce.payload["participantCount"] == 2

    roster = only(notes, "participant-list").payload["participants"]
    assert {p["id"]: p["isCreator"] for p in roster} == {"creator": True, "guest": False}

def test_join_unknown_code_uniform_denial(coordinator):
    note = only(coordinator.handle(ctx("guest"), "join-session", {"code": "QQQ999"}), "error")
    assert note.payload["message"] == UNIFORM_SESSION_DENIAL

def test_join_full_session_uniform_denial(coordinator, registry):
    code = only(coordinator.handle(ctx("creator"), "create-session", None), "session-created").payload["code"]
    registry.sessions[code].max_participants = 1
    note = only(coordinator.handle(ctx("guest"), "join-session", {"code": code}), "error")
    assert note.payload["message"] == UNIFORM_SESSION_DENIAL

def test_validation_error_names_field(coordinator):
    note = only(coordinator.handle(ctx("guest"), "join-session", {"code": "bad"}), "error")
    assert note.payload["field"] == "code"

def test_send_message_broadcasts_to_everyone(coordinator, room):
    key = generate_session_key()
    payload = {"encryptedContent": encrypt_message("hi", key), "signature": sign_message("hi", key)}
    note = only(coordinator.handle(ctx("guest"), "send-message", payload), "new-message")

    assert set(note.targets) == {"creator", "guest"}
    body = note.payload
    assert body["sender"] == "guest"
    assert body["encryptedContent"] == payload["encryptedContent"]
    assert body["signature"] == payload["signature"]
    assert set(body) == {"id", "sender", "senderName", "encryptedContent", "timestamp", "signature"}

def test_send_message_outside_session(coordinator):
    note = only(coordinator.handle(ctx("loner"), "send-message", {"encryptedContent": "aa:bb"}), "error")
    assert note.payload["message"] == NOT_IN_SESSION

def test_only_creator_sets_key(coordinator, room):
    note = only(coordinator.handle(ctx("guest"), "set-session-key", {"sessionKey": "b" * 64}), "error")
    assert note.payload["message"] == "Only the session creator can set the session key"

def test_rotation_pushes_new_key_to_others(coordinator, registry, room):
    notes = coordinator.handle(ctx("creator"), "set-session-key", {"sessionKey": "b" * 64})
    assert only(notes, "session-key-set").payload == {"rotated": True}
    rotated = only(notes, "key-rotated")
    assert rotated.targets == ("guest",)
    assert rotated.payload["sessionKey"] == "b" * 64
    assert registry.sessions[room].previous_keys == [KEY]

def test_first_key_pushed_to_early_joiners(coordinator):
    code = only(coordinator.handle(ctx("creator"), "create-session", None), "session-created").payload["code"]
    joined = only(coordinator.handle(ctx("guest"), "join-session", {"code": code}), "session-joined")
    assert joined.payload["sessionKey"] == ""

    notes = coordinator.handle(ctx("creator"), "set-session-key", {"sessionKey": KEY})
    assert only(notes, "session-key").targets == ("guest",)
    assert only(notes, "session-key-set").payload == {"rotated": False}

def test_rotate_key_prompts_creator_only(coordinator, room):
    note = only(coordinator.handle(ctx("creator"), "rotate-key", None), "generate-new-key")
    assert note.targets == ("creator",)

    denied = only(coordinator.handle(ctx("guest"), "rotate-key", None), "error")
    assert "creator" in denied.payload["message"]

def test_end_session_creator_only(coordinator, registry, room):
    denied = only(coordinator.handle(ctx("guest"), "end-session", None), "error")
    assert denied.payload["message"] == "Only the session creator can end the session"

    ended = only(coordinator.handle(ctx("creator"), "end-session", None), "session-ended")
    assert set(ended.targets) == {"creator", "guest"}
    assert registry.connections == {}

def test_leave_session(coordinator, room):
    notes = coordinator.handle(ctx("guest"), "leave-session", None)
    assert only(notes, "session-left").targets == ("guest",)
    assert only(notes, "participant-left").targets == ("creator",)

    again = only(coordinator.handle(ctx("guest"), "leave-session", None), "error")
    assert again.payload["message"] == NOT_IN_SESSION

def test_disconnect_of_creator_ends_session(coordinator, registry, limiter, room):
    notes = coordinator.disconnect("creator")
    assert only(notes, "session-ended").targets == ("guest",)
    assert room not in registry.sessions
    assert "creator" not in limiter.records

def test_unknown_operation(coordinator):
    note = only(coordinator.handle(ctx("c1"), "teleport", {}), "error")
    assert "Unknown operation" in note.payload["message"]

def test_event_ceiling_rejects_without_violation(coordinator, limiter):
    for _ in range(5):
        coordinator.handle(ctx("c1"), "rotate-key", None)
    note = only(coordinator.handle(ctx("c1"), "rotate-key", None), "error")
    assert note.payload["message"].startswith("Rate limit exceeded for rotate-key")
    assert limiter.records["c1"].violations == 0

def test_blocked_connection_gets_retry_hint(coordinator, limiter, registry):
    for _ in range(100):
        limiter.check("c1")
    before = registry.live_count()

    note = only(coordinator.handle(ctx("c1"), "create-session", None), "error")
    assert "try again in 5 minutes" in note.payload["message"]
    assert note.payload["retryAfter"] == 300
    assert registry.live_count() == before

def test_rotation_needed_prompt_on_activity(coordinator, registry, clock, room):
    for _ in range(4):
        clock.advance(4 * 60)
        registry.get_session(room)
        registry.sessions[room].expires_at = clock() + 600

    payload = {"encryptedContent": encrypt_message("hi", KEY)}
    notes = coordinator.handle(ctx("creator"), "send-message", payload)
    assert only(notes, "key-rotation-needed").targets == ("creator",)

def denial_reasons(logs):
    return [(e["op"], e["reason"]) for e in logs if e["event"] == "session_denied"]

def test_denied_requests_reply_and_log_operation(coordinator, room):
    with capture_logs() as logs:
        notes = coordinator.handle(ctx("guest"), "end-session", None)
        assert only(notes, "error").payload["message"] == "Only the session creator can end the session"
        notes = coordinator.handle(ctx("stranger"), "send-message", {"encryptedContent": "x"})
        assert only(notes, "error").payload["message"] == NOT_IN_SESSION
        notes = coordinator.handle(ctx("guest"), "join-session", {"code": "bad"})
        assert only(notes, "error").payload["field"] == "code"

    assert denial_reasons(logs) == [
        ("end-session", "unauthorized"),
        ("send-message", "not_in_session"),
    ]
    assert [e["op"] for e in logs if e["event"] == "validation_failed"] == ["join-session"]

@pytest.mark.parametrize("setup,reason", [
    (lambda registry, clock, code: None, "not_found"),
    (lambda registry, clock, code: clock.advance(601), "expired"),
    (lambda registry, clock, code: clock.advance(301), "idle"),
    (lambda registry, clock, code: registry.revoke_session(code, "compromised"), "revoked"),
    (lambda registry, clock, code: setattr(registry.sessions[code], "max_participants", 1), "full"),
])
def test_failed_join_logs_reason_behind_uniform_reply(coordinator, registry, clock, setup, reason):
    code = only(coordinator.handle(ctx("creator"), "create-session", None), "session-created").payload["code"]
    registry.drain()
    setup(registry, clock, code)
    target = code if reason != "not_found" else "QQQ999"

    with capture_logs() as logs:
        note = only(coordinator.handle(ctx("guest"), "join-session", {"code": target}), "error")

    assert note.payload["message"] == UNIFORM_SESSION_DENIAL
    assert denial_reasons(logs) == [("join-session", reason)]
