import re

import pytest

from cipherroom.core.constants import ALIAS_ADJECTIVES, ALIAS_ANIMALS
from cipherroom.relay import sessions as sessions_mod
from cipherroom.relay.sessions import SessionState, generate_alias

CODE_RE = re.compile(r"^[A-Z0-9]{6}$")

def events(notifications):
    return [n.event for n in notifications]

def test_create_session_code_shape_and_creator(registry, clock):
    session = registry.create_session("creator")
    assert CODE_RE.match(session.code)
    assert session.creator_id == "creator"
    assert session.session_key == ""
    assert session.expires_at == clock() + 600
    assert list(session.participants) == ["creator"]
    assert registry.connections["creator"] == session.code

def test_create_session_resamples_on_collision(registry, monkeypatch):
    first = registry.create_session("a")
    codes = iter([first.code, first.code, "ZZZ999"])
    monkeypatch.setattr(sessions_mod, "generate_session_code", lambda: next(codes))

    second = registry.create_session("b")
    assert second.code == "ZZZ999"

def test_alias_is_adjective_animal():
    alias = generate_alias()
    assert any(alias.startswith(a) and alias[len(a):] in ALIAS_ANIMALS for a in ALIAS_ADJECTIVES)

def test_join_adds_participant_and_extends_expiry(registry, clock):
    session = registry.create_session("creator")
    clock.advance(120)

    joined = registry.join_session("guest", session.code)
    assert joined is session
    assert "guest" in session.participants
    assert session.last_activity == clock()
    assert session.expires_at == clock() + 600
    assert registry.connections["guest"] == session.code

def test_join_unknown_code(registry):
    assert registry.join_session("guest", "ABC123") is None
    assert "guest" not in registry.connections

def test_join_full_session_leaves_count_unchanged(registry):
    session = registry.create_session("creator", max_participants=2)
    assert registry.join_session("g1", session.code)
    assert registry.status(session.code) is SessionState.FULL

    assert registry.join_session("g2", session.code) is None
    assert len(session.participants) == 2
    assert "g2" not in registry.connections

def test_join_after_absolute_expiry(registry, clock):
    session = registry.create_session("creator")
    for _ in range(2):
        clock.advance(4 * 60)
        assert registry.get_session(session.code) is not None
    clock.advance(3 * 60)

    assert registry.status(session.code) is SessionState.EXPIRED
    assert registry.join_session("guest", session.code) is None
    assert session.code not in registry.sessions
    assert "creator" not in registry.connections

def test_join_after_idle_timeout(registry, clock):
    session = registry.create_session("creator")
    clock.advance(6 * 60)

    assert registry.status(session.code) is SessionState.IDLE
    assert registry.join_session("guest", session.code) is None
    assert events(registry.drain()) == ["session-ended"]

def test_get_session_touches_activity_and_flags_rotation(registry, clock):
    session = registry.create_session("creator")
    registry.set_session_key(session.code, "k" * 64)

    # keep the session alive past the rotation interval
    for _ in range(4):
        clock.advance(4 * 60)
        registry.join_session(f"g{clock()}", session.code)

    got = registry.get_session(session.code)
    assert got.rotation_needed is True
    assert got.last_activity == clock()
    assert got.session_key == "k" * 64

def test_get_session_by_connection(registry):
    session = registry.create_session("creator")
    assert registry.get_session_by_connection("creator") is session
    assert registry.get_session_by_connection("stranger") is None

def test_set_session_key_keeps_three_previous_keys(registry):
    session = registry.create_session("creator")
    for i in range(5):
        assert registry.set_session_key(session.code, f"key{i}")

    assert session.session_key == "key4"
    assert session.previous_keys == ["key3", "key2", "key1"]
    assert session.key_rotation_time is not None

def test_set_session_key_unknown_session(registry):
    assert registry.set_session_key("NOPE00", "k") is False

def test_leave_by_participant_keeps_session(registry, clock):
    session = registry.create_session("creator")
    registry.join_session("guest", session.code)
    registry.drain()
    clock.advance(60)

    assert registry.leave_session("guest") is True
    notes = registry.drain()
    assert events(notes) == ["participant-left"]
    assert notes[0].targets == ("creator",)
    assert notes[0].payload["participantCount"] == 1
    assert session.expires_at == clock() + 600
    assert "guest" not in registry.connections

def test_leave_by_creator_ends_session(registry):
    session = registry.create_session("creator")
    registry.join_session("g1", session.code)
    registry.join_session("g2", session.code)

    assert registry.leave_session("creator") is True
    notes = registry.drain()
    assert events(notes) == ["participant-left", "session-ended"]
    assert "creator left" in notes[-1].payload["message"]
    assert set(notes[-1].targets) == {"g1", "g2"}
    assert session.code not in registry.sessions
    assert not any(code == session.code for code in registry.connections.values())

def test_last_participant_leaving_ends_session(registry):
    session = registry.create_session("creator")
    session.creator_id = "someone-else"

    assert registry.leave_session("creator") is True
    assert session.code not in registry.sessions
    assert registry.connections == {}

def test_leave_when_not_in_session(registry):
    assert registry.leave_session("nobody") is False

def test_end_session_purges_index(registry):
    session = registry.create_session("creator")
    for g in ("g1", "g2", "g3"):
        registry.join_session(g, session.code)

    assert registry.end_session(session.code) is True
    notes = registry.drain()
    assert events(notes) == ["session-ended"]
    assert set(notes[0].targets) == {"creator", "g1", "g2", "g3"}
    assert registry.connections == {}
    assert registry.end_session(session.code) is False

def test_revoked_session_unreachable_then_swept(registry):
    session = registry.create_session("creator")
    registry.join_session("guest", session.code)
    assert registry.revoke_session(session.code, "compromised")

    notes = registry.drain()
    assert events(notes) == ["session-ended"]
    assert set(notes[0].targets) == {"creator", "guest"}
    assert notes[0].payload["message"] == "compromised"
    assert registry.connections == {}

    assert registry.get_session(session.code) is None
    assert registry.join_session("late", session.code) is None
    assert registry.status(session.code) is SessionState.REVOKED
    assert registry.revoke_session(session.code, "again") is False

    assert registry.sweep() == []
    assert session.code not in registry.sessions

def test_revoke_without_reason_uses_default_message(registry):
    session = registry.create_session("creator")
    registry.revoke_session(session.code)
    assert registry.drain()[0].payload["message"] == "The session has been revoked"

def test_sweep_evicts_expired_and_idle(registry, clock):
    idle = registry.create_session("a")
    clock.advance(3 * 60)
    fresh = registry.create_session("b")
    clock.advance(3 * 60)

    notes = registry.sweep()
    assert [n.payload["message"] for n in notes] == ["The session has ended due to inactivity"]
    assert idle.code not in registry.sessions
    assert fresh.code in registry.sessions

def test_sweep_prompts_only_creator_for_rotation(registry, clock):
    session = registry.create_session("creator")
    registry.join_session("guest", session.code)
    registry.set_session_key(session.code, "k" * 64)
    registry.drain()

    for _ in range(4):
        clock.advance(4 * 60)
        registry.get_session(session.code)
        session.expires_at = clock() + 600

    notes = registry.sweep()
    assert events(notes) == ["key-rotation-needed"]
    assert notes[0].targets == ("creator",)
    assert session.session_key == "k" * 64
