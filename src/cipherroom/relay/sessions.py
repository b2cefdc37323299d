from __future__ import annotations
import secrets
import threading
import uuid
from enum import Enum, auto
from typing import Callable, Dict, List, Optional

from ..core.constants import (
    ALIAS_ADJECTIVES, ALIAS_ANIMALS, DEFAULT_MAX_PARTICIPANTS, KEY_ROTATION_S,
    MAX_PREVIOUS_KEYS, SESSION_CODE_ALPHABET, SESSION_CODE_LENGTH,
    SESSION_IDLE_S, SESSION_TTL_S,
)
from ..core.timeutil import now, to_millis
from .events import Notification

def generate_session_code() -> str:
    return "".join(secrets.choice(SESSION_CODE_ALPHABET) for _ in range(SESSION_CODE_LENGTH))

def generate_alias() -> str:
    return secrets.choice(ALIAS_ADJECTIVES) + secrets.choice(ALIAS_ANIMALS)

class SessionState(Enum):
    ACTIVE = auto()
    FULL = auto()
    IDLE = auto()
    EXPIRED = auto()
    REVOKED = auto()
    NOT_FOUND = auto()

class Session:
    def __init__(self, code: str, creator_id: str, created_at: float,
                 max_participants: int = DEFAULT_MAX_PARTICIPANTS):
        self.id = str(uuid.uuid4())
        self.code = code
        self.creator_id = creator_id
        self.created_at = created_at
        self.expires_at = created_at + SESSION_TTL_S
        self.last_activity = created_at
        self.participants: Dict[str, str] = {}
        self.session_key = ""
        self.previous_keys: List[str] = []
        self.key_rotation_time: Optional[float] = None
        self.max_participants = max_participants
        self.revoked = False
        self.rotation_needed = False

    def is_creator(self, connection_id: str) -> bool:
        return connection_id == self.creator_id

    def is_full(self) -> bool:
        return len(self.participants) >= self.max_participants

    def state(self, t: float) -> SessionState:
        if self.revoked:
            return SessionState.REVOKED
        if t > self.expires_at:
            return SessionState.EXPIRED
        if t - self.last_activity > SESSION_IDLE_S:
            return SessionState.IDLE
        if self.is_full():
            return SessionState.FULL
        return SessionState.ACTIVE

    def rotation_due(self, t: float) -> bool:
        return self.key_rotation_time is not None and t - self.key_rotation_time > KEY_ROTATION_S

    def touch(self, t: float, extend: bool = False):
        self.last_activity = t
        if extend:
            self.expires_at = t + SESSION_TTL_S

    def roster(self) -> List[Dict[str, object]]:
        return [
            {"id": cid, "alias": alias, "isCreator": self.is_creator(cid)}
            for cid, alias in self.participants.items()
        ]

    def describe(self) -> Dict[str, object]:
        return {"code": self.code, "createdAt": to_millis(self.created_at)}

_TERMINATION_MESSAGES = {
    SessionState.EXPIRED: "The session has expired",
    SessionState.IDLE: "The session has ended due to inactivity",
    SessionState.REVOKED: "The session has been revoked",
}

class SessionRegistry:
    """Owns every live session and the connection -> code index.

    Mutating calls queue their broadcasts in ``outbox``; callers drain it
    after the call returns so notifications always follow the mutation.
    """

    def __init__(self, logger, clock: Callable[[], float] = now):
        self.sessions: Dict[str, Session] = {}
        self.connections: Dict[str, str] = {}
        self.outbox: List[Notification] = []
        self.lock = threading.RLock()
        self.clock = clock
        self.logger = logger

    def drain(self) -> List[Notification]:
        with self.lock:
            out, self.outbox = self.outbox, []
            return out

    def _broadcast(self, session: Session, event: str, payload: Dict[str, object], exclude: str = None):
        targets = [cid for cid in session.participants if cid != exclude]
        if targets:
            self.outbox.append(Notification.to(targets, event, payload))

    def create_session(self, creator_id: str, max_participants: int = DEFAULT_MAX_PARTICIPANTS) -> Session:
        with self.lock:
            while True:
                code = generate_session_code()
                if code not in self.sessions:
                    break

            session = Session(code, creator_id, self.clock(), max_participants)
            session.participants[creator_id] = generate_alias()
            self.sessions[code] = session
            self.connections[creator_id] = code
            self.logger.info("session_created", session_code=code, max_participants=max_participants)
            return session

    def status(self, code: str) -> SessionState:
        """Read-only state probe; never evicts or touches."""
        with self.lock:
            session = self.sessions.get(code)
            if session is None:
                return SessionState.NOT_FOUND
            return session.state(self.clock())

    def _live(self, code: str) -> Optional[Session]:
        session = self.sessions.get(code)
        if session is None:
            return None

        state = session.state(self.clock())
        if state in (SessionState.EXPIRED, SessionState.IDLE):
            self._terminate(session, _TERMINATION_MESSAGES[state])
            self.logger.info("session_evicted", session_code=code, reason=state.name.lower())
            return None
        if state is SessionState.REVOKED:
            return None
        return session

    def join_session(self, connection_id: str, code: str) -> Optional[Session]:
        with self.lock:
            session = self._live(code)
            if session is None:
                return None
            if session.is_full():
                self.logger.info("session_full", session_code=code)
                return None

            session.participants[connection_id] = generate_alias()
            self.connections[connection_id] = code
            session.touch(self.clock(), extend=True)
            return session

    def get_session(self, code: str) -> Optional[Session]:
        with self.lock:
            session = self._live(code)
            if session is None:
                return None

            t = self.clock()
            session.rotation_needed = session.rotation_due(t)
            if session.rotation_needed:
                self.logger.info("key_rotation_needed", session_code=code)
            session.touch(t)
            return session

    def get_session_by_connection(self, connection_id: str) -> Optional[Session]:
        with self.lock:
            code = self.connections.get(connection_id)
            if code is None:
                return None
            return self.get_session(code)

    def set_session_key(self, code: str, new_key: str) -> bool:
        with self.lock:
            session = self.sessions.get(code)
            if session is None:
                return False

            if session.session_key:
                session.previous_keys.insert(0, session.session_key)
                del session.previous_keys[MAX_PREVIOUS_KEYS:]

            t = self.clock()
            session.session_key = new_key
            session.key_rotation_time = t
            session.rotation_needed = False
            session.touch(t)
            return True

    def leave_session(self, connection_id: str) -> bool:
        with self.lock:
            code = self.connections.pop(connection_id, None)
            if code is None:
                return False

            session = self.sessions.get(code)
            if session is None:
                return False

            alias = session.participants.pop(connection_id, None)
            self._broadcast(session, "participant-left", {
                "participantId": connection_id,
                "alias": alias,
                "participantCount": len(session.participants),
            })

            if session.is_creator(connection_id) or not session.participants:
                message = (
                    "The session has ended because the creator left"
                    if session.is_creator(connection_id)
                    else "The session has ended because all participants left"
                )
                self._terminate(session, message)
                self.logger.info("session_ended", session_code=code, reason="departure")
                return True

            session.touch(self.clock(), extend=True)
            return True

    def end_session(self, code: str, message: str = "The session has been ended by the creator") -> bool:
        with self.lock:
            session = self.sessions.get(code)
            if session is None:
                return False
            self._terminate(session, message)
            self.logger.info("session_ended", session_code=code, reason="explicit")
            return True

    def revoke_session(self, code: str, reason: str = "") -> bool:
        with self.lock:
            session = self.sessions.get(code)
            if session is None or session.revoked:
                return False
            session.revoked = True
            self._broadcast(session, "session-ended", {"message": reason or _TERMINATION_MESSAGES[SessionState.REVOKED]})
            self._release_connections(session)
            self.logger.warning("session_revoked", session_code=code, reason=reason)
            return True

    def _release_connections(self, session: Session):
        for cid in session.participants:
            if self.connections.get(cid) == session.code:
                del self.connections[cid]

    def _terminate(self, session: Session, message: str):
        self._broadcast(session, "session-ended", {"message": message})
        self._release_connections(session)
        self.sessions.pop(session.code, None)

    def sweep(self) -> List[Notification]:
        """Evict expired, idle and revoked sessions; prompt creators whose key is due."""
        with self.lock:
            t = self.clock()
            for session in list(self.sessions.values()):
                state = session.state(t)
                if state is SessionState.REVOKED:
                    # participants were notified when it was revoked
                    self.sessions.pop(session.code, None)
                    self.logger.info("session_evicted", session_code=session.code, reason="revoked")
                    continue
                if state in _TERMINATION_MESSAGES:
                    self._terminate(session, _TERMINATION_MESSAGES[state])
                    self.logger.info("session_evicted", session_code=session.code, reason=state.name.lower())
                    continue

                if session.rotation_due(t):
                    session.rotation_needed = True
                    self.outbox.append(Notification.to([session.creator_id], "key-rotation-needed", {
                        "message": "Session key rotation is needed for security",
                    }))
                    self.logger.info("key_rotation_needed", session_code=session.code)
            return self.drain()

    def live_count(self) -> int:
        with self.lock:
            return len(self.sessions)
