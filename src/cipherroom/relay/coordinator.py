from __future__ import annotations
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..core.constants import (
    DEFAULT_MAX_PARTICIPANTS, EVENT_LIMITS, NOT_IN_SESSION, UNIFORM_SESSION_DENIAL,
)
from ..core.errors import (
    ProtocolError, RateLimitError, SessionError, SessionFailure, ValidationError,
)
from ..core.timeutil import to_millis
from ..core.validation import validate_event
from .events import Notification, error, reply
from .ratelimit import RateLimiter
from .sessions import Session, SessionRegistry, SessionState

@dataclass(frozen=True)
class ConnectionContext:
    connection_id: str
    address: Optional[str] = None

Handler = Callable[[ConnectionContext, Dict[str, Any]], List[Notification]]

_JOIN_FAILURES = {
    SessionState.EXPIRED: SessionFailure.EXPIRED,
    SessionState.IDLE: SessionFailure.IDLE,
    SessionState.REVOKED: SessionFailure.REVOKED,
    SessionState.FULL: SessionFailure.FULL,
}

class SessionCoordinator:
    """Dispatches named operations: rate limit, validate, authorize, then mutate.

    Every call returns the notifications it produced, replies to the caller
    first, followed by whatever the registry queued.
    """

    def __init__(self, registry: SessionRegistry, limiter: RateLimiter, logger,
                 max_participants: int = DEFAULT_MAX_PARTICIPANTS):
        self.registry = registry
        self.limiter = limiter
        self.logger = logger
        self.max_participants = max_participants
        self.handlers: Dict[str, Tuple[Handler, int]] = {
            "create-session": (self.create_session, EVENT_LIMITS["create-session"]),
            "join-session": (self.join_session, EVENT_LIMITS["join-session"]),
            "send-message": (self.send_message, EVENT_LIMITS["send-message"]),
            "set-session-key": (self.set_session_key, EVENT_LIMITS["set-session-key"]),
            "leave-session": (self.leave_session, EVENT_LIMITS["leave-session"]),
            "end-session": (self.end_session, EVENT_LIMITS["end-session"]),
            "rotate-key": (self.rotate_key, EVENT_LIMITS["rotate-key"]),
        }

    def handle(self, ctx: ConnectionContext, event: str, data: Any) -> List[Notification]:
        cid = ctx.connection_id
        try:
            if not self.limiter.check(cid, ctx.address):
                raise RateLimitError(self.limiter.block_remaining(cid))

            entry = self.handlers.get(event)
            if entry is None:
                return [error(cid, f"Unknown operation: {event}")]
            handler, limit = entry

            if not self.limiter.check_event(cid, event, limit):
                self.logger.info("event_rate_limited", connection_id=cid, op=event)
                return [error(cid, f"Rate limit exceeded for {event}. Please try again later.")]

            payload = validate_event(event, data)
            out = handler(ctx, payload)
        except ValidationError as e:
            self.logger.info("validation_failed", connection_id=cid, op=event, field=e.field)
            return [error(cid, e.message, field=e.field)]
        except RateLimitError as e:
            return [error(
                cid,
                f"Rate limit exceeded. Please try again in {e.retry_after_min} minutes.",
                retryAfter=int(e.retry_after_s),
            )]
        except SessionError as e:
            self.logger.info("session_denied", connection_id=cid, op=event, reason=e.failure.value)
            out = [error(cid, e.message)]
        except ProtocolError as e:
            self.logger.error("protocol_error", connection_id=cid, op=event, error=str(e))
            out = [error(cid, "Request failed")]
        return out + self.registry.drain()

    def disconnect(self, connection_id: str) -> List[Notification]:
        self.registry.leave_session(connection_id)
        self.limiter.remove_connection(connection_id)
        self.logger.info("client_disconnected", connection_id=connection_id)
        return self.registry.drain()

    def sweep(self) -> List[Notification]:
        return self.registry.sweep()

    # --- Handlers ---

    def _current_session(self, cid: str) -> Session:
        session = self.registry.get_session_by_connection(cid)
        if session is None:
            raise SessionError(SessionFailure.NOT_IN_SESSION, NOT_IN_SESSION)
        return session

    def _require_creator(self, session: Session, cid: str, action: str):
        if not session.is_creator(cid):
            raise SessionError(SessionFailure.UNAUTHORIZED, f"Only the session creator can {action}")

    def _rotation_prompt(self, session: Session, cid: str) -> List[Notification]:
        if session.rotation_needed and session.is_creator(cid):
            return [reply(cid, "key-rotation-needed", {"message": "Session key rotation is needed for security"})]
        return []

    def create_session(self, ctx: ConnectionContext, payload: Dict[str, Any]) -> List[Notification]:
        cid = ctx.connection_id
        if cid in self.registry.connections:
            self.registry.leave_session(cid)

        session = self.registry.create_session(cid, self.max_participants)
        return [reply(cid, "session-created", {**session.describe(), "alias": session.participants[cid]})]

    def join_session(self, ctx: ConnectionContext, payload: Dict[str, Any]) -> List[Notification]:
        cid = ctx.connection_id
        code = payload["code"]
        current = self.registry.connections.get(cid)
        if current is not None and current != code:
            self.registry.leave_session(cid)

        state = self.registry.status(code)
        session = self.registry.join_session(cid, code)
        if session is None:
            raise SessionError(_JOIN_FAILURES.get(state, SessionFailure.NOT_FOUND), UNIFORM_SESSION_DENIAL)

        alias = session.participants[cid]
        self.logger.info("session_joined", session_code=code, participants=len(session.participants))
        return [
            reply(cid, "session-joined", {
                **session.describe(),
                "alias": alias,
                "sessionKey": session.session_key,
                "creatorId": session.creator_id,
            }),
            Notification.to([p for p in session.participants if p != cid], "participant-joined", {
                "participantId": cid,
                "alias": alias,
                "participantCount": len(session.participants),
            }),
            reply(cid, "participant-list", {"participants": session.roster()}),
        ]

    def send_message(self, ctx: ConnectionContext, payload: Dict[str, Any]) -> List[Notification]:
        cid = ctx.connection_id
        session = self._current_session(cid)

        message = {
            "id": str(uuid.uuid4()),
            "sender": cid,
            "senderName": session.participants.get(cid, "Unknown"),
            "encryptedContent": payload["encryptedContent"],
            "timestamp": to_millis(self.registry.clock()),
            "signature": payload.get("signature"),
        }
        self.logger.debug("message_relayed", session_code=session.code, participants=len(session.participants))
        return [Notification.to(session.participants, "new-message", message)] + self._rotation_prompt(session, cid)

    def set_session_key(self, ctx: ConnectionContext, payload: Dict[str, Any]) -> List[Notification]:
        cid = ctx.connection_id
        session = self._current_session(cid)
        self._require_creator(session, cid, "set the session key")

        key = payload["sessionKey"]
        rotated = bool(session.session_key)
        if not self.registry.set_session_key(session.code, key):
            raise SessionError(SessionFailure.NOT_FOUND, "Failed to set session key")

        others = [p for p in session.participants if p != cid]
        out = [reply(cid, "session-key-set", {"rotated": rotated})]
        if others:
            if rotated:
                out.append(Notification.to(others, "key-rotated", {
                    "message": "The session encryption key has been rotated for security",
                    "sessionKey": key,
                }))
            else:
                out.append(Notification.to(others, "session-key", {"sessionKey": key}))
        self.logger.info("session_key_set", session_code=session.code, rotated=rotated,
                         previous_keys=len(session.previous_keys))
        return out

    def leave_session(self, ctx: ConnectionContext, payload: Dict[str, Any]) -> List[Notification]:
        cid = ctx.connection_id
        if not self.registry.leave_session(cid):
            raise SessionError(SessionFailure.NOT_IN_SESSION, NOT_IN_SESSION)
        return [reply(cid, "session-left", {})]

    def end_session(self, ctx: ConnectionContext, payload: Dict[str, Any]) -> List[Notification]:
        cid = ctx.connection_id
        session = self._current_session(cid)
        self._require_creator(session, cid, "end the session")
        self.registry.end_session(session.code)
        return []

    def rotate_key(self, ctx: ConnectionContext, payload: Dict[str, Any]) -> List[Notification]:
        cid = ctx.connection_id
        session = self._current_session(cid)
        self._require_creator(session, cid, "rotate the session key")
        self.logger.info("key_rotation_requested", session_code=session.code)
        return [reply(cid, "generate-new-key", {"message": "Please generate and set a new session key"})]
