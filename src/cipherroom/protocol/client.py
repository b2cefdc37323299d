from __future__ import annotations
import asyncio
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..core.constants import PROTO_NAME, PROTO_VER, UNDECRYPTABLE_PLACEHOLDER
from ..core.crypto import WireFormat, encrypt_message, generate_session_key, sign_message, verify_signature
from ..core.errors import CryptoError, ProtocolError
from ..core.timeutil import now
from ..core.validation import fuzz_resistant_json_loads, json_dumps_sorted
from .keyring import KeyRing
from .state import Phase

Outbound = Tuple[str, Dict[str, Any]]

@dataclass
class ClientState:
    phase: Phase = Phase.INIT
    connection_id: Optional[str] = None
    code: Optional[str] = None
    alias: Optional[str] = None
    creator_id: Optional[str] = None
    keyring: KeyRing = field(default_factory=KeyRing)
    undecryptable: int = 0

    @property
    def is_creator(self) -> bool:
        return self.connection_id is not None and self.connection_id == self.creator_id

    def cleanup(self):
        self.keyring.clear()
        self.phase = Phase.ENDED

class ChatClient:
    def __init__(self, url: str, logger, fmt: WireFormat = WireFormat.CURRENT,
                 enforce_freshness: bool = True, output: Callable[[str], None] = print,
                 clock: Callable[[], float] = now):
        self.url = url.rstrip("/")
        self.logger = logger
        self.fmt = fmt
        self.enforce_freshness = enforce_freshness
        self.output = output
        self.clock = clock

        self.ws = None
        self.state = ClientState()
        self._rx_task: Optional[asyncio.Task] = None
        self._rx_queue: asyncio.Queue = asyncio.Queue()
        self._running = False

    # --- Pure protocol logic ---

    def _install_key(self, key: str):
        self.state.keyring.rotate(key)
        self.state.phase = Phase.IN_SESSION

    def _new_key(self) -> List[Outbound]:
        key = generate_session_key()
        self._install_key(key)
        return [("set-session-key", {"sessionKey": key})]

    def outgoing_message(self, text: str) -> Dict[str, Any]:
        key = self.state.keyring.current
        if self.state.phase is not Phase.IN_SESSION or not key:
            raise ProtocolError("No session key yet")
        return {
            "encryptedContent": encrypt_message(text, key, self.fmt, clock=self.clock),
            "signature": sign_message(text, key, self.fmt, clock=self.clock),
        }

    def render_message(self, payload: Dict[str, Any]) -> str:
        sender = payload.get("senderName") or "Unknown"
        try:
            msg, key = self.state.keyring.decrypt_with_key(
                payload.get("encryptedContent", ""),
                enforce_freshness=self.enforce_freshness,
                clock=self.clock,
            )
        except CryptoError as e:
            self.state.undecryptable += 1
            self.logger.warning("message_undecryptable", sender=sender, reason=e.failure.value)
            return f"{sender}: {UNDECRYPTABLE_PLACEHOLDER}"

        flags = []
        signature = payload.get("signature")
        if not signature:
            flags.append("unsigned")
        elif not verify_signature(msg.content, signature, key, clock=self.clock):
            flags.append("unverified")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        return f"{sender}: {msg.content}{suffix}"

    def handle_event(self, event: str, payload: Dict[str, Any]) -> List[Outbound]:
        """Apply one server event to local state; returns events to send back."""
        st = self.state

        if event == "hello":
            st.connection_id = payload.get("connectionId")
            st.phase = Phase.CONNECTED
        elif event == "session-created":
            st.code = payload.get("code")
            st.alias = payload.get("alias")
            st.creator_id = st.connection_id
            self.output(f"Session {st.code} created, you are {st.alias}")
            return self._new_key()
        elif event == "session-joined":
            st.code = payload.get("code")
            st.alias = payload.get("alias")
            st.creator_id = payload.get("creatorId")
            key = payload.get("sessionKey")
            if key:
                self._install_key(key)
            else:
                st.phase = Phase.AWAITING_KEY
            self.output(f"Joined session {st.code} as {st.alias}")
        elif event in ("session-key", "key-rotated"):
            key = payload.get("sessionKey")
            if key:
                self._install_key(key)
            if event == "key-rotated":
                self.output("* session key rotated")
        elif event in ("generate-new-key", "key-rotation-needed"):
            if st.is_creator:
                self.logger.info("rotating_session_key", session=st.code)
                return self._new_key()
        elif event == "session-key-set":
            st.phase = Phase.IN_SESSION
        elif event == "new-message":
            self.output(self.render_message(payload))
        elif event == "participant-list":
            names = ", ".join(p.get("alias", "?") for p in payload.get("participants", []))
            self.output(f"* participants: {names}")
        elif event == "participant-joined":
            self.output(f"* {payload.get('alias')} joined ({payload.get('participantCount')} present)")
        elif event == "participant-left":
            self.output(f"* {payload.get('alias')} left ({payload.get('participantCount')} present)")
        elif event in ("session-ended", "session-left"):
            if payload.get("message"):
                self.output(f"* {payload['message']}")
            st.cleanup()
        elif event == "error":
            self.logger.warning("server_error", message=payload.get("message"))
            self.output(f"! {payload.get('message')}")
        return []

    # --- Transport ---

    async def connect(self):
        try:
            import websockets
        except ImportError as e:
            raise RuntimeError("Missing dependency 'websockets'") from e

        self.ws = await websockets.connect(f"{self.url}/ws")
        self._running = True
        self._rx_task = asyncio.create_task(self._recv_loop())

        msg = await self._wait_for(lambda m: m.get("type") == "hello")
        if not msg:
            raise ProtocolError("expected hello")
        self.logger.info("client_connected", connection_id=self.state.connection_id)

    async def _recv_loop(self):
        while self._running and self.ws:
            try:
                raw = await self.ws.recv()
                msg = fuzz_resistant_json_loads(raw)

                if msg.get("proto") != PROTO_NAME or msg.get("ver") != PROTO_VER:
                    self.logger.error("protocol_mismatch", message=msg)
                    continue

                await self._rx_queue.put(msg)
            except Exception as e:
                if self._running:
                    self.logger.error("recv_loop_error", error=str(e))
                self._running = False
                break

    async def _process(self, msg: Dict[str, Any]):
        for event, payload in self.handle_event(msg.get("type", ""), msg.get("payload") or {}):
            await self.send(event, payload)

    async def _wait_for(self, condition, timeout: float = 30.0) -> Optional[Dict[str, Any]]:
        start_time = time.time()
        while self._running and (time.time() - start_time < timeout):
            try:
                msg = await asyncio.wait_for(self._rx_queue.get(), timeout=0.1)
            except asyncio.TimeoutError:
                continue
            await self._process(msg)
            if condition(msg):
                return msg
        return None

    async def send(self, event: str, payload: Dict[str, Any] = None):
        if not self.ws:
            raise ProtocolError("not connected")
        o = {"type": event, "proto": PROTO_NAME, "ver": PROTO_VER}
        if payload is not None:
            o["payload"] = payload
        await self.ws.send(json_dumps_sorted(o))

    async def send_text(self, text: str):
        await self.send("send-message", self.outgoing_message(text))

    async def close(self):
        self._running = False
        if self._rx_task:
            self._rx_task.cancel()
            try:
                await self._rx_task
            except asyncio.CancelledError:
                pass

        if self.ws:
            try:
                await self.ws.close()
            except Exception:
                pass
            self.ws = None

        self.state.cleanup()

    async def _read_stdin(self):
        loop = asyncio.get_running_loop()
        while self._running and self.state.phase is not Phase.ENDED:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                await self.send("leave-session")
                return
            line = line.rstrip("\n")
            if line == "/rotate":
                await self.send("rotate-key")
            elif line == "/end":
                await self.send("end-session")
            elif line == "/leave":
                await self.send("leave-session")
            elif line:
                try:
                    await self.send_text(line)
                except ProtocolError as e:
                    self.output(f"! {e}")

    async def run(self, code: Optional[str] = None, lines: Optional[Iterable[str]] = None):
        try:
            await self.connect()

            if code:
                await self.send("join-session", {"code": code.upper()})
            else:
                await self.send("create-session")

            joined = await self._wait_for(
                lambda m: m.get("type") in ("session-key-set", "session-joined", "error"))
            if not joined or joined.get("type") == "error":
                raise ProtocolError("could not enter session")

            if lines is not None:
                for line in lines:
                    if self.state.phase is not Phase.IN_SESSION:
                        await self._wait_for(lambda m: self.state.phase is Phase.IN_SESSION, timeout=5.0)
                    await self.send_text(line)
                await self.send("leave-session")
                await self._wait_for(lambda m: self.state.phase is Phase.ENDED, timeout=5.0)
                return

            reader = asyncio.create_task(self._read_stdin())
            try:
                while self._running and self.state.phase is not Phase.ENDED:
                    try:
                        msg = await asyncio.wait_for(self._rx_queue.get(), timeout=1.0)
                    except asyncio.TimeoutError:
                        continue
                    await self._process(msg)
            finally:
                reader.cancel()

        except ProtocolError as e:
            self.logger.error("protocol_error", error=str(e))
            raise
        except Exception as e:
            self.logger.error("unexpected_error", error=str(e))
            raise ProtocolError(f"Unexpected error: {e}")
        finally:
            await self.close()
