from __future__ import annotations
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Set

from ..core.constants import (
    BLOCK_LADDER_S, MAX_REQUESTS_PER_ADDRESS, MAX_REQUESTS_PER_CONNECTION,
    RATE_WINDOW_S, VIOLATION_EXPIRY_S,
)
from ..core.timeutil import now

@dataclass
class RateRecord:
    window_start: float
    count: int = 0
    blocked: bool = False
    block_until: float = 0.0
    violations: int = 0
    last_violation: float = 0.0
    address: Optional[str] = None

@dataclass
class AddressRecord:
    window_start: float
    count: int = 0
    blocked: bool = False
    block_until: float = 0.0
    connections: Set[str] = field(default_factory=set)

@dataclass
class EventCounter:
    window_start: float
    count: int = 0

def block_duration(violations: int) -> float:
    idx = min(max(violations, 1), len(BLOCK_LADDER_S)) - 1
    return BLOCK_LADDER_S[idx]

class RateLimiter:
    """Two-tier fixed-window limiter: per connection and per network address.

    Exceeding a ceiling blocks for a duration that grows with the number of
    recent violations. Per-event ceilings are tracked separately and never
    feed the violation ladder.
    """

    def __init__(self, logger, clock: Callable[[], float] = now,
                 max_per_connection: int = MAX_REQUESTS_PER_CONNECTION,
                 max_per_address: int = MAX_REQUESTS_PER_ADDRESS):
        self.records: Dict[str, RateRecord] = {}
        self.addresses: Dict[str, AddressRecord] = {}
        self.events: Dict[str, EventCounter] = {}
        self.max_per_connection = max_per_connection
        self.max_per_address = max_per_address
        self._lock = threading.RLock()
        self.clock = clock
        self.logger = logger

    def check(self, connection_id: str, address: Optional[str] = None) -> bool:
        with self._lock:
            t = self.clock()
            rec = self.records.get(connection_id)
            if rec is None:
                rec = RateRecord(window_start=t, address=address)
                self.records[connection_id] = rec

            if address:
                if rec.address and rec.address != address:
                    self._detach(connection_id, rec.address)
                rec.address = address
                if not self._check_address(connection_id, rec, address, t):
                    return False

            return self._check_connection(connection_id, rec, t)

    def _check_address(self, connection_id: str, rec: RateRecord, address: str, t: float) -> bool:
        arec = self.addresses.get(address)
        if arec is None:
            arec = AddressRecord(window_start=t)
            self.addresses[address] = arec
        arec.connections.add(connection_id)

        if arec.blocked:
            if t > arec.block_until:
                arec.blocked = False
                arec.count = 1
                arec.window_start = t
                self.logger.info("rate_limit_unblocked", scope="address", address=address)
                return True
            rec.blocked = True
            rec.block_until = max(rec.block_until, arec.block_until)
            return False

        if t - arec.window_start > RATE_WINDOW_S:
            arec.count = 1
            arec.window_start = t
            return True

        arec.count += 1
        if arec.count <= self.max_per_address:
            return True

        arec.blocked = True
        arec.block_until = t + BLOCK_LADDER_S[0]
        for cid in arec.connections:
            crec = self.records.get(cid)
            if crec is None:
                continue
            self._record_violation(crec, t)
            crec.blocked = True
            crec.block_until = max(crec.block_until, arec.block_until)
        self.logger.warning("rate_limit_blocked", scope="address", address=address,
                            connections=len(arec.connections), block_s=BLOCK_LADDER_S[0])
        return False

    def _check_connection(self, connection_id: str, rec: RateRecord, t: float) -> bool:
        if rec.blocked:
            if t > rec.block_until:
                rec.blocked = False
                rec.count = 1
                rec.window_start = t
                self.logger.info("rate_limit_unblocked", scope="connection", connection_id=connection_id)
                return True
            return False

        if t - rec.window_start > RATE_WINDOW_S:
            rec.count = 1
            rec.window_start = t
            return True

        rec.count += 1
        if rec.count <= self.max_per_connection:
            return True

        self._record_violation(rec, t)
        duration = block_duration(rec.violations)
        rec.blocked = True
        rec.block_until = t + duration

        if rec.address:
            arec = self.addresses.get(rec.address)
            if arec is not None:
                arec.count += self.max_per_address // 2

        self.logger.warning("rate_limit_blocked", scope="connection", connection_id=connection_id,
                            violations=rec.violations, block_s=duration)
        return False

    @staticmethod
    def _record_violation(rec: RateRecord, t: float):
        if rec.violations and t - rec.last_violation > VIOLATION_EXPIRY_S:
            rec.violations = 0
        rec.violations += 1
        rec.last_violation = t

    def check_event(self, connection_id: str, event: str, limit: int) -> bool:
        """Secondary per-event ceiling; rejections do not count as violations."""
        with self._lock:
            t = self.clock()
            key = f"{connection_id}:{event}"
            counter = self.events.get(key)
            if counter is None or t - counter.window_start > RATE_WINDOW_S:
                counter = EventCounter(window_start=t)
                self.events[key] = counter
            counter.count += 1
            return counter.count <= limit

    def block_remaining(self, connection_id: str) -> float:
        with self._lock:
            rec = self.records.get(connection_id)
            if rec is None or not rec.blocked:
                return 0.0
            return max(0.0, rec.block_until - self.clock())

    def _detach(self, connection_id: str, address: str):
        arec = self.addresses.get(address)
        if arec is None:
            return
        arec.connections.discard(connection_id)
        if not arec.connections:
            del self.addresses[address]

    def remove_connection(self, connection_id: str):
        with self._lock:
            rec = self.records.pop(connection_id, None)
            if rec is not None and rec.address:
                self._detach(connection_id, rec.address)
            prefix = f"{connection_id}:"
            for key in [k for k in self.events if k.startswith(prefix)]:
                del self.events[key]

    def cleanup(self):
        with self._lock:
            t = self.clock()
            stale = RATE_WINDOW_S * 2

            for cid, rec in list(self.records.items()):
                remembered = rec.violations and t - rec.last_violation <= VIOLATION_EXPIRY_S
                if not rec.blocked and not remembered and t - rec.window_start > stale:
                    self.remove_connection(cid)
                    continue
                if rec.blocked and t > rec.block_until:
                    # history kept for the progressive ladder
                    rec.blocked = False
                if rec.violations and t - rec.last_violation > VIOLATION_EXPIRY_S:
                    rec.violations = 0

            for address, arec in list(self.addresses.items()):
                if arec.blocked and t > arec.block_until:
                    arec.blocked = False
                if not arec.blocked and not arec.connections and t - arec.window_start > stale:
                    del self.addresses[address]

            for key, counter in list(self.events.items()):
                if t - counter.window_start > stale:
                    del self.events[key]

            self.logger.debug("rate_limit_cleanup", connections=len(self.records), addresses=len(self.addresses))
