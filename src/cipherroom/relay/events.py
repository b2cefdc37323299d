from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Tuple

@dataclass(frozen=True)
class Notification:
    """An outbound event for a set of connections, delivered fire-and-forget."""
    targets: Tuple[str, ...]
    event: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def to(cls, targets: Iterable[str], event: str, payload: Dict[str, Any] = None) -> "Notification":
        return cls(targets=tuple(targets), event=event, payload=payload or {})

def reply(connection_id: str, event: str, payload: Dict[str, Any] = None) -> Notification:
    return Notification.to([connection_id], event, payload)

def error(connection_id: str, message: str, **extra: Any) -> Notification:
    return Notification.to([connection_id], "error", {"message": message, **extra})
