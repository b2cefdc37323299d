from enum import Enum, auto

class Phase(Enum):
    INIT = auto()
    CONNECTED = auto()
    AWAITING_KEY = auto()
    IN_SESSION = auto()
    ENDED = auto()
