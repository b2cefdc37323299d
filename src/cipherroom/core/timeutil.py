import time

def now() -> float:
    return time.time()

def to_millis(t: float) -> int:
    return int(t * 1000)
