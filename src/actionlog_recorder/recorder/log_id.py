"""Process-wide log identifier stamped on every persisted action record."""


class LogIdCounter:
    """Highest log id assigned so far.

    ``reset`` is reserved for recovery from the store; the write path only
    calls ``next``.
    """

    def __init__(self, value: int = 0) -> None:
        self._value = value

    @property
    def value(self) -> int:
        return self._value

    def reset(self, value: int) -> None:
        if value < 0:
            raise ValueError("log id must be >= 0")
        self._value = value

    def next(self) -> int:
        self._value += 1
        return self._value
