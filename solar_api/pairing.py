from threading import Lock
from typing import Dict


class PairingRegistry:
    """Latest confirmation code each device has displayed.

    A new code replaces the previous one; nothing expires on a timer. A
    successful ``consume`` leaves the code in place, so the same code can be
    presented again until the device reports a new one.
    """

    def __init__(self) -> None:
        self._codes: Dict[str, str] = {}
        self._lock = Lock()

    def record(self, device_id: str, code: str) -> None:
        with self._lock:
            self._codes[device_id] = code

    def consume(self, device_id: str, presented: str | None) -> bool:
        with self._lock:
            stored = self._codes.get(device_id)
        return bool(stored) and presented is not None and stored == presented

    def has_code(self, device_id: str) -> bool:
        with self._lock:
            return device_id in self._codes
