"""In-memory view of what each device last reported and whether it is alive.

Entries are created by telemetry and by locally issued commands, and are never
removed: the staleness sweep only flips them offline. Every public method is a
single operation under one lock, so callers on the paho network thread, the
event loop and request worker threads can share one cache.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LiveStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    relay_state: Optional[bool] = Field(default=None, alias="relayState")
    wifi_rssi: Optional[int] = Field(default=None, alias="wifiRSSI")
    uptime: Optional[int] = None
    free_heap: Optional[int] = Field(default=None, alias="freeHeap")
    # held for the pairing handshake, never echoed back to API clients
    confirmation_code: Optional[str] = Field(default=None, alias="confirmationCode", exclude=True)
    online: bool = False
    last_seen: Optional[datetime] = Field(default=None, alias="lastSeen")
    last_updated: Optional[datetime] = Field(default=None, alias="lastUpdated")
    extra: Dict[str, Any] = Field(default_factory=dict)


class StatusPatch(BaseModel):
    """Partial update. Only fields that were explicitly set are merged.

    Keys the firmware sends that we do not model are kept and merged into
    ``LiveStatus.extra``.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    relay_state: Optional[bool] = Field(default=None, alias="relayState")
    wifi_rssi: Optional[int] = Field(default=None, alias="wifiRSSI")
    uptime: Optional[int] = None
    free_heap: Optional[int] = Field(default=None, alias="freeHeap")
    confirmation_code: Optional[str] = Field(default=None, alias="confirmationCode")
    online: Optional[bool] = None
    last_seen: Optional[datetime] = Field(default=None, alias="lastSeen")
    last_updated: Optional[datetime] = Field(default=None, alias="lastUpdated")

    @field_validator("confirmation_code", mode="before")
    @classmethod
    def _code_as_text(cls, value):
        # some firmware sends the code as a JSON number
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator(
        "relay_state", "wifi_rssi", "uptime", "free_heap", "confirmation_code",
        "online", "last_seen", "last_updated",
        mode="wrap",
    )
    @classmethod
    def _null_if_unreadable(cls, value, handler):
        # one odd field must not cost the whole status report
        try:
            return handler(value)
        except ValidationError:
            return None

    def apply_to(self, current: LiveStatus) -> LiveStatus:
        known = {
            name: getattr(self, name)
            for name in self.model_fields_set
            if name in StatusPatch.model_fields
        }
        extra = dict(current.extra)
        extra.update(self.model_extra or {})
        known["extra"] = extra
        return current.model_copy(update=known)


class LiveStatusCache:
    def __init__(self) -> None:
        self._entries: Dict[str, LiveStatus] = {}
        self._lock = Lock()

    def upsert(self, device_id: str, patch: StatusPatch) -> LiveStatus:
        with self._lock:
            merged = patch.apply_to(self._entries.get(device_id) or LiveStatus())
            self._entries[device_id] = merged
            return merged.model_copy(deep=True)

    def get(self, device_id: str) -> LiveStatus:
        # absence means "not online", never an error
        with self._lock:
            entry = self._entries.get(device_id)
            return entry.model_copy(deep=True) if entry else LiveStatus()

    def snapshot(self) -> Dict[str, LiveStatus]:
        with self._lock:
            return {k: v.model_copy(deep=True) for k, v in self._entries.items()}

    def mark_stale_if_unseen(self, now: datetime, threshold: timedelta) -> List[str]:
        """Flip to offline every online entry unseen for longer than ``threshold``."""
        stale: List[str] = []
        with self._lock:
            for device_id, entry in list(self._entries.items()):
                if not entry.online or entry.last_seen is None:
                    continue
                if now - entry.last_seen > threshold:
                    self._entries[device_id] = entry.model_copy(update={"online": False})
                    stale.append(device_id)
        return stale
