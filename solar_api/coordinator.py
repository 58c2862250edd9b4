"""Device coordinator: claim, control, share and remove, plus telemetry and liveness.

Ties the live status cache and pairing registry (ephemeral, in memory) to the
access store (durable). Store-side steps of a claim, share or removal are one
transaction each; cache and registry updates are single locked operations.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Protocol

from .access_store import AccessStore
from .errors import AccessDenied, DispatchFailed, InvalidClaim
from .models import Device, DeviceHistory, User, UserDevice
from .mqtt_handler import TelemetryIngestor
from .pairing import PairingRegistry
from .schemas import AuthUser, DeviceOut
from .settings import settings
from .status_cache import LiveStatusCache, StatusPatch, utcnow

logger = logging.getLogger("solar_api.coordinator")


class CommandPublisher(Protocol):
    def publish_command(self, device_id: str, command: str, state) -> None: ...


class DeviceCoordinator:
    def __init__(
        self,
        store: AccessStore,
        cache: Optional[LiveStatusCache] = None,
        pairing: Optional[PairingRegistry] = None,
        publisher: Optional[CommandPublisher] = None,
        stale_after: float = settings.status_stale_after,
    ):
        self.store = store
        self.cache = cache or LiveStatusCache()
        self.pairing = pairing or PairingRegistry()
        self.publisher = publisher
        self.stale_after = timedelta(seconds=stale_after)
        self.ingestor = TelemetryIngestor(self.cache, self.pairing, self.store)

    def _view(self, device: Device, link: UserDevice) -> DeviceOut:
        return DeviceOut(
            id=device.id,
            device_id=device.device_id,
            name=device.name,
            created_at=device.created_at,
            is_owner=link.is_owner,
            added_at=link.added_at,
            status=self.cache.get(device.device_id),
        )

    def claim_device(self, user: AuthUser, device_id: str, confirmation_code: str,
                     name: str | None = None) -> DeviceOut:
        if not self.pairing.consume(device_id, confirmation_code):
            logger.warning("claim rejected | device_id=%s | user_id=%s", device_id, user.id)
            raise InvalidClaim("Invalid confirmation code or device not found")
        device, link = self.store.claim(user.id, device_id, name)
        return self._view(device, link)

    def list_devices_for_user(self, user: AuthUser) -> List[DeviceOut]:
        return [self._view(d, link) for d, link in self.store.list_for_user(user.id)]

    def control_device(self, user: AuthUser, device_id: str, command: str, state: bool) -> None:
        if not self.store.has_link(user.id, device_id):
            raise AccessDenied("Access denied")
        if self.publisher is None:
            raise DispatchFailed("MQTT not initialized")

        self.publisher.publish_command(device_id, command, state)

        # optimistic echo; the next status message from the device overrides it
        self.cache.upsert(device_id, StatusPatch(relay_state=state, last_updated=utcnow()))

    def share_device(self, user: AuthUser, device_id: str, email: str) -> None:
        self.store.share(user.id, device_id, email)

    def remove_device_access(self, user: AuthUser, device_id: str) -> bool:
        return self.store.remove_link(user.id, device_id)

    def device_history(self, user: AuthUser, device_id: str, limit: int = 200) -> List[DeviceHistory]:
        if not self.store.has_link(user.id, device_id):
            raise AccessDenied("Access denied")
        return self.store.history(device_id, limit)

    def list_users(self, user: AuthUser) -> List[User]:
        return self.store.list_other_users(user.id)

    def ingest_telemetry(self, topic: str, payload: bytes | str) -> None:
        self.ingestor.handle_message(topic, payload)

    def sweep_staleness(self, now: Optional[datetime] = None) -> List[str]:
        stale = self.cache.mark_stale_if_unseen(now or utcnow(), self.stale_after)
        for device_id in stale:
            logger.info("device marked offline | device_id=%s", device_id)
        return stale
