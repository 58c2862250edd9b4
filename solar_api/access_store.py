"""Durable device identity, ownership and sharing.

Every multi-step operation runs inside ``db.transaction`` so a claim, share
or removal is either fully applied or not at all.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from .db import get_session, transaction
from .errors import AlreadyLinked, AccessDenied, NotFound, TargetNotFound
from .models import Device, DeviceHistory, User, UserDevice
from .status_cache import StatusPatch

logger = logging.getLogger("solar_api.store")


def default_device_name(device_id: str) -> str:
    return f"Solar Controller {device_id[-4:]}"


class AccessStore:
    def __init__(self, engine: Engine | None = None):
        self.engine = engine

    # ---------------- devices ----------------

    def _device(self, session: Session, device_id: str) -> Optional[Device]:
        return session.exec(select(Device).where(Device.device_id == device_id)).first()

    def _link(self, session: Session, user_id: int, device_pk: int) -> Optional[UserDevice]:
        return session.exec(
            select(UserDevice).where(UserDevice.user_id == user_id, UserDevice.device_id == device_pk)
        ).first()

    def device_exists(self, device_id: str) -> bool:
        with get_session(self.engine) as s:
            return self._device(s, device_id) is not None

    def save_sample(self, device_id: str, reported: StatusPatch) -> None:
        """Persist what the device itself reported; fields it left out stay NULL."""
        with get_session(self.engine) as s:
            s.add(DeviceHistory(
                device_id=device_id,
                relay_state=reported.relay_state,
                wifi_rssi=reported.wifi_rssi,
                uptime=reported.uptime,
                free_heap=reported.free_heap,
            ))
            s.commit()

    def claim(self, user_id: int, device_id: str, name: str | None = None) -> Tuple[Device, UserDevice]:
        """Create the device if unknown and link it to the user.

        Only the claimant of a brand-new device becomes its owner; a device
        already in the store is linked without ownership.
        """
        with transaction(self.engine) as s:
            device = self._device(s, device_id)
            is_new_device = device is None
            if is_new_device:
                device = Device(device_id=device_id, name=name or default_device_name(device_id))
                s.add(device)
                s.flush()

            if self._link(s, user_id, device.id) is not None:
                raise AlreadyLinked("You already have access to this device")

            link = UserDevice(user_id=user_id, device_id=device.id, is_owner=is_new_device)
            s.add(link)
            s.flush()
            logger.info(
                "device claimed | device_id=%s | user_id=%s | new=%s",
                device_id, user_id, is_new_device,
            )
            return device, link

    def list_for_user(self, user_id: int) -> List[Tuple[Device, UserDevice]]:
        with get_session(self.engine) as s:
            stmt = (
                select(Device, UserDevice)
                .join(UserDevice, UserDevice.device_id == Device.id)
                .where(UserDevice.user_id == user_id)
                .order_by(UserDevice.added_at.desc(), UserDevice.id.desc())
            )
            return list(s.exec(stmt).all())

    def has_link(self, user_id: int, device_id: str) -> bool:
        with get_session(self.engine) as s:
            device = self._device(s, device_id)
            return device is not None and self._link(s, user_id, device.id) is not None

    def share(self, owner_id: int, device_id: str, email: str) -> UserDevice:
        with transaction(self.engine) as s:
            device = self._device(s, device_id)
            own = self._link(s, owner_id, device.id) if device else None
            if own is None or not own.is_owner:
                raise AccessDenied("Only owner can share device")

            target = s.exec(select(User).where(User.email == email)).first()
            if target is None:
                raise TargetNotFound("User not found. They need to register first.")

            if self._link(s, target.id, device.id) is not None:
                raise AlreadyLinked("User already has access to this device")

            link = UserDevice(user_id=target.id, device_id=device.id, is_owner=False)
            s.add(link)
            s.flush()
            logger.info(
                "device shared | device_id=%s | owner_id=%s | target_id=%s",
                device_id, owner_id, target.id,
            )
            return link

    def remove_link(self, user_id: int, device_id: str) -> bool:
        """Drop the user's link; delete the device when no links remain.

        Returns True when the device row itself was deleted.
        """
        with transaction(self.engine) as s:
            device = self._device(s, device_id)
            if device is None:
                raise NotFound("Device not found")
            link = self._link(s, user_id, device.id)
            # a caller with no link gets NotFound, not a no-op success,
            # so removal cannot be used to probe which device ids exist
            if link is None:
                raise NotFound("Device not found")

            s.delete(link)
            s.flush()

            remaining = s.exec(
                select(func.count(UserDevice.id)).where(UserDevice.device_id == device.id)
            ).one()
            deleted = remaining == 0
            if deleted:
                s.delete(device)
            logger.info(
                "device access removed | device_id=%s | user_id=%s | device_deleted=%s",
                device_id, user_id, deleted,
            )
            return deleted

    def history(self, device_id: str, limit: int = 200) -> List[DeviceHistory]:
        with get_session(self.engine) as s:
            stmt = (
                select(DeviceHistory)
                .where(DeviceHistory.device_id == device_id)
                .order_by(DeviceHistory.timestamp.desc(), DeviceHistory.id.desc())
                .limit(limit)
            )
            return list(s.exec(stmt).all())

    # ---------------- users ----------------

    def get_or_create_user(self, email: str, google_id: str, name: str = "Test User") -> User:
        """Development/test users: create on first use, bump last_login after."""
        with transaction(self.engine) as s:
            user = s.exec(select(User).where(User.email == email)).first()
            if user is None:
                user = User(google_id=google_id, email=email, name=name)
                s.add(user)
                logger.info("test user created | email=%s", email)
            else:
                user.last_login = datetime.now(timezone.utc)
                s.add(user)
            s.flush()
            return user

    def get_user(self, user_id: int) -> User:
        with get_session(self.engine) as s:
            user = s.get(User, user_id)
            if user is None:
                raise NotFound("User not found")
            return user

    def list_other_users(self, user_id: int) -> List[User]:
        with get_session(self.engine) as s:
            stmt = select(User).where(User.id != user_id).order_by(User.name, User.email)
            return list(s.exec(stmt).all())
