from typing import Optional
from datetime import datetime, timezone
from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, UniqueConstraint
from sqlmodel import SQLModel, Field

def _utcnow() -> datetime:
    # timestamps are stored timezone-aware, in UTC
    return datetime.now(timezone.utc)

class User(SQLModel, table=True):
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    google_id: str = Field(unique=True, index=True)
    email: str = Field(unique=True, index=True)
    name: Optional[str] = None
    picture: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True))
    last_login: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True))

class Device(SQLModel, table=True):
    __tablename__ = "devices"

    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(unique=True, index=True)  # external id the hardware reports
    name: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True))

class UserDevice(SQLModel, table=True):
    __tablename__ = "user_devices"
    __table_args__ = (UniqueConstraint("user_id", "device_id", name="uq_user_device"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(
        sa_column=Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    )
    device_id: int = Field(
        sa_column=Column(Integer, ForeignKey("devices.id", ondelete="CASCADE"), index=True, nullable=False)
    )
    is_owner: bool = Field(default=False)
    added_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True))

class DeviceHistory(SQLModel, table=True):
    __tablename__ = "device_history"
    __table_args__ = (Index("idx_device_history_device_id_timestamp", "device_id", "timestamp"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str  # external id, kept even after the device row is gone
    relay_state: Optional[bool] = None
    wifi_rssi: Optional[int] = None
    uptime: Optional[int] = None
    free_heap: Optional[int] = None
    timestamp: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True))
