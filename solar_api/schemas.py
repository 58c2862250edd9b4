from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field

from .status_cache import LiveStatus

class AuthUser(BaseModel):
    """Identity supplied by the auth layer; trusted as-is."""
    model_config = ConfigDict(populate_by_name=True)

    id: int
    email: str
    google_id: str | None = Field(default=None, alias="googleId")

class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    name: str | None = None
    picture: str | None = None

class TokenResponse(BaseModel):
    token: str
    user: UserOut

class DeviceOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    device_id: str
    name: str | None = None
    created_at: datetime
    is_owner: bool
    added_at: datetime
    status: LiveStatus

class ClaimRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    device_id: str = Field(alias="deviceId", min_length=1)
    confirmation_code: str = Field(alias="confirmationCode", min_length=1)
    name: str | None = None

class CommandRequest(BaseModel):
    command: str
    state: bool

class ShareRequest(BaseModel):
    email: str

class HistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    device_id: str
    relay_state: bool | None = None
    wifi_rssi: int | None = None
    uptime: int | None = None
    free_heap: int | None = None
    timestamp: datetime

class SuccessResponse(BaseModel):
    success: bool = True
