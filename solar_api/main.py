import asyncio
import logging
from datetime import datetime, timezone
from typing import List

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .access_store import AccessStore
from .coordinator import DeviceCoordinator
from .db import init_db
from .deps import TEST_EMAIL, TEST_GOOGLE_ID, get_coordinator, get_current_user
from .errors import CoordinatorError
from .logging_config import setup_logging
from .mqtt_handler import MqttCommandPublisher, start_mqtt
from .schemas import (
    AuthUser, ClaimRequest, CommandRequest, DeviceOut, HistoryOut, ShareRequest,
    SuccessResponse, TokenResponse, UserOut,
)
from .security import create_access_token
from .settings import settings

setup_logging(settings.log_level)
logger = logging.getLogger("solar_api.main")

app = FastAPI(title="Solar Controller API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.coordinator = DeviceCoordinator(AccessStore())
app.state.mqtt_client = None


@app.exception_handler(CoordinatorError)
async def coordinator_error_handler(request: Request, exc: CoordinatorError):
    if exc.status_code >= 500:
        logger.error("request failed | path=%s | kind=%s | error=%s", request.url.path, exc.kind, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "kind": exc.kind})


@app.on_event("startup")
async def on_startup():
    init_db()
    coordinator: DeviceCoordinator = app.state.coordinator
    try:
        client = start_mqtt(coordinator.ingestor)
        app.state.mqtt_client = client
        coordinator.publisher = MqttCommandPublisher(client)
    except Exception as e:
        logger.error("MQTT failed to start | error=%s", e)
        app.state.mqtt_client = None
    app.state.sweeper = asyncio.create_task(status_sweeper(coordinator))
    logger.info("Solar Controller API started | topic_base=%s", settings.mqtt_topic_base)


@app.on_event("shutdown")
async def on_shutdown():
    sweeper = getattr(app.state, "sweeper", None)
    if sweeper:
        sweeper.cancel()
    client = app.state.mqtt_client
    if client is not None:
        client.loop_stop()
        client.disconnect()


async def status_sweeper(coordinator: DeviceCoordinator):
    while True:
        await asyncio.sleep(settings.status_sweep_interval)
        coordinator.sweep_staleness()


@app.get("/")
def root():
    return {"message": "Solar Controller API", "version": app.version}


@app.get("/health")
def health(coordinator: DeviceCoordinator = Depends(get_coordinator)):
    client = app.state.mqtt_client
    online = sum(1 for s in coordinator.cache.snapshot().values() if s.online)
    return {
        "status": "ok",
        "mqtt": bool(client is not None and client.is_connected()),
        "timestamp": datetime.now(timezone.utc),
        "devices_online": online,
    }

# ---------- auth ----------

@app.post("/api/auth/test", response_model=TokenResponse)
def test_login(coordinator: DeviceCoordinator = Depends(get_coordinator)):
    user = coordinator.store.get_or_create_user(TEST_EMAIL, TEST_GOOGLE_ID)
    return TokenResponse(token=create_access_token(user), user=UserOut.model_validate(user))

@app.get("/api/auth/me", response_model=UserOut)
def me(user: AuthUser = Depends(get_current_user),
       coordinator: DeviceCoordinator = Depends(get_coordinator)):
    return UserOut.model_validate(coordinator.store.get_user(user.id))

# ---------- devices ----------

@app.get("/api/devices", response_model=List[DeviceOut])
def list_devices(user: AuthUser = Depends(get_current_user),
                 coordinator: DeviceCoordinator = Depends(get_coordinator)):
    return coordinator.list_devices_for_user(user)

@app.post("/api/devices", response_model=DeviceOut)
def claim_device(body: ClaimRequest, user: AuthUser = Depends(get_current_user),
                 coordinator: DeviceCoordinator = Depends(get_coordinator)):
    return coordinator.claim_device(user, body.device_id, body.confirmation_code, body.name)

@app.post("/api/devices/{device_id}/control", response_model=SuccessResponse)
def control_device(device_id: str, body: CommandRequest, user: AuthUser = Depends(get_current_user),
                   coordinator: DeviceCoordinator = Depends(get_coordinator)):
    logger.info("control | device_id=%s | command=%s | state=%s", device_id, body.command, body.state)
    coordinator.control_device(user, device_id, body.command, body.state)
    return SuccessResponse()

@app.delete("/api/devices/{device_id}", response_model=SuccessResponse)
def remove_device(device_id: str, user: AuthUser = Depends(get_current_user),
                  coordinator: DeviceCoordinator = Depends(get_coordinator)):
    coordinator.remove_device_access(user, device_id)
    return SuccessResponse()

@app.post("/api/devices/{device_id}/share", response_model=SuccessResponse)
def share_device(device_id: str, body: ShareRequest, user: AuthUser = Depends(get_current_user),
                 coordinator: DeviceCoordinator = Depends(get_coordinator)):
    coordinator.share_device(user, device_id, body.email)
    return SuccessResponse()

@app.get("/api/devices/{device_id}/history", response_model=List[HistoryOut])
def device_history(device_id: str, limit: int = Query(200, ge=1, le=1000), user: AuthUser = Depends(get_current_user),
                   coordinator: DeviceCoordinator = Depends(get_coordinator)):
    return [HistoryOut.model_validate(r) for r in coordinator.device_history(user, device_id, limit)]

@app.get("/api/users", response_model=List[UserOut])
def list_users(user: AuthUser = Depends(get_current_user),
               coordinator: DeviceCoordinator = Depends(get_coordinator)):
    return [UserOut.model_validate(u) for u in coordinator.list_users(user)]
