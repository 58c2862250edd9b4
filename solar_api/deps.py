from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from .coordinator import DeviceCoordinator
from .schemas import AuthUser
from .security import WEB_TEMP_PREFIX, decode_access_token
from .settings import settings

bearer_scheme = HTTPBearer(auto_error=False)

TEST_EMAIL = "test@solar.com"
TEST_GOOGLE_ID = "test-google-id"
WEB_EMAIL = "webuser@solar.com"


def get_coordinator(request: Request) -> DeviceCoordinator:
    return request.app.state.coordinator


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    coordinator: DeviceCoordinator = Depends(get_coordinator),
) -> AuthUser:
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Access token required")
    token = credentials.credentials

    if token == settings.test_token:
        user = coordinator.store.get_or_create_user(TEST_EMAIL, TEST_GOOGLE_ID)
        return AuthUser(id=user.id, email=user.email, google_id=user.google_id)

    if token.startswith(WEB_TEMP_PREFIX):
        google_id = token[len(WEB_TEMP_PREFIX):]
        user = coordinator.store.get_or_create_user(WEB_EMAIL, google_id)
        return AuthUser(id=user.id, email=user.email, google_id=google_id)

    try:
        return decode_access_token(token)
    except JWTError:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid token")
