from datetime import datetime, timedelta, timezone
from jose import jwt, JWTError

from .models import User
from .schemas import AuthUser
from .settings import settings

WEB_TEMP_PREFIX = "web-temp-token-"


def create_access_token(user: User) -> str:
    exp = datetime.now(timezone.utc) + timedelta(days=settings.jwt_expire_days)
    payload = {"id": user.id, "googleId": user.google_id, "email": user.email, "exp": exp}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> AuthUser:
    payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    if payload.get("id") is None or not payload.get("email"):
        raise JWTError("Missing identity claims")
    return AuthUser(id=payload["id"], email=payload["email"], google_id=payload.get("googleId"))
