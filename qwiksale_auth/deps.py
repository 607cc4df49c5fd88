from functools import lru_cache

from fastapi import Header, HTTPException, Request, status

from qwiksale_auth.config import settings
from qwiksale_auth.models.user import UserEntry
from qwiksale_auth.services.otp import OtpService, build_otp_service
from qwiksale_auth.services.tokens import TokenError, decode_access_token
from qwiksale_auth.services.users import user_store

IP_HEADERS = (
    "cf-connecting-ip",
    "x-forwarded-for",
    "x-vercel-forwarded-for",
    "x-real-ip",
    "x-client-ip",
)


@lru_cache
def get_otp_service() -> OtpService:
    return build_otp_service(settings, on_verified=user_store.mark_identifier_verified)


def get_client_ip(request: Request) -> str:
    for header in IP_HEADERS:
        value = request.headers.get(header)
        if value:
            first = value.split(",")[0].strip()
            if first:
                return first
    if request.client and request.client.host:
        return request.client.host
    return "anon"


def get_current_user(authorization: str | None = Header(default=None)) -> UserEntry:
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header",
        )
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid Authorization header",
        )
    try:
        user_id = decode_access_token(token.strip())
    except TokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
    user = user_store.get_user(user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    return user


def get_optional_user(authorization: str | None = Header(default=None)) -> UserEntry | None:
    if not authorization:
        return None
    try:
        return get_current_user(authorization)
    except HTTPException:
        return None
