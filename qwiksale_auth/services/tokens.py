from datetime import datetime, timedelta, timezone

import jwt

from qwiksale_auth.config import Settings, settings

ACCESS_TOKEN_TYPE = "access"


class TokenError(ValueError):
    pass


def _secret(cfg: Settings) -> str:
    if not cfg.jwt_secret:
        raise TokenError("JWT secret is not configured")
    return cfg.jwt_secret


def create_access_token(user_id: int, cfg: Settings = settings) -> str:
    """Short-lived bearer token identifying a signed-in account."""
    issued_at = datetime.now(timezone.utc)
    claims = {
        "sub": str(user_id),
        "type": ACCESS_TOKEN_TYPE,
        "iat": issued_at,
        "exp": issued_at + timedelta(minutes=cfg.access_token_expire_minutes),
    }
    return jwt.encode(claims, _secret(cfg), algorithm=cfg.jwt_algorithm)


def decode_access_token(token: str, cfg: Settings = settings) -> int:
    if not token:
        raise TokenError("Token is missing")
    try:
        claims = jwt.decode(
            token,
            _secret(cfg),
            algorithms=[cfg.jwt_algorithm],
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise TokenError("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise TokenError("Invalid token") from exc

    if claims.get("type") != ACCESS_TOKEN_TYPE:
        raise TokenError("Invalid token type")
    subject = claims["sub"]
    if not str(subject).isdigit():
        raise TokenError("Invalid token subject")
    return int(subject)
