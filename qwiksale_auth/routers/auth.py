from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Response, status
from fastapi.responses import JSONResponse

from qwiksale_auth.config import settings
from qwiksale_auth.deps import get_client_ip, get_optional_user, get_otp_service
from qwiksale_auth.errors import (
    InvalidCodeError,
    InvalidIdentifierError,
    OtpBackendError,
    RateLimitedError,
)
from qwiksale_auth.models.user import UserEntry
from qwiksale_auth.schemas.otp import (
    OtpRequest,
    OtpRequestResponse,
    OtpVerifyRequest,
    OtpVerifyResponse,
    first_present,
)
from qwiksale_auth.services.identifiers import parse_identifier
from qwiksale_auth.services.otp import OtpService, VerifyOutcome
from qwiksale_auth.services.throttle import ThrottleResult

router = APIRouter(prefix="/auth", tags=["auth"])

GENERIC_MESSAGE = "If this identifier exists, a code has been sent."
NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}
OUTCOME_STATUS = {
    VerifyOutcome.EXPIRED: status.HTTP_410_GONE,
    VerifyOutcome.MISMATCH: status.HTTP_400_BAD_REQUEST,
    VerifyOutcome.MISSING: status.HTTP_400_BAD_REQUEST,
}


def no_store(response: Response) -> None:
    response.headers.update(NO_STORE_HEADERS)


def rate_limit_headers(result: ThrottleResult) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "Retry-After": str(result.retry_after_seconds),
    }


def throttled(exc: RateLimitedError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail="Too many requests. Please slow down and try again later.",
        headers={
            **NO_STORE_HEADERS,
            "Retry-After": str(exc.retry_after_seconds),
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": "0",
        },
    )


def backend_unavailable(exc: OtpBackendError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=str(exc),
        headers=NO_STORE_HEADERS,
    )


@router.post("/otp/request", response_model=OtpRequestResponse, response_model_exclude_none=True)
def request_otp(
    response: Response,
    payload: Optional[OtpRequest] = Body(default=None),
    identifier: Optional[str] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    user: Optional[UserEntry] = Depends(get_optional_user),
    client_ip: str = Depends(get_client_ip),
    service: OtpService = Depends(get_otp_service),
) -> OtpRequestResponse:
    raw_identifier = first_present(
        identifier,
        email,
        phone,
        payload.resolved_identifier() if payload else None,
        user.email if user else None,
    )
    try:
        result = service.issuer.issue(raw_identifier, client_ip)
    except InvalidIdentifierError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
            headers=NO_STORE_HEADERS,
        ) from exc
    except RateLimitedError as exc:
        raise throttled(exc) from exc
    except OtpBackendError as exc:
        raise backend_unavailable(exc) from exc

    no_store(response)
    if result.rate_limit is not None:
        response.headers.update(rate_limit_headers(result.rate_limit))
    return OtpRequestResponse(
        message=GENERIC_MESSAGE,
        channel=result.identifier.channel,
        to=result.identifier.masked,
        ttl_seconds=service.ttl_seconds,
        dev_code=result.code if settings.show_dev_code else None,
    )


@router.api_route(
    "/otp/verify",
    methods=["GET", "POST"],
    response_model=OtpVerifyResponse,
    response_model_exclude_none=True,
)
def verify_otp(
    response: Response,
    payload: Optional[OtpVerifyRequest] = Body(default=None),
    identifier: Optional[str] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    code: Optional[str] = None,
    otp: Optional[str] = None,
    client_ip: str = Depends(get_client_ip),
    service: OtpService = Depends(get_otp_service),
):
    raw_identifier = first_present(
        identifier, email, phone, payload.resolved_identifier() if payload else None
    )
    raw_code = first_present(code, otp, payload.resolved_code() if payload else None)
    try:
        outcome = service.verifier.verify(raw_identifier, raw_code, client_ip)
    except (InvalidIdentifierError, InvalidCodeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
            headers=NO_STORE_HEADERS,
        ) from exc
    except RateLimitedError as exc:
        raise throttled(exc) from exc
    except OtpBackendError as exc:
        raise backend_unavailable(exc) from exc

    if outcome is not VerifyOutcome.OK:
        return JSONResponse(
            status_code=OUTCOME_STATUS[outcome],
            content={"ok": False, "status": outcome.value},
            headers=NO_STORE_HEADERS,
        )
    no_store(response)
    return OtpVerifyResponse(
        ok=True,
        verified=True,
        identifier=parse_identifier(raw_identifier).value,
        status=outcome.value,
    )
