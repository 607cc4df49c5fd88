from fastapi import APIRouter, Depends, HTTPException, Response, status

from qwiksale_auth.deps import get_client_ip, get_current_user, get_otp_service
from qwiksale_auth.errors import InvalidCodeError, InvalidIdentifierError, OtpBackendError, RateLimitedError
from qwiksale_auth.models.user import UserEntry
from qwiksale_auth.routers.auth import backend_unavailable, no_store, throttled
from qwiksale_auth.schemas.otp import EmailConfirmRequest, EmailConfirmResponse
from qwiksale_auth.services.otp import OtpService, VerifyOutcome

router = APIRouter(prefix="/account", tags=["account"])


@router.post("/verify-email/confirm", response_model=EmailConfirmResponse)
def confirm_email(
    payload: EmailConfirmRequest,
    response: Response,
    user: UserEntry = Depends(get_current_user),
    client_ip: str = Depends(get_client_ip),
    service: OtpService = Depends(get_otp_service),
) -> EmailConfirmResponse:
    if not user.email:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Account has no email address",
        )
    try:
        outcome = service.verifier.verify(user.email, payload.code, client_ip)
    except (InvalidIdentifierError, InvalidCodeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except RateLimitedError as exc:
        raise throttled(exc) from exc
    except OtpBackendError as exc:
        raise backend_unavailable(exc) from exc

    if outcome is VerifyOutcome.EXPIRED:
        raise HTTPException(
            status_code=status.HTTP_410_GONE,
            detail="Code expired, request a new one",
        )
    if outcome is not VerifyOutcome.OK:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired code",
        )
    no_store(response)
    return EmailConfirmResponse(email_verified=True)
