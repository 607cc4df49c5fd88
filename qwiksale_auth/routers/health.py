from fastapi import APIRouter, Depends

from qwiksale_auth.deps import get_otp_service
from qwiksale_auth.services.otp import OtpService

router = APIRouter(tags=["health"])


@router.get("/health")
def health(service: OtpService = Depends(get_otp_service)) -> dict:
    return {"status": "ok", "otp_backend": service.store.name}
