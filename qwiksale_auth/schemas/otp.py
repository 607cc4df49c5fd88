from typing import Literal, Optional

from pydantic import BaseModel


def first_present(*values: Optional[str]) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value
    return None


class OtpRequest(BaseModel):
    identifier: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    def resolved_identifier(self) -> Optional[str]:
        return first_present(self.identifier, self.email, self.phone)


class OtpRequestResponse(BaseModel):
    ok: bool = True
    message: str
    channel: Literal["email", "sms"]
    to: str
    ttl_seconds: int
    dev_code: Optional[str] = None


class OtpVerifyRequest(OtpRequest):
    code: Optional[str] = None
    otp: Optional[str] = None

    def resolved_code(self) -> Optional[str]:
        return first_present(self.code, self.otp)


class OtpVerifyResponse(BaseModel):
    ok: bool
    verified: Optional[bool] = None
    identifier: Optional[str] = None
    status: Optional[Literal["ok", "expired", "mismatch", "missing"]] = None


class EmailConfirmRequest(BaseModel):
    code: str


class EmailConfirmResponse(BaseModel):
    ok: bool = True
    email_verified: bool
