from dataclasses import dataclass
import re
from typing import Literal

from qwiksale_auth.errors import InvalidIdentifierError

Channel = Literal["email", "sms"]

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MSISDN_RE = re.compile(r"^254[71][0-9]{8}$")


@dataclass(frozen=True)
class Identifier:
    channel: Channel
    value: str

    @property
    def key(self) -> str:
        prefix = "email" if self.channel == "email" else "tel"
        return f"{prefix}:{self.value}"

    @property
    def masked(self) -> str:
        if self.channel == "email":
            return mask_email(self.value)
        return mask_msisdn(self.value)


def normalize_email(raw: str) -> str | None:
    value = raw.strip().lower()
    if not value or len(value) > 254:
        return None
    return value if EMAIL_RE.match(value) else None


def normalize_kenyan_phone(raw: str) -> str | None:
    """Canonicalize common Kenyan mobile inputs to a 12-digit MSISDN.

    Accepts 07XXXXXXXX, 01XXXXXXXX, +2547XXXXXXXX, 2547XXXXXXXX, 7XXXXXXXX and
    1XXXXXXXX. Landlines and unknown prefixes return None.
    """
    digits = re.sub(r"[^0-9]", "", raw or "")
    if not digits:
        return None
    if digits.startswith("254"):
        candidate = digits[:12]
    elif digits.startswith("0") and len(digits) >= 10:
        candidate = "254" + digits[1:10]
    elif digits[0] in "71" and len(digits) >= 9:
        candidate = "254" + digits[:9]
    else:
        return None
    return candidate if MSISDN_RE.match(candidate) else None


def parse_identifier(raw: str | None) -> Identifier:
    if raw is None or not str(raw).strip():
        raise InvalidIdentifierError("Missing identifier")
    text = str(raw).strip()
    if "@" in text:
        email = normalize_email(text)
        if email is None:
            raise InvalidIdentifierError("Enter a valid Kenyan phone or email")
        return Identifier(channel="email", value=email)
    phone = normalize_kenyan_phone(text)
    if phone is None:
        raise InvalidIdentifierError("Enter a valid Kenyan phone or email")
    return Identifier(channel="sms", value=phone)


def mask_email(email: str) -> str:
    user, _, host = email.partition("@")
    if not user or not host:
        return email
    if len(user) <= 2:
        return f"{user[0]}***@{host}"
    return f"{user[:2]}***@{host}"


def mask_msisdn(msisdn: str) -> str:
    if not MSISDN_RE.match(msisdn):
        return msisdn
    return f"{msisdn[:6]}***{msisdn[-3:]}"
