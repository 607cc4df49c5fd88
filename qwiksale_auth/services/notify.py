from __future__ import annotations

import html
import json
import logging
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from qwiksale_auth.config import Settings, settings
from qwiksale_auth.services.identifiers import Identifier, mask_email, mask_msisdn

LOGGER = logging.getLogger(__name__)

RESEND_ENDPOINT = "https://api.resend.com/emails"
AT_PRODUCTION_HOST = "https://api.africastalking.com"
AT_SANDBOX_HOST = "https://api.sandbox.africastalking.com"
SMS_MAX_LENGTH = 459


class EmailSendError(RuntimeError):
    pass


class SmsSendError(RuntimeError):
    pass


def send_otp_email(to_email: str, code: str, ttl_seconds: int, cfg: Settings = settings) -> None:
    if not cfg.resend_api_key:
        raise EmailSendError("Email provider is not configured")

    payload = json.dumps(
        {
            "from": cfg.email_from,
            "to": [to_email],
            "subject": f"Your {cfg.brand} verification code",
            "text": _build_text(code, ttl_seconds, cfg.brand),
            "html": _build_html(code, ttl_seconds, cfg.brand),
        }
    ).encode("utf-8")
    request = Request(
        RESEND_ENDPOINT,
        data=payload,
        headers={
            "Authorization": f"Bearer {cfg.resend_api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        },
        method="POST",
    )
    try:
        with urlopen(request, timeout=cfg.notify_timeout_seconds) as response:
            response.read()
    except HTTPError as exc:
        error_body = exc.read().decode("utf-8", errors="replace")
        LOGGER.error("Resend API error to=%s response=%s", mask_email(to_email), error_body[:200])
        raise EmailSendError("Failed to send OTP email") from exc
    except (URLError, TimeoutError) as exc:
        raise EmailSendError("Failed to reach Resend API") from exc


def send_otp_sms(msisdn: str, code: str, ttl_seconds: int, cfg: Settings = settings) -> None:
    if not cfg.at_username or not cfg.at_api_key:
        raise SmsSendError("SMS provider is not configured")

    host = AT_SANDBOX_HOST if cfg.at_env == "sandbox" else AT_PRODUCTION_HOST
    form = {
        "username": cfg.at_username,
        "to": msisdn if msisdn.startswith("+") else f"+{msisdn}",
        "message": _build_text(code, ttl_seconds, cfg.brand)[:SMS_MAX_LENGTH],
    }
    if cfg.at_sender_id:
        form["from"] = cfg.at_sender_id
    request = Request(
        f"{host}/version1/messaging",
        data=urlencode(form).encode("utf-8"),
        headers={
            "apiKey": cfg.at_api_key,
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        },
        method="POST",
    )
    try:
        with urlopen(request, timeout=cfg.notify_timeout_seconds) as response:
            response.read()
    except HTTPError as exc:
        error_body = exc.read().decode("utf-8", errors="replace")
        LOGGER.error(
            "Africa's Talking API error to=%s status=%s response=%s",
            mask_msisdn(msisdn),
            exc.code,
            error_body[:200],
        )
        raise SmsSendError("Failed to send OTP SMS") from exc
    except (URLError, TimeoutError) as exc:
        raise SmsSendError("Failed to reach Africa's Talking API") from exc


def _build_text(code: str, ttl_seconds: int, brand: str) -> str:
    minutes = max(1, ttl_seconds // 60)
    return f"Your {brand} code is {code}. It expires in {minutes} minutes."


def _build_html(code: str, ttl_seconds: int, brand: str) -> str:
    minutes = max(1, ttl_seconds // 60)
    safe_code = html.escape(code)
    safe_brand = html.escape(brand)
    return (
        '<div style="font-family:system-ui,-apple-system,Segoe UI,Roboto,Helvetica,Arial,sans-serif">'
        f"<h2>Your {safe_brand} verification code</h2>"
        "<p>Use this code to continue:</p>"
        f'<div style="font-size:28px;font-weight:700;letter-spacing:4px;margin:12px 0">{safe_code}</div>'
        f"<p>This code expires in {minutes} minutes. "
        "If you didn't request it, you can ignore this email.</p>"
        "</div>"
    )


class Notifier:
    """Sends codes over the identifier's channel.

    Without provider credentials outside production the code is written to
    the log instead, which keeps local sign-in usable.
    """

    def __init__(self, cfg: Settings = settings) -> None:
        self._cfg = cfg

    def deliver(self, identifier: Identifier, code: str, ttl_seconds: int) -> bool:
        """Send ``code``; True once it was handed to a provider or logged in dev."""
        if identifier.channel == "email":
            if not self._cfg.resend_api_key and not self._cfg.is_production:
                LOGGER.info("[OTP][EMAIL][DEV] to %s: %s", identifier.value, code)
                return True
            send_otp_email(identifier.value, code, ttl_seconds, self._cfg)
            return True
        if not (self._cfg.at_username and self._cfg.at_api_key) and not self._cfg.is_production:
            LOGGER.info("[OTP][SMS][DEV] to %s: %s", identifier.value, code)
            return True
        send_otp_sms(identifier.value, code, ttl_seconds, self._cfg)
        return True
