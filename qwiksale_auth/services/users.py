from datetime import datetime, timezone
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from qwiksale_auth.database import session_scope
from qwiksale_auth.models.user import UserEntry
from qwiksale_auth.services.identifiers import Identifier, normalize_email, normalize_kenyan_phone

LOGGER = logging.getLogger(__name__)


class UserStore:
    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        self._session_factory = session_factory

    def get_user(self, user_id: int) -> UserEntry | None:
        with session_scope(self._session_factory) as session:
            return session.get(UserEntry, user_id)

    def ensure_user(
        self, email: str | None = None, phone_number: str | None = None
    ) -> tuple[UserEntry, bool]:
        key_email = normalize_email(email) if email else None
        key_phone = normalize_kenyan_phone(phone_number) if phone_number else None
        if not key_email and not key_phone:
            raise ValueError("A valid email or Kenyan phone number is required")

        with session_scope(self._session_factory) as session:
            if key_email:
                stmt = select(UserEntry).where(UserEntry.email == key_email)
            else:
                stmt = select(UserEntry).where(UserEntry.phone_number == key_phone)
            entry = session.execute(stmt).scalar_one_or_none()
            if entry:
                return entry, True

            now = datetime.now(timezone.utc)
            entry = UserEntry(
                email=key_email,
                phone_number=key_phone,
                verified=False,
                created_at=now,
                updated_at=now,
            )
            session.add(entry)
            session.flush()
            return entry, False

    def mark_identifier_verified(self, identifier: Identifier) -> bool:
        """Record a confirmed email or phone on the matching account.

        Best-effort: a missing account or a database error leaves the
        verification outcome untouched.
        """
        now = datetime.now(timezone.utc)
        if identifier.channel == "email":
            stmt = (
                update(UserEntry)
                .where(UserEntry.email == identifier.value)
                .values(email_verified_at=now, verified=True, updated_at=now)
            )
        else:
            stmt = (
                update(UserEntry)
                .where(UserEntry.phone_number == identifier.value)
                .values(phone_verified_at=now, verified=True, updated_at=now)
            )
        try:
            with session_scope(self._session_factory) as session:
                result = session.execute(stmt)
                return result.rowcount > 0
        except SQLAlchemyError as exc:
            LOGGER.warning("Could not mark %s verified: %s", identifier.masked, exc)
            return False


user_store = UserStore()
