from sqlalchemy import Column, DateTime, Index, Integer, String

from qwiksale_auth.database import Base


class OtpEntry(Base):
    __tablename__ = "otp_codes"

    id = Column(Integer, primary_key=True)
    identifier = Column(String(320), nullable=False, unique=True)
    channel = Column(String(16), nullable=False)
    code = Column(String(128), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_otp_expires_at", "expires_at"),)
