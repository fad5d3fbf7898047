"""A party invited to sign a document, plus the identity verified for them via BankID."""
import enum
import secrets
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey, Uuid, Enum as SQLEnum
from sqlalchemy.orm import relationship

from app.database import Base


class SignerStatus(str, enum.Enum):
    pending = "pending"
    viewed = "viewed"
    signed = "signed"
    declined = "declined"


def _new_access_token() -> str:
    return secrets.token_urlsafe(32)


class Signer(Base):
    __tablename__ = "signers"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id = Column(Uuid, ForeignKey("documents.id"), nullable=False, index=True)

    email = Column(String(255), nullable=False)
    name = Column(String(255), nullable=True)
    status = Column(SQLEnum(SignerStatus), nullable=False, default=SignerStatus.pending)
    access_token = Column(String(64), unique=True, nullable=False, index=True, default=_new_access_token)
    signed_at = Column(DateTime(timezone=True), nullable=True)
    typed_signature = Column(String(255), nullable=True)

    # Identity (SafeProtocol). Written once, when BankID verification succeeds; never reverts.
    identity_verified = Column(Boolean, nullable=False, default=False)
    verified_identity = Column(String(255), nullable=True)
    identity_provider = Column(String(32), nullable=True)
    verification_method = Column(String(64), nullable=True)
    # sha256 hex of the normalized personnummer; the raw number is never stored
    personal_number_hash = Column(String(64), nullable=True)
    verification_timestamp = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    document = relationship("Document", back_populates="signers")
