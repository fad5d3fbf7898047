"""Accepted consent categories. One immutable row per category per acceptance; rejections are never stored."""
import enum
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, ForeignKey, Uuid, Enum as SQLEnum, Index
from app.database import Base


class ConsentCategory(str, enum.Enum):
    identity_signature_consent = "identity_signature_consent"
    data_processing_consent = "data_processing_consent"


REQUIRED_CONSENT_CATEGORIES = frozenset(ConsentCategory)


class ComplianceConsent(Base):
    __tablename__ = "compliance_consent"
    __table_args__ = (Index("idx_consent_signer_category", "signer_id", "consent_type"),)

    id = Column(Integer, primary_key=True, index=True)

    signer_id = Column(Uuid, ForeignKey("signers.id"), nullable=False, index=True)
    document_id = Column(Uuid, ForeignKey("documents.id"), nullable=False, index=True)

    consent_type = Column(SQLEnum(ConsentCategory), nullable=False)
    # Snapshot of the template text the signer saw; later template edits do not touch it
    consent_text = Column(Text, nullable=False)
    consent_accepted = Column(Boolean, nullable=False, default=True)
    consent_timestamp = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)
    device_id = Column(String(255), nullable=True)
