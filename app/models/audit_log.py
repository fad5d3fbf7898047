"""Append-only compliance audit trail for identity verification, consent and signing.
No updates or deletes - every record is permanent evidence."""
import enum
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Uuid, Enum as SQLEnum
from app.database import Base, JSONType


class AuditEventType(str, enum.Enum):
    identity_verification_initiated = "identity_verification_initiated"
    identity_verification_success = "identity_verification_success"
    identity_verification_failed = "identity_verification_failed"
    consent_accepted = "consent_accepted"
    document_signed = "document_signed"
    document_declined = "document_declined"


class AuditEventStatus(str, enum.Enum):
    pending = "pending"
    success = "success"
    failed = "failed"


class ComplianceAuditEvent(Base):
    __tablename__ = "compliance_audit"

    id = Column(Integer, primary_key=True, index=True)

    signer_id = Column(Uuid, ForeignKey("signers.id"), nullable=False, index=True)
    document_id = Column(Uuid, ForeignKey("documents.id"), nullable=False, index=True)

    event_type = Column(SQLEnum(AuditEventType), nullable=False, index=True)
    event_status = Column(SQLEnum(AuditEventStatus), nullable=False)

    # BankID order reference; also kept in meta, but a column keeps dedup lookups portable
    order_ref = Column(String(64), nullable=True, index=True)

    # Optional structured data (orderRef, autoStartToken, consent categories, cert validity)
    meta = Column("metadata", JSONType, nullable=True)

    error_code = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)

    # Request context for legal weight
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)
    location_country = Column(String(100), nullable=True)
    location_city = Column(String(100), nullable=True)

    # UTC only
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
