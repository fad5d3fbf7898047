"""
All SQLAlchemy models. Schema is the source of truth for new DBs.
Base.metadata.create_all() creates every table; no migration scripts needed for fresh installs.
"""
from app.models.document import Document, DocumentStatus
from app.models.signer import Signer, SignerStatus
from app.models.audit_log import ComplianceAuditEvent, AuditEventType, AuditEventStatus
from app.models.consent import ComplianceConsent, ConsentCategory, REQUIRED_CONSENT_CATEGORIES

__all__ = [
    "Document",
    "DocumentStatus",
    "Signer",
    "SignerStatus",
    "ComplianceAuditEvent",
    "AuditEventType",
    "AuditEventStatus",
    "ComplianceConsent",
    "ConsentCategory",
    "REQUIRED_CONSENT_CATEGORIES",
]
