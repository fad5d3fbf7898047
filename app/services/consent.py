"""Consent templates and the append-only consent registry."""
from __future__ import annotations

import uuid
from typing import Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.consent import ComplianceConsent, ConsentCategory, REQUIRED_CONSENT_CATEGORIES
from app.services.audit_log import RequestContext
from app.services.errors import PersistenceError

# Shown to the signer in the consent modal (Swedish). Rows snapshot the text at acceptance time.
CONSENT_TEMPLATES: dict[ConsentCategory, str] = {
    ConsentCategory.identity_signature_consent: (
        "Du är på väg att skapa en juridiskt bindande elektronisk signatur enligt eIDAS-förordningen.\n"
        "Denna signatur är lika gällande som en handskriven signatur och kan inte enkelt ångras senare.\n"
        'Genom att klicka "Acceptera" bekräftar du att du är den person som identifierades via BankID\n'
        "och att du är medveten om innebörden av att signera detta dokument."
    ),
    ConsentCategory.data_processing_consent: (
        "Din identitet har verifierats genom BankID och ditt personnummer\n"
        "lagras endast i hashad form för revisionsändamål enligt lagkrav.\n"
        "Denna data behandlas enligt GDPR och lagras i högst 7 år för juridisk compliance.\n"
        'Genom att klicka "Acceptera" samtycker du till denna databehandling.'
    ),
}


def get_consent_template(category: ConsentCategory) -> str:
    return CONSENT_TEMPLATES[ConsentCategory(category)]


def all_consent_templates() -> dict[str, str]:
    return {category.value: text for category, text in CONSENT_TEMPLATES.items()}


class ConsentRegistry:
    def __init__(self, db: Session, templates: dict[ConsentCategory, str] | None = None):
        self.db = db
        self.templates = templates or CONSENT_TEMPLATES

    def record_consents(
        self,
        signer_id: uuid.UUID,
        document_id: uuid.UUID,
        categories: Iterable[ConsentCategory],
        context: RequestContext,
    ) -> list[ComplianceConsent]:
        """Write one row per category in a single transaction. Any failure rolls back the whole
        batch and raises PersistenceError. Caller must have checked identity verification."""
        rows = [
            ComplianceConsent(
                signer_id=signer_id,
                document_id=document_id,
                consent_type=ConsentCategory(category),
                consent_text=self.templates[ConsentCategory(category)],
                consent_accepted=True,
                ip_address=(context.ip_address or None),
                user_agent=(context.user_agent[:500] if context.user_agent else None),
                device_id=(context.device_id[:255] if context.device_id else None),
            )
            for category in categories
        ]
        try:
            self.db.add_all(rows)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError("Failed to record consent") from e
        return rows

    def consented_categories(self, signer_id: uuid.UUID) -> set[ConsentCategory]:
        rows = (
            self.db.query(ComplianceConsent.consent_type)
            .filter(
                ComplianceConsent.signer_id == signer_id,
                ComplianceConsent.consent_accepted.is_(True),
            )
            .distinct()
            .all()
        )
        return {ConsentCategory(r[0]) for r in rows}

    def has_all_required(self, signer_id: uuid.UUID) -> bool:
        return REQUIRED_CONSENT_CATEGORIES.issubset(self.consented_categories(signer_id))
