"""SafeProtocol: BankID identity verification followed by eIDAS/GDPR consent, before signing.

State lives in the database only (signer row, compliance_audit, compliance_consent), so any
process can serve any poll. Transitions per signer:

    unverified -> verification_pending -> verification_failed | identity_verified
    identity_verified -> consent_pending -> consent_given

Primary writes (signer identity fields, consent rows) abort the request when they fail.
Audit writes are best effort on top of an already-committed primary write.
"""
from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import Settings, get_settings
from app.models.audit_log import AuditEventStatus, AuditEventType
from app.models.consent import ConsentCategory, REQUIRED_CONSENT_CATEGORIES
from app.models.document import DocumentStatus
from app.models.signer import Signer, SignerStatus
from app.services.audit_log import ComplianceAuditLog, RequestContext, build_event
from app.services.bankid import (
    STATUS_COMPLETE,
    STATUS_FAILED,
    STATUS_PENDING,
    CollectResult,
    InitiateResult,
    ProviderError,
    format_provider_error_message,
    is_provider_error,
)
from app.services.consent import ConsentRegistry
from app.services.errors import (
    AlreadyVerifiedError,
    IdentityProviderError,
    IdentityVerificationRequiredError,
    InvalidInputError,
    NotFoundError,
    PersistenceError,
    PreconditionError,
    SafeProtocolIncompleteError,
    VerificationInProgressError,
)
from app.services.personal_number import validate_and_hash

logger = logging.getLogger("uvicorn.error")

IDENTITY_PROVIDER = "bankid"
VERIFICATION_METHOD = "bankid_challenge"


class IdentityGateway(Protocol):
    def initiate(
        self, ip_address: str, personal_number: str | None = None, display_message: str | None = None
    ) -> InitiateResult | ProviderError: ...

    def poll(self, order_ref: str) -> CollectResult | ProviderError: ...

    def cancel(self, order_ref: str) -> bool: ...


class SignerState(str, enum.Enum):
    unverified = "unverified"
    verification_pending = "verification_pending"
    verification_failed = "verification_failed"
    identity_verified = "identity_verified"
    consent_pending = "consent_pending"
    consent_given = "consent_given"


@dataclass(frozen=True)
class VerificationStarted:
    order_ref: str
    auto_start_token: str


@dataclass(frozen=True)
class VerificationCheck:
    """Outcome of one poll. status is pending | failed | complete."""
    status: str
    error: str | None = None
    error_code: str | None = None
    verified_name: str | None = None
    signer: Signer | None = None


@dataclass
class SafeProtocolStatus:
    state: SignerState
    identity_verified: bool
    consented_categories: list[ConsentCategory] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.state == SignerState.consent_given


class SafeProtocolService:
    def __init__(
        self,
        db: Session,
        gateway: IdentityGateway,
        settings: Settings | None = None,
        locate: Callable[[str], dict[str, str] | None] | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.audit = ComplianceAuditLog(db)
        self.consents = ConsentRegistry(db)
        self.locate = locate

    def get_signer(self, signer_id: uuid.UUID) -> Signer:
        signer = self.db.query(Signer).filter(Signer.id == signer_id).first()
        if not signer:
            raise NotFoundError("Signer not found")
        return signer

    def is_complete(self, signer: Signer) -> bool:
        """Signing is allowed only when identity is verified and every required consent is recorded."""
        # Re-read persisted state; the in-memory object may predate another process's write
        self.db.refresh(signer)
        return bool(signer.identity_verified) and self.consents.has_all_required(signer.id)

    def get_status(self, signer_id: uuid.UUID) -> SafeProtocolStatus:
        signer = self.get_signer(signer_id)
        consented = self.consents.consented_categories(signer.id)
        ordered = [c for c in ConsentCategory if c in consented]
        if signer.identity_verified:
            if REQUIRED_CONSENT_CATEGORIES.issubset(consented):
                state = SignerState.consent_given
            elif consented:
                state = SignerState.consent_pending
            else:
                state = SignerState.identity_verified
            return SafeProtocolStatus(state=state, identity_verified=True, consented_categories=ordered)

        state = SignerState.unverified
        if self.audit.find_recent_pending_attempt(
            signer.id, window_minutes=self.settings.safeprotocol_dedup_window_minutes
        ):
            state = SignerState.verification_pending
        else:
            latest = self.audit.latest_verification_event(signer.id)
            if latest is not None and latest.event_status == AuditEventStatus.failed:
                state = SignerState.verification_failed
        return SafeProtocolStatus(state=state, identity_verified=False, consented_categories=ordered)

    def start_verification(
        self,
        signer_id: uuid.UUID,
        context: RequestContext,
        personal_number: str | None = None,
    ) -> VerificationStarted:
        signer = self.get_signer(signer_id)
        if signer.identity_verified:
            raise AlreadyVerifiedError()

        existing = self.audit.find_recent_pending_attempt(
            signer.id, window_minutes=self.settings.safeprotocol_dedup_window_minutes
        )
        if existing:
            raise VerificationInProgressError(existing)

        ip_address = context.ip_address or "127.0.0.1"
        result = self.gateway.initiate(
            ip_address,
            personal_number,
            f'Please authenticate with BankID to sign "{signer.name or "the document"}"',
        )
        if is_provider_error(result):
            logger.warning("[SafeProtocol] BankID init failed: signer=%s errorCode=%s", signer.id, result.error_code)
            raise IdentityProviderError(format_provider_error_message(result), result.error_code)

        # Dedup relies on this row; if it fails to land the user can still authenticate.
        self.audit.record(
            build_event(
                signer.id,
                signer.document_id,
                AuditEventType.identity_verification_initiated,
                AuditEventStatus.pending,
                context=context,
                order_ref=result.order_ref,
                meta={"orderRef": result.order_ref, "autoStartToken": result.auto_start_token},
            )
        )
        logger.info("[SafeProtocol] Verification started: signer=%s orderRef=%s", signer.id, result.order_ref)
        return VerificationStarted(order_ref=result.order_ref, auto_start_token=result.auto_start_token)

    def check_verification(self, order_ref: str, signer_id: uuid.UUID, context: RequestContext) -> VerificationCheck:
        """Poll BankID for an order this signer started.

        Only orders with an initiation row for the same signer are polled. If that row was
        lost (audit writes are best effort) the order is unknown here and the signer has to
        start again, which the dedup check allows because it sees no open attempt either.
        """
        order_ref = (order_ref or "").strip()
        if not order_ref:
            raise InvalidInputError("orderRef is required")
        signer = self.get_signer(signer_id)

        if signer.identity_verified:
            # Identity fields are write-once; report the stored result without asking BankID again
            return VerificationCheck(status=STATUS_COMPLETE, verified_name=signer.verified_identity, signer=signer)

        initiation = self.audit.find_initiation(order_ref)
        if initiation is None or initiation.signer_id != signer.id:
            logger.warning("[SafeProtocol] collect refused: orderRef=%s signer=%s not the initiator", order_ref, signer.id)
            raise PreconditionError("This authentication order does not belong to the signer")

        result = self.gateway.poll(order_ref)

        if is_provider_error(result):
            self._record_failure(signer, context, order_ref, result.error_code, result.details)
            return VerificationCheck(
                status=STATUS_FAILED,
                error=format_provider_error_message(result),
                error_code=result.error_code,
            )

        if result.status == STATUS_PENDING:
            return VerificationCheck(status=STATUS_PENDING)

        if result.status == STATUS_FAILED:
            self._record_failure(signer, context, order_ref, result.hint_code, result.hint_code or "Authentication failed")
            return VerificationCheck(
                status=STATUS_FAILED,
                error="Authentication failed. Please try again.",
                error_code=result.hint_code,
            )

        return self._complete_verification(signer, context, order_ref, result)

    def _complete_verification(
        self, signer: Signer, context: RequestContext, order_ref: str, result: CollectResult
    ) -> VerificationCheck:
        completion = result.completion
        validation = validate_and_hash(completion.personal_number if completion else None)
        if not validation.valid:
            # BankID said complete, but the identity it returned does not check out
            self._record_failure(signer, context, order_ref, "INVALID_PERSONAL_NUMBER", validation.error)
            return VerificationCheck(
                status=STATUS_FAILED,
                error="Invalid identity information received from BankID",
                error_code="INVALID_PERSONAL_NUMBER",
            )

        try:
            signer.identity_verified = True
            signer.verified_identity = completion.name or None
            signer.identity_provider = IDENTITY_PROVIDER
            signer.verification_method = VERIFICATION_METHOD
            signer.personal_number_hash = validation.hash
            signer.verification_timestamp = datetime.now(timezone.utc)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("[SafeProtocol] Failed to save verified identity: signer=%s", signer.id)
            raise PersistenceError("Failed to save verified identity") from e
        self.db.refresh(signer)

        location = self.locate(context.ip_address) if self.locate and context.ip_address else None
        self.audit.record(
            build_event(
                signer.id,
                signer.document_id,
                AuditEventType.identity_verification_success,
                AuditEventStatus.success,
                context=context,
                order_ref=order_ref,
                location=location,
                meta={
                    "orderRef": order_ref,
                    "verifiedName": completion.name,
                    "givenName": completion.given_name,
                    "surname": completion.surname,
                    "certNotBefore": completion.cert_not_before,
                    "certNotAfter": completion.cert_not_after,
                },
            )
        )
        logger.info("[SafeProtocol] Identity verified: signer=%s orderRef=%s", signer.id, order_ref)
        return VerificationCheck(status=STATUS_COMPLETE, verified_name=signer.verified_identity, signer=signer)

    def _record_failure(
        self,
        signer: Signer,
        context: RequestContext,
        order_ref: str,
        error_code: str | None,
        error_message: str | None,
    ) -> None:
        self.audit.record(
            build_event(
                signer.id,
                signer.document_id,
                AuditEventType.identity_verification_failed,
                AuditEventStatus.failed,
                context=context,
                order_ref=order_ref,
                meta={"orderRef": order_ref},
                error_code=error_code,
                error_message=error_message,
            )
        )

    def cancel_verification(self, order_ref: str, signer_id: uuid.UUID, context: RequestContext) -> bool:
        """Best-effort cancel. A cancelled order is closed in the audit log so it stops blocking a restart."""
        signer = self.get_signer(signer_id)
        initiation = self.audit.find_initiation(order_ref)
        if initiation is not None and initiation.signer_id != signer.id:
            raise PreconditionError("This authentication order does not belong to the signer")
        cancelled = self.gateway.cancel(order_ref)
        if cancelled and not self.audit.is_attempt_resolved(order_ref):
            self._record_failure(signer, context, order_ref, "CANCELLED", "Authentication was cancelled")
        return cancelled

    def submit_consent(
        self,
        signer_id: uuid.UUID,
        categories: Iterable[ConsentCategory],
        context: RequestContext,
    ) -> list[ConsentCategory]:
        signer = self.get_signer(signer_id)
        self.db.refresh(signer)
        if not signer.identity_verified:
            raise IdentityVerificationRequiredError()

        accepted = list(dict.fromkeys(ConsentCategory(c) for c in categories))
        if not accepted:
            raise InvalidInputError("At least one consent category is required")

        self.consents.record_consents(signer.id, signer.document_id, accepted, context)
        self.audit.record(
            build_event(
                signer.id,
                signer.document_id,
                AuditEventType.consent_accepted,
                AuditEventStatus.success,
                context=context,
                meta={"consentTypes": accepted, "deviceId": context.device_id},
            )
        )
        logger.info("[SafeProtocol] Consent recorded: signer=%s categories=%s", signer.id, [c.value for c in accepted])
        return accepted

    def sign(self, signer: Signer, typed_signature: str, context: RequestContext) -> Signer:
        """Accept a signature only when SafeProtocol is complete for the signer."""
        if signer.status == SignerStatus.signed:
            raise PreconditionError("Document already signed by this signer")
        if signer.status == SignerStatus.declined:
            raise PreconditionError("Signer has declined this document")
        if signer.document is not None and signer.document.status == DocumentStatus.declined:
            raise PreconditionError("This document has been declined")
        if not self.is_complete(signer):
            raise SafeProtocolIncompleteError(
                identity_verified=bool(signer.identity_verified),
                consent_given=self.consents.has_all_required(signer.id),
            )

        try:
            signer.status = SignerStatus.signed
            signer.signed_at = datetime.now(timezone.utc)
            signer.typed_signature = typed_signature.strip()
            document = signer.document
            if document is not None and all(s.status == SignerStatus.signed for s in document.signers):
                document.status = DocumentStatus.completed
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("[SafeProtocol] Failed to save signature: signer=%s", signer.id)
            raise PersistenceError("Failed to save signature") from e
        self.db.refresh(signer)

        meta: dict[str, Any] = {"verifiedName": signer.verified_identity, "signedAt": signer.signed_at}
        self.audit.record(
            build_event(
                signer.id,
                signer.document_id,
                AuditEventType.document_signed,
                AuditEventStatus.success,
                context=context,
                meta=meta,
            )
        )
        return signer

    def decline(self, signer: Signer, reason: str | None, context: RequestContext) -> Signer:
        """Declining needs no SafeProtocol; it ends the document for every signer."""
        if signer.status == SignerStatus.signed:
            raise PreconditionError("Document already signed by this signer")
        if signer.status == SignerStatus.declined:
            raise PreconditionError("Signer has already declined this document")

        try:
            signer.status = SignerStatus.declined
            if signer.document is not None:
                signer.document.status = DocumentStatus.declined
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("[SafeProtocol] Failed to save decline: signer=%s", signer.id)
            raise PersistenceError("Failed to decline document") from e
        self.db.refresh(signer)

        self.audit.record(
            build_event(
                signer.id,
                signer.document_id,
                AuditEventType.document_declined,
                AuditEventStatus.success,
                context=context,
                meta={"reason": (reason or "").strip() or None},
            )
        )
        logger.info("[SafeProtocol] Document declined: signer=%s document=%s", signer.id, signer.document_id)
        return signer
