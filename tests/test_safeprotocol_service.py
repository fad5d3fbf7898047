import uuid

import pytest
from sqlalchemy.exc import SQLAlchemyError

from app.models.audit_log import AuditEventStatus, AuditEventType, ComplianceAuditEvent
from app.models.consent import ComplianceConsent, ConsentCategory
from app.models.document import DocumentStatus
from app.models.signer import Signer, SignerStatus
from app.services.audit_log import ComplianceAuditLog, RequestContext
from app.services.bankid import CollectResult, ProviderError
from app.services.errors import (
    AlreadyVerifiedError,
    IdentityProviderError,
    IdentityVerificationRequiredError,
    InvalidInputError,
    NotFoundError,
    PreconditionError,
    SafeProtocolIncompleteError,
    VerificationInProgressError,
)
from app.services.personal_number import hash_personal_number
from app.services.safeprotocol import SafeProtocolService, SignerState
from tests.conftest import BAD_CHECKSUM_PNR, VALID_PNR, complete_result, create_signer

CTX = RequestContext(ip_address="203.0.113.5", user_agent="pytest", device_id="device-1")
ALL_CONSENTS = [ConsentCategory.identity_signature_consent, ConsentCategory.data_processing_consent]


@pytest.fixture
def service(db, gateway):
    return SafeProtocolService(db, gateway)


def _events(db, signer):
    return [(e.event_type, e.event_status) for e in ComplianceAuditLog(db).list_events(signer.id)]


def _fail_audit_commits(db, monkeypatch):
    original = db.commit

    def commit():
        if any(isinstance(obj, ComplianceAuditEvent) for obj in db.new):
            raise SQLAlchemyError("audit table unavailable")
        return original()

    monkeypatch.setattr(db, "commit", commit)


def test_start_returns_order_and_records_pending_event(db, gateway, service):
    signer = create_signer(db)
    started = service.start_verification(signer.id, CTX)
    assert started.order_ref == "order-1"
    assert started.auto_start_token == "token-1"
    assert gateway.calls == [("initiate", "203.0.113.5")]

    event = ComplianceAuditLog(db).find_initiation("order-1")
    assert event.event_status == AuditEventStatus.pending
    assert event.meta == {"orderRef": "order-1", "autoStartToken": "token-1"}
    assert event.ip_address == "203.0.113.5"


def test_start_unknown_signer(service):
    with pytest.raises(NotFoundError):
        service.start_verification(uuid.uuid4(), CTX)


def test_start_already_verified(db, gateway, service):
    signer = create_signer(db, verified=True)
    with pytest.raises(AlreadyVerifiedError) as exc:
        service.start_verification(signer.id, CTX)
    assert exc.value.to_response()["alreadyVerified"] is True
    assert gateway.calls == []


def test_second_start_inside_window_returns_existing_order(db, gateway, service):
    signer = create_signer(db)
    service.start_verification(signer.id, CTX)
    with pytest.raises(VerificationInProgressError) as exc:
        service.start_verification(signer.id, CTX)
    assert exc.value.status_code == 429
    assert exc.value.to_response()["orderRef"] == "order-1"
    assert len([c for c in gateway.calls if c[0] == "initiate"]) == 1


def test_restart_allowed_after_failure(db, gateway, service):
    signer = create_signer(db)
    service.start_verification(signer.id, CTX)
    gateway.poll_results.append(CollectResult(order_ref="order-1", status="failed", hint_code="userCancel"))
    check = service.check_verification("order-1", signer.id, CTX)
    assert check.status == "failed"
    assert check.error_code == "userCancel"

    started = service.start_verification(signer.id, CTX)
    assert started.order_ref == "order-2"


def test_provider_error_on_start_writes_nothing(db, gateway, service):
    signer = create_signer(db)
    gateway.init_results.append(ProviderError("INVALID_PARAMETERS", "bad ip"))
    with pytest.raises(IdentityProviderError) as exc:
        service.start_verification(signer.id, CTX)
    assert exc.value.to_response() == {"error": "Invalid authentication parameters", "errorCode": "INVALID_PARAMETERS"}
    assert _events(db, signer) == []


def test_pending_poll_changes_nothing(db, gateway, service):
    signer = create_signer(db)
    service.start_verification(signer.id, CTX)
    before = _events(db, signer)
    check = service.check_verification("order-1", signer.id, CTX)
    assert check.status == "pending"
    assert _events(db, signer) == before
    db.refresh(signer)
    assert signer.identity_verified is False


def test_complete_poll_verifies_signer(db, gateway, service):
    signer = create_signer(db)
    service.start_verification(signer.id, CTX)
    gateway.poll_results.append(complete_result("order-1"))
    check = service.check_verification("order-1", signer.id, CTX)

    assert check.status == "complete"
    assert check.verified_name == "Anna Andersson"
    db.refresh(signer)
    assert signer.identity_verified is True
    assert signer.verified_identity == "Anna Andersson"
    assert signer.identity_provider == "bankid"
    assert signer.verification_method == "bankid_challenge"
    assert signer.personal_number_hash == hash_personal_number(VALID_PNR)
    assert signer.verification_timestamp is not None

    success = [e for e in ComplianceAuditLog(db).list_events(signer.id) if e.event_type == AuditEventType.identity_verification_success]
    assert len(success) == 1
    assert success[0].order_ref == "order-1"
    assert success[0].meta["verifiedName"] == "Anna Andersson"
    assert VALID_PNR not in str(success[0].meta)


def test_invalid_personal_number_fails_verification(db, gateway, service):
    signer = create_signer(db)
    service.start_verification(signer.id, CTX)
    gateway.poll_results.append(complete_result("order-1", personal_number=BAD_CHECKSUM_PNR))
    check = service.check_verification("order-1", signer.id, CTX)

    assert check.status == "failed"
    assert check.error_code == "INVALID_PERSONAL_NUMBER"
    assert check.error == "Invalid identity information received from BankID"
    db.refresh(signer)
    assert signer.identity_verified is False
    assert signer.personal_number_hash is None
    assert _events(db, signer)[-1] == (AuditEventType.identity_verification_failed, AuditEventStatus.failed)


def test_provider_error_on_poll_is_recorded(db, gateway, service):
    signer = create_signer(db)
    service.start_verification(signer.id, CTX)
    gateway.poll_results.append(ProviderError("ORDER_REF_NOT_FOUND", "No such order"))
    check = service.check_verification("order-1", signer.id, CTX)
    assert check.status == "failed"
    assert check.error == "Authentication session not found"
    failed = ComplianceAuditLog(db).list_events(signer.id)[-1]
    assert failed.error_code == "ORDER_REF_NOT_FOUND"
    assert failed.error_message == "No such order"


def test_audit_failure_does_not_revert_verification(db, gateway, service, monkeypatch):
    signer = create_signer(db)
    service.start_verification(signer.id, CTX)
    gateway.poll_results.append(complete_result("order-1"))
    _fail_audit_commits(db, monkeypatch)

    check = service.check_verification("order-1", signer.id, CTX)
    assert check.status == "complete"
    monkeypatch.undo()
    db.refresh(signer)
    assert signer.identity_verified is True
    assert AuditEventType.identity_verification_success not in [t for t, _ in _events(db, signer)]


def test_check_requires_order_ref(db, service):
    signer = create_signer(db)
    with pytest.raises(InvalidInputError):
        service.check_verification("  ", signer.id, CTX)


def test_check_rejects_foreign_order(db, gateway, service):
    owner = create_signer(db)
    other = create_signer(db, email="bo@example.se", name="Bo Berg")
    service.start_verification(owner.id, CTX)
    with pytest.raises(PreconditionError):
        service.check_verification("order-1", other.id, CTX)
    assert ("poll", "order-1") not in gateway.calls


def test_check_rejects_order_without_initiation(db, gateway, service):
    signer = create_signer(db)
    gateway.poll_results.append(complete_result("order-7"))
    with pytest.raises(PreconditionError):
        service.check_verification("order-7", signer.id, CTX)
    assert gateway.calls == []
    db.refresh(signer)
    assert signer.identity_verified is False
    assert _events(db, signer) == []


def test_lost_initiation_row_means_start_again(db, gateway, service, monkeypatch):
    signer = create_signer(db)
    _fail_audit_commits(db, monkeypatch)
    assert service.start_verification(signer.id, CTX).order_ref == "order-1"
    monkeypatch.undo()

    with pytest.raises(PreconditionError):
        service.check_verification("order-1", signer.id, CTX)
    assert service.start_verification(signer.id, CTX).order_ref == "order-2"
    gateway.poll_results.append(complete_result("order-2"))
    assert service.check_verification("order-2", signer.id, CTX).status == "complete"


def test_check_after_verification_short_circuits(db, gateway, service):
    signer = create_signer(db, verified=True)
    check = service.check_verification("order-9", signer.id, CTX)
    assert check.status == "complete"
    assert check.verified_name == "Anna Andersson"
    assert gateway.calls == []


def test_cancel_closes_the_attempt(db, gateway, service):
    signer = create_signer(db)
    service.start_verification(signer.id, CTX)
    assert service.cancel_verification("order-1", signer.id, CTX) is True
    last = ComplianceAuditLog(db).list_events(signer.id)[-1]
    assert last.error_code == "CANCELLED"
    assert service.start_verification(signer.id, CTX).order_ref == "order-2"


def test_cancel_refused_by_provider_keeps_attempt_open(db, gateway, service):
    signer = create_signer(db)
    service.start_verification(signer.id, CTX)
    gateway.cancel_result = False
    assert service.cancel_verification("order-1", signer.id, CTX) is False
    with pytest.raises(VerificationInProgressError):
        service.start_verification(signer.id, CTX)


def test_consent_requires_verified_identity(db, service):
    signer = create_signer(db)
    with pytest.raises(IdentityVerificationRequiredError) as exc:
        service.submit_consent(signer.id, ALL_CONSENTS, CTX)
    assert exc.value.status_code == 403
    assert db.query(ComplianceConsent).count() == 0
    assert _events(db, signer) == []


def test_consent_rejects_empty_list(db, service):
    signer = create_signer(db, verified=True)
    with pytest.raises(InvalidInputError):
        service.submit_consent(signer.id, [], CTX)


def test_consent_records_rows_and_audit_event(db, service):
    signer = create_signer(db, verified=True)
    accepted = service.submit_consent(
        signer.id,
        [ConsentCategory.identity_signature_consent, "identity_signature_consent", "data_processing_consent"],
        CTX,
    )
    assert accepted == ALL_CONSENTS
    assert db.query(ComplianceConsent).count() == 2
    event = ComplianceAuditLog(db).list_events(signer.id)[-1]
    assert event.event_type == AuditEventType.consent_accepted
    assert event.meta == {"consentTypes": ["identity_signature_consent", "data_processing_consent"], "deviceId": "device-1"}


def test_consent_audit_failure_keeps_consent_rows(db, service, monkeypatch):
    signer = create_signer(db, verified=True)
    _fail_audit_commits(db, monkeypatch)
    accepted = service.submit_consent(signer.id, ALL_CONSENTS, CTX)
    monkeypatch.undo()

    assert accepted == ALL_CONSENTS
    assert db.query(ComplianceConsent).filter(ComplianceConsent.signer_id == signer.id).count() == 2
    assert AuditEventType.consent_accepted not in [t for t, _ in _events(db, signer)]
    assert service.is_complete(signer) is True


def test_is_complete_requires_both_halves(db, service):
    unverified = create_signer(db)
    assert service.is_complete(unverified) is False

    verified = create_signer(db, verified=True, email="bo@example.se")
    assert service.is_complete(verified) is False
    service.submit_consent(verified.id, [ConsentCategory.identity_signature_consent], CTX)
    assert service.is_complete(verified) is False
    service.submit_consent(verified.id, [ConsentCategory.data_processing_consent], CTX)
    assert service.is_complete(verified) is True


def test_status_walks_the_state_machine(db, gateway, service):
    signer = create_signer(db)
    assert service.get_status(signer.id).state == SignerState.unverified

    service.start_verification(signer.id, CTX)
    assert service.get_status(signer.id).state == SignerState.verification_pending

    gateway.poll_results.append(CollectResult(order_ref="order-1", status="failed", hint_code="expiredTransaction"))
    service.check_verification("order-1", signer.id, CTX)
    assert service.get_status(signer.id).state == SignerState.verification_failed

    service.start_verification(signer.id, CTX)
    gateway.poll_results.append(complete_result("order-2"))
    service.check_verification("order-2", signer.id, CTX)
    assert service.get_status(signer.id).state == SignerState.identity_verified

    service.submit_consent(signer.id, [ConsentCategory.identity_signature_consent], CTX)
    assert service.get_status(signer.id).state == SignerState.consent_pending

    service.submit_consent(signer.id, [ConsentCategory.data_processing_consent], CTX)
    status = service.get_status(signer.id)
    assert status.state == SignerState.consent_given
    assert status.complete is True
    assert status.consented_categories == ALL_CONSENTS


def test_sign_refused_until_complete(db, service):
    signer = create_signer(db, verified=True)
    with pytest.raises(SafeProtocolIncompleteError) as exc:
        service.sign(signer, "Anna Andersson", CTX)
    assert exc.value.to_response()["identityVerified"] is True
    assert exc.value.to_response()["consentGiven"] is False
    db.refresh(signer)
    assert signer.status == SignerStatus.pending


def test_sign_completes_document_when_last_signer_signs(db, service):
    first = create_signer(db, verified=True)
    second = create_signer(db, verified=True, email="bo@example.se", name="Bo Berg", document=first.document)
    for signer in (first, second):
        service.submit_consent(signer.id, ALL_CONSENTS, CTX)

    service.sign(first, "Anna Andersson", CTX)
    db.refresh(first.document)
    assert first.document.status != DocumentStatus.completed

    service.sign(second, "Bo Berg", CTX)
    db.refresh(second.document)
    assert second.document.status == DocumentStatus.completed
    assert db.query(Signer).filter(Signer.status == SignerStatus.signed).count() == 2
    assert _events(db, second)[-1] == (AuditEventType.document_signed, AuditEventStatus.success)

    with pytest.raises(PreconditionError):
        service.sign(second, "Bo Berg", CTX)


def test_sign_refused_after_another_signer_declines(db, service):
    first = create_signer(db, verified=True)
    second = create_signer(db, verified=True, email="bo@example.se", name="Bo Berg", document=first.document)
    service.submit_consent(first.id, ALL_CONSENTS, CTX)

    service.decline(second, "Vill inte", CTX)
    db.refresh(first)
    assert first.document.status == DocumentStatus.declined
    with pytest.raises(PreconditionError):
        service.sign(first, "Anna Andersson", CTX)
