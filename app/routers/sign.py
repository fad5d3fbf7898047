"""Signer-facing signing endpoint. A signature is only accepted once SafeProtocol is complete."""
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.database import get_db
from app.dependencies import get_request_context, get_safeprotocol_service
from app.models.document import DocumentStatus
from app.models.signer import Signer, SignerStatus
from app.schemas.safeprotocol import DeclineRequest, DeclineResponse, SignRequest, SignerViewResponse, SignResponse
from app.services.audit_log import RequestContext
from app.services.rate_limit import limit_signing
from app.services.safeprotocol import SafeProtocolService

router = APIRouter(prefix="/sign", tags=["sign"], dependencies=[Depends(limit_signing)])


def _signer_for_token(db: Session, token: str) -> Signer:
    signer = db.query(Signer).filter(Signer.access_token == (token or "").strip()).first()
    if not signer or signer.document is None:
        raise HTTPException(status_code=404, detail="Invalid or expired signing link")
    doc = signer.document
    expires_at = doc.expires_at
    if expires_at is not None and expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if doc.status == DocumentStatus.expired or (expires_at and expires_at < datetime.now(timezone.utc)):
        if doc.status != DocumentStatus.expired:
            doc.status = DocumentStatus.expired
            db.commit()
        raise HTTPException(status_code=410, detail="The signing link has expired")
    return signer


@router.get("/{token}", response_model=SignerViewResponse)
def get_signing_view(
    token: str,
    db: Session = Depends(get_db),
    service: SafeProtocolService = Depends(get_safeprotocol_service),
):
    signer = _signer_for_token(db, token)
    if signer.status == SignerStatus.signed:
        raise HTTPException(status_code=400, detail="You have already signed this document")
    if signer.status == SignerStatus.pending:
        signer.status = SignerStatus.viewed
        db.commit()
    return SignerViewResponse(
        id=signer.id,
        name=signer.name,
        email=signer.email,
        status=signer.status.value,
        document_id=signer.document_id,
        document_title=signer.document.title,
        identity_verified=bool(signer.identity_verified),
        safe_protocol_complete=service.is_complete(signer),
    )


@router.post("/{token}", response_model=SignResponse)
def submit_signature(
    token: str,
    data: SignRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    service: SafeProtocolService = Depends(get_safeprotocol_service),
):
    signer = _signer_for_token(db, token)
    signer = service.sign(signer, data.typed_signature, ctx)
    return SignResponse(
        signer_id=signer.id,
        status=signer.status.value,
        document_status=signer.document.status.value,
    )


@router.post("/{token}/decline", response_model=DeclineResponse)
def decline_document(
    token: str,
    data: DeclineRequest | None = None,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    service: SafeProtocolService = Depends(get_safeprotocol_service),
):
    """Decline to sign. The body (an optional reason) may be omitted."""
    signer = _signer_for_token(db, token)
    signer = service.decline(signer, data.reason if data else None, ctx)
    return DeclineResponse(
        signer_id=signer.id,
        status=signer.status.value,
        document_status=signer.document.status.value,
    )
