"""SafeProtocol endpoints: BankID identity verification and eIDAS/GDPR consent before signing."""
from dataclasses import replace
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from app.dependencies import get_request_context, get_safeprotocol_service
from app.models.consent import ConsentCategory
from app.schemas.safeprotocol import (
    CancelVerificationRequest,
    CheckVerificationRequest,
    ConsentTemplateResponse,
    ConsentTemplatesResponse,
    SafeProtocolStatusResponse,
    StartVerificationRequest,
    StartVerificationResponse,
    SubmitConsentRequest,
    SubmitConsentResponse,
)
from app.services.audit_log import RequestContext
from app.services.bankid import STATUS_COMPLETE, STATUS_PENDING
from app.services.consent import all_consent_templates, get_consent_template
from app.services.rate_limit import limit_safeprotocol
from app.services.safeprotocol import SafeProtocolService

router = APIRouter(prefix="/safeprotocol", tags=["safeprotocol"], dependencies=[Depends(limit_safeprotocol)])


@router.post("/verify-identity/init", response_model=StartVerificationResponse)
def start_verification(
    data: StartVerificationRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: SafeProtocolService = Depends(get_safeprotocol_service),
):
    """Start a BankID auth order for the signer. Returns orderRef + autoStartToken for the client app."""
    started = service.start_verification(data.signer_id, ctx, personal_number=data.personal_identifier_hint)
    return StartVerificationResponse(
        order_ref=started.order_ref,
        auto_start_token=started.auto_start_token,
        signer_id=data.signer_id,
    )


@router.post("/verify-identity/collect")
def check_verification(
    data: CheckVerificationRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: SafeProtocolService = Depends(get_safeprotocol_service),
):
    """Poll the BankID order. Clients call this every ~10s until complete or failed."""
    check = service.check_verification(data.order_ref, data.signer_id, ctx)
    if check.status == STATUS_PENDING:
        return {"status": "pending", "message": "Awaiting authentication on your device..."}
    if check.status == STATUS_COMPLETE:
        signer = check.signer
        return {
            "status": "complete",
            "verified": True,
            "signer": {
                "id": str(signer.id),
                "verifiedName": check.verified_name,
                "verifiedEmail": signer.email,
            },
            "message": "Identity verified successfully. You may now proceed to sign the document.",
        }
    return JSONResponse(
        status_code=400,
        content={"status": "failed", "error": check.error, "errorCode": check.error_code},
    )


@router.post("/verify-identity/cancel")
def cancel_verification(
    data: CancelVerificationRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: SafeProtocolService = Depends(get_safeprotocol_service),
):
    cancelled = service.cancel_verification(data.order_ref, data.signer_id, ctx)
    return {"cancelled": cancelled}


@router.post("/consent/submit", response_model=SubmitConsentResponse)
def submit_consent(
    data: SubmitConsentRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: SafeProtocolService = Depends(get_safeprotocol_service),
):
    """Record accepted consent categories. Requires a BankID-verified signer."""
    accepted = service.submit_consent(
        data.signer_id,
        data.consent_categories,
        replace(ctx, device_id=data.device_id),
    )
    return SubmitConsentResponse(signer_id=data.signer_id, consented_categories=accepted)


@router.get("/consent/templates", response_model=ConsentTemplateResponse | ConsentTemplatesResponse)
def get_consent_templates(category: ConsentCategory | None = Query(None)):
    if category is not None:
        return ConsentTemplateResponse(category=category, text=get_consent_template(category))
    return ConsentTemplatesResponse(templates=all_consent_templates())


@router.get("/status/{signer_id}", response_model=SafeProtocolStatusResponse)
def get_status(
    signer_id: UUID,
    service: SafeProtocolService = Depends(get_safeprotocol_service),
):
    status = service.get_status(signer_id)
    return SafeProtocolStatusResponse(
        signer_id=signer_id,
        state=status.state,
        identity_verified=status.identity_verified,
        consented_categories=status.consented_categories,
        complete=status.complete,
    )
