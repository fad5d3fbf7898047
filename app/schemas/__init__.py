from app.schemas.safeprotocol import (
    StartVerificationRequest,
    StartVerificationResponse,
    CheckVerificationRequest,
    CancelVerificationRequest,
    SubmitConsentRequest,
    SubmitConsentResponse,
    ConsentTemplateResponse,
    ConsentTemplatesResponse,
    SafeProtocolStatusResponse,
    SignRequest,
    SignerViewResponse,
    SignResponse,
    DeclineRequest,
    DeclineResponse,
)
