"""SafeProtocol request/response schemas. Wire names are camelCase to match the signing client."""
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.consent import ConsentCategory
from app.services.safeprotocol import SignerState


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid", str_strip_whitespace=True)


class _Response(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class StartVerificationRequest(_Request):
    signer_id: UUID = Field(..., alias="signerId")
    # Optional pre-filled personnummer; forwarded to BankID, never stored or logged
    personal_identifier_hint: str | None = Field(None, alias="personalIdentifierHint", max_length=20)


class StartVerificationResponse(_Response):
    success: bool = True
    order_ref: str = Field(..., alias="orderRef")
    auto_start_token: str = Field(..., alias="autoStartToken")
    signer_id: UUID = Field(..., alias="signerId")
    message: str = "BankID authentication initiated. Complete the authentication on your device."


class CheckVerificationRequest(_Request):
    order_ref: str = Field(..., alias="orderRef", min_length=1, max_length=64)
    signer_id: UUID = Field(..., alias="signerId")


class CancelVerificationRequest(CheckVerificationRequest):
    pass


class SubmitConsentRequest(_Request):
    signer_id: UUID = Field(..., alias="signerId")
    consent_categories: list[ConsentCategory] = Field(..., alias="consentCategories", min_length=1)
    device_id: str | None = Field(None, alias="deviceId", max_length=255)

    @field_validator("consent_categories")
    @classmethod
    def unique_categories(cls, v: list[ConsentCategory]) -> list[ConsentCategory]:
        return list(dict.fromkeys(v))


class SubmitConsentResponse(_Response):
    success: bool = True
    signer_id: UUID = Field(..., alias="signerId")
    consented_categories: list[ConsentCategory] = Field(..., alias="consentedCategories")
    message: str = "Consent recorded successfully. You may now proceed to sign the document."


class ConsentTemplateResponse(BaseModel):
    category: ConsentCategory
    text: str


class ConsentTemplatesResponse(BaseModel):
    templates: dict[str, str]


class SafeProtocolStatusResponse(_Response):
    signer_id: UUID = Field(..., alias="signerId")
    state: SignerState
    identity_verified: bool = Field(..., alias="identityVerified")
    consented_categories: list[ConsentCategory] = Field(..., alias="consentedCategories")
    complete: bool


class SignRequest(_Request):
    typed_signature: str = Field(..., alias="typedSignature", min_length=1, max_length=255)


class SignerViewResponse(_Response):
    id: UUID
    name: str | None = None
    email: str
    status: str
    document_id: UUID = Field(..., alias="documentId")
    document_title: str = Field(..., alias="documentTitle")
    identity_verified: bool = Field(..., alias="identityVerified")
    safe_protocol_complete: bool = Field(..., alias="safeProtocolComplete")


class SignResponse(_Response):
    success: bool = True
    signer_id: UUID = Field(..., alias="signerId")
    status: str
    document_status: str = Field(..., alias="documentStatus")


class DeclineRequest(_Request):
    reason: str | None = Field(None, max_length=1000)


class DeclineResponse(_Response):
    success: bool = True
    signer_id: UUID = Field(..., alias="signerId")
    status: str
    document_status: str = Field(..., alias="documentStatus")
    message: str = "You have declined to sign the document."
