"""SafeProtocol error taxonomy. Each error knows its HTTP status and the JSON body the signer sees."""
from __future__ import annotations

from typing import Any


class SafeProtocolError(Exception):
    status_code = 400

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_response(self) -> dict[str, Any]:
        return {"error": self.message, **self.extra}


class InvalidInputError(SafeProtocolError):
    """Malformed or missing input. Never reaches persistence."""
    status_code = 400


class NotFoundError(SafeProtocolError):
    status_code = 404


class PreconditionError(SafeProtocolError):
    """The signer is in the wrong state for the requested transition."""
    status_code = 400


class AlreadyVerifiedError(PreconditionError):
    status_code = 400

    def __init__(self, message: str = "Signer identity already verified"):
        super().__init__(message, alreadyVerified=True)


class VerificationInProgressError(PreconditionError):
    """A recent unresolved attempt exists; the client should resume polling its orderRef."""
    status_code = 429

    def __init__(self, order_ref: str, message: str = "Authentication already in progress"):
        super().__init__(message, orderRef=order_ref)
        self.order_ref = order_ref


class IdentityVerificationRequiredError(PreconditionError):
    status_code = 403

    def __init__(self, message: str = "Identity verification required before accepting consent"):
        super().__init__(message, requiresIdentityVerification=True)


class SafeProtocolIncompleteError(PreconditionError):
    status_code = 403

    def __init__(self, identity_verified: bool, consent_given: bool):
        super().__init__(
            "Identity verification and consent are required before signing",
            identityVerified=identity_verified,
            consentGiven=consent_given,
        )


class IdentityProviderError(SafeProtocolError):
    """BankID failure, already translated to a user-facing message."""
    status_code = 400

    def __init__(self, message: str, error_code: str):
        super().__init__(message, errorCode=error_code)
        self.error_code = error_code


class PersistenceError(SafeProtocolError):
    status_code = 500
