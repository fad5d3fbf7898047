"""BankID relying-party API integration (auth / collect / cancel).

Failures are returned as ProviderError values, never raised: the SafeProtocol
service decides what to audit and what to show the signer.
"""
from __future__ import annotations

import base64
import logging
import ssl
from dataclasses import dataclass, field
from typing import Any, TypeGuard

import httpx

from app.config import Settings, get_settings
from app.services.personal_number import normalize_personal_number

logger = logging.getLogger("uvicorn.error")

STATUS_PENDING = "pending"
STATUS_FAILED = "failed"
STATUS_COMPLETE = "complete"
_KNOWN_STATUSES = (STATUS_PENDING, STATUS_FAILED, STATUS_COMPLETE)

PROVIDER_ERROR_MESSAGES = {
    "INVALID_PARAMETERS": "Invalid authentication parameters",
    "INVALID_ORDER_REF": "Authentication request expired or invalid",
    "ORDER_REF_NOT_FOUND": "Authentication session not found",
    "NOT_DELIVERED": "Request was not delivered to your device",
    "REQUEST_BLOCKED": "Authentication request was blocked by your device",
    "ALREADY_IN_PROGRESS": "Authentication is already in progress",
    "GENERAL_ERROR": "BankID service error",
    "USER_CANCEL": "You cancelled the authentication",
    "CANCELLED": "Authentication was cancelled",
    "START_FAILED": "Failed to start BankID application",
}
GENERIC_ERROR_MESSAGE = "Authentication failed"

# OSError covers ssl.SSLError and an unreadable client certificate or key
_TRANSPORT_ERRORS = (httpx.HTTPError, ssl.SSLError, OSError)


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


@dataclass(frozen=True)
class ProviderError:
    error_code: str
    details: str = ""
    hint: str | None = None


@dataclass(frozen=True)
class InitiateResult:
    order_ref: str
    auto_start_token: str


@dataclass(frozen=True)
class CompletionData:
    personal_number: str
    name: str
    given_name: str = ""
    surname: str = ""
    device_ip: str | None = None
    cert_not_before: str | None = None
    cert_not_after: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "CompletionData":
        user = _as_dict(payload.get("user"))
        device = _as_dict(payload.get("device"))
        cert = _as_dict(payload.get("cert"))
        return cls(
            personal_number=str(user.get("personalNumber") or ""),
            name=str(user.get("name") or ""),
            given_name=str(user.get("givenName") or ""),
            surname=str(user.get("surname") or ""),
            device_ip=device.get("ipAddress"),
            cert_not_before=cert.get("notBefore"),
            cert_not_after=cert.get("notAfter"),
        )

    def __repr__(self) -> str:
        # personal_number stays out of reprs (and therefore out of logs and tracebacks)
        return f"CompletionData(name={self.name!r}, cert_not_after={self.cert_not_after!r})"


@dataclass(frozen=True)
class CollectResult:
    order_ref: str
    status: str
    hint_code: str | None = None
    completion: CompletionData | None = field(default=None)


def is_provider_error(result: Any) -> TypeGuard[ProviderError]:
    return isinstance(result, ProviderError)


def format_provider_error_message(error: ProviderError) -> str:
    """User-facing text for a BankID error: known code, else provider details, else generic."""
    return PROVIDER_ERROR_MESSAGES.get(error.error_code) or (error.details or "").strip() or GENERIC_ERROR_MESSAGE


def _error_from_response(r: httpx.Response, default_details: str) -> ProviderError:
    try:
        body = r.json() or {}
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    return ProviderError(
        error_code=str(body.get("errorCode") or "UNKNOWN_ERROR"),
        details=str(body.get("details") or default_details),
        hint=body.get("hint"),
    )


class BankIDClient:
    """Thin client over the BankID RP API. Pass `transport` to route requests elsewhere (tests)."""

    def __init__(self, settings: Settings | None = None, transport: httpx.BaseTransport | None = None):
        self.settings = settings or get_settings()
        self.base_url = self.settings.bankid_base_url
        self._transport = transport

    def _client(self) -> httpx.Client:
        kwargs: dict[str, Any] = {"timeout": self.settings.bankid_timeout_seconds}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        elif self.settings.bankid_cert_path:
            ctx = ssl.create_default_context(cafile=self.settings.bankid_ca_path or None)
            ctx.load_cert_chain(self.settings.bankid_cert_path, self.settings.bankid_key_path or None)
            kwargs["verify"] = ctx
        return httpx.Client(**kwargs)

    def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        with self._client() as client:
            return client.post(f"{self.base_url}/{path}", json=payload)

    def initiate(
        self,
        ip_address: str,
        personal_number: str | None = None,
        display_message: str | None = None,
    ) -> InitiateResult | ProviderError:
        """Start an auth order. ip_address must already be a valid end-user IP."""
        visible = display_message or self.settings.bankid_user_visible_data
        payload: dict[str, Any] = {
            "endUserIp": ip_address,
            "userVisibleData": base64.b64encode(visible.encode("utf-8")).decode("ascii"),
        }
        pnr = normalize_personal_number(personal_number)
        if pnr:
            payload["requirement"] = {"personalNumber": pnr}
        try:
            r = self._post("auth", payload)
        except _TRANSPORT_ERRORS as e:
            logger.warning("[BankID] auth request failed: %s", type(e).__name__)
            return ProviderError(error_code="INIT_FAILED", details="Failed to initiate BankID authentication")
        if r.status_code != 200:
            err = _error_from_response(r, "BankID authentication failed")
            logger.warning("[BankID] auth rejected: status=%s errorCode=%s", r.status_code, err.error_code)
            return err
        try:
            data = r.json()
            if not isinstance(data, dict):
                raise TypeError("response body is not an object")
            return InitiateResult(order_ref=str(data["orderRef"]), auto_start_token=str(data["autoStartToken"]))
        except (ValueError, KeyError, TypeError):
            return ProviderError(error_code="INIT_FAILED", details="Unexpected response from BankID")

    def poll(self, order_ref: str) -> CollectResult | ProviderError:
        """Collect current order status. Safe to repeat; polling does not change provider state."""
        try:
            r = self._post("collect", {"orderRef": order_ref})
        except _TRANSPORT_ERRORS as e:
            logger.warning("[BankID] collect request failed: orderRef=%s %s", order_ref, type(e).__name__)
            return ProviderError(error_code="POLL_FAILED", details="Failed to poll BankID status")
        if r.status_code != 200:
            err = _error_from_response(r, "BankID poll failed")
            logger.warning("[BankID] collect rejected: orderRef=%s errorCode=%s", order_ref, err.error_code)
            return err
        try:
            data = r.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            return ProviderError(error_code="POLL_FAILED", details="Unexpected response from BankID")
        status = data.get("status")
        if status not in _KNOWN_STATUSES:
            return ProviderError(error_code="UNKNOWN_STATUS", details="Unknown authentication status")
        completion = None
        if status == STATUS_COMPLETE:
            payload = data.get("completionData")
            if not isinstance(payload, dict):
                return ProviderError(error_code="POLL_FAILED", details="BankID completion data missing")
            completion = CompletionData.from_payload(payload)
        return CollectResult(
            order_ref=str(data.get("orderRef") or order_ref),
            status=status,
            hint_code=data.get("hintCode"),
            completion=completion,
        )

    def cancel(self, order_ref: str) -> bool:
        """Best effort. False means the cancel did not go through; callers must not treat it as fatal."""
        try:
            r = self._post("cancel", {"orderRef": order_ref})
        except _TRANSPORT_ERRORS as e:
            logger.warning("[BankID] cancel request failed: orderRef=%s %s", order_ref, type(e).__name__)
            return False
        return r.status_code == 200


def get_identity_gateway() -> BankIDClient:
    return BankIDClient()
