"""Append-only compliance audit log. Never update or delete - immutable evidentiary trail."""
from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.audit_log import AuditEventStatus, AuditEventType, ComplianceAuditEvent

logger = logging.getLogger("uvicorn.error")

RESOLVING_STATUSES = (AuditEventStatus.success, AuditEventStatus.failed)

# Column limits (match model)
_ORDER_REF_LEN = 64
_ERROR_CODE_LEN = 64
_IP_LEN = 64
_USER_AGENT_LEN = 500
_LOCATION_LEN = 100
_MESSAGE_LEN = 10_000


@dataclass(frozen=True)
class RequestContext:
    """Who/where a request came from, copied onto audit and consent rows."""
    ip_address: str | None = None
    user_agent: str | None = None
    device_id: str | None = None


def _sanitize_meta_value(v: Any) -> Any:
    """Convert to JSON-serializable value so meta never raises on INSERT."""
    if v is None:
        return None
    if isinstance(v, (str, int, float, bool)):
        return v
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    if isinstance(v, enum.Enum):
        return getattr(v, "value", str(v))
    if isinstance(v, uuid.UUID):
        return str(v)
    if isinstance(v, dict):
        return {str(k): _sanitize_meta_value(x) for k, x in v.items()}
    if isinstance(v, (list, tuple, set, frozenset)):
        return [_sanitize_meta_value(x) for x in v]
    return str(v)


def _sanitize_meta(meta: dict[str, Any] | None) -> dict[str, Any] | None:
    if meta is None:
        return None
    try:
        return {str(k): _sanitize_meta_value(v) for k, v in meta.items()}
    except Exception:
        return {"_error": "meta_serialization", "raw_keys": list(meta.keys())[:10]}


def _clip(value: str | None, limit: int) -> str | None:
    return (str(value)[:limit].strip() or None) if value else None


def build_event(
    signer_id: uuid.UUID,
    document_id: uuid.UUID,
    event_type: AuditEventType,
    event_status: AuditEventStatus,
    *,
    context: RequestContext | None = None,
    order_ref: str | None = None,
    meta: dict[str, Any] | None = None,
    error_code: str | None = None,
    error_message: str | None = None,
    location: dict[str, str] | None = None,
) -> ComplianceAuditEvent:
    """Build one audit row. String fields are truncated to column limits; meta is sanitized for JSON."""
    context = context or RequestContext()
    location = location or {}
    return ComplianceAuditEvent(
        signer_id=signer_id,
        document_id=document_id,
        event_type=event_type,
        event_status=event_status,
        order_ref=_clip(order_ref, _ORDER_REF_LEN),
        meta=_sanitize_meta(meta),
        error_code=_clip(error_code, _ERROR_CODE_LEN),
        error_message=_clip(error_message, _MESSAGE_LEN),
        ip_address=_clip(context.ip_address, _IP_LEN),
        user_agent=_clip(context.user_agent, _USER_AGENT_LEN),
        location_country=_clip(location.get("country"), _LOCATION_LEN),
        location_city=_clip(location.get("city"), _LOCATION_LEN),
    )


class ComplianceAuditLog:
    def __init__(self, db: Session):
        self.db = db

    def record(self, event: ComplianceAuditEvent) -> bool:
        """Insert and commit one event. A failed write is logged and rolled back, never raised:
        the caller's user-facing operation has already succeeded or failed on its own."""
        try:
            self.db.add(event)
            self.db.commit()
            return True
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(
                "[Audit] Failed to write %s/%s for signer=%s",
                getattr(event.event_type, "value", event.event_type),
                getattr(event.event_status, "value", event.event_status),
                event.signer_id,
            )
            return False

    def find_initiation(self, order_ref: str) -> ComplianceAuditEvent | None:
        return (
            self.db.query(ComplianceAuditEvent)
            .filter(
                ComplianceAuditEvent.order_ref == order_ref,
                ComplianceAuditEvent.event_type == AuditEventType.identity_verification_initiated,
            )
            .order_by(ComplianceAuditEvent.created_at.desc(), ComplianceAuditEvent.id.desc())
            .first()
        )

    def is_attempt_resolved(self, order_ref: str) -> bool:
        """True once a success or failed row exists for the order."""
        return (
            self.db.query(ComplianceAuditEvent.id)
            .filter(
                ComplianceAuditEvent.order_ref == order_ref,
                ComplianceAuditEvent.event_status.in_(RESOLVING_STATUSES),
            )
            .first()
            is not None
        )

    def find_recent_pending_attempt(
        self,
        signer_id: uuid.UUID,
        event_type: AuditEventType = AuditEventType.identity_verification_initiated,
        window_minutes: int = 5,
    ) -> str | None:
        """orderRef of the newest unresolved pending attempt inside the window, else None.

        Read-then-write: two concurrent initiations can both see None."""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=window_minutes)
        rows = (
            self.db.query(ComplianceAuditEvent)
            .filter(
                ComplianceAuditEvent.signer_id == signer_id,
                ComplianceAuditEvent.event_type == event_type,
                ComplianceAuditEvent.event_status == AuditEventStatus.pending,
                ComplianceAuditEvent.created_at >= cutoff,
            )
            .order_by(ComplianceAuditEvent.created_at.desc(), ComplianceAuditEvent.id.desc())
            .all()
        )
        for row in rows:
            order_ref = row.order_ref or (row.meta or {}).get("orderRef")
            if order_ref and not self.is_attempt_resolved(order_ref):
                return order_ref
        return None

    def list_events(self, signer_id: uuid.UUID) -> list[ComplianceAuditEvent]:
        """Full history for a signer, oldest first."""
        return (
            self.db.query(ComplianceAuditEvent)
            .filter(ComplianceAuditEvent.signer_id == signer_id)
            .order_by(ComplianceAuditEvent.created_at.asc(), ComplianceAuditEvent.id.asc())
            .all()
        )

    def latest_verification_event(self, signer_id: uuid.UUID) -> ComplianceAuditEvent | None:
        return (
            self.db.query(ComplianceAuditEvent)
            .filter(
                ComplianceAuditEvent.signer_id == signer_id,
                ComplianceAuditEvent.event_type.in_(
                    (
                        AuditEventType.identity_verification_initiated,
                        AuditEventType.identity_verification_success,
                        AuditEventType.identity_verification_failed,
                    )
                ),
            )
            .order_by(ComplianceAuditEvent.created_at.desc(), ComplianceAuditEvent.id.desc())
            .first()
        )
