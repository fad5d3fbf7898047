"""Shared dependencies: DB session, BankID gateway, request context, SafeProtocol service."""
from fastapi import Depends, Request
from sqlalchemy.orm import Session

from app.database import get_db
from app.services.audit_log import RequestContext
from app.services.bankid import BankIDClient, get_identity_gateway
from app.services.ip_utils import get_approximate_location, get_client_ip, get_user_agent
from app.services.safeprotocol import SafeProtocolService


def get_request_context(request: Request) -> RequestContext:
    return RequestContext(ip_address=get_client_ip(request), user_agent=get_user_agent(request))


def get_safeprotocol_service(
    db: Session = Depends(get_db),
    gateway: BankIDClient = Depends(get_identity_gateway),
) -> SafeProtocolService:
    return SafeProtocolService(db, gateway, locate=get_approximate_location)
