"""SimpleSign – SafeProtocol signing service (FastAPI application)."""
# Load .env before any app code that might read config
from dotenv import load_dotenv
from pathlib import Path
load_dotenv(Path(__file__).resolve().parent.parent / ".env")

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import get_settings
from app.database import Base, engine
# Import models so Base.metadata has all tables before create_all (schema source of truth)
from app.models import Document, Signer, ComplianceAuditEvent, ComplianceConsent  # noqa: F401
from app.routers import safeprotocol, sign
from app.services.errors import SafeProtocolError

log = logging.getLogger("uvicorn.error")

settings = get_settings()
app = FastAPI(title=settings.app_name, debug=settings.debug)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(safeprotocol.router)
app.include_router(sign.router)


@app.exception_handler(SafeProtocolError)
def safeprotocol_error_handler(request: Request, exc: SafeProtocolError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


@app.exception_handler(RequestValidationError)
def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {"loc": [str(p) for p in err.get("loc", ())], "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"error": "Invalid request", "details": details})


@app.on_event("startup")
def startup():
    if not settings.bankid_cert_path:
        log.warning("[BankID] No RP certificate configured (BANKID_CERT_PATH); %s API calls will fail TLS client auth.", settings.bankid_environment)
    else:
        log.info("[BankID] Using %s environment at %s", settings.bankid_environment, settings.bankid_base_url)
    try:
        Base.metadata.create_all(bind=engine)
    except Exception as e:
        log.warning("Database startup failed (tables skipped). Check DATABASE_URL and network. Error: %s", e)

    # Scheduler: prune expired rate-limit windows
    try:
        from apscheduler.schedulers.background import BackgroundScheduler
        from app.services.rate_limit import cleanup_all_limiters
        scheduler = BackgroundScheduler()
        scheduler.add_job(cleanup_all_limiters, "interval", minutes=1)
        scheduler.start()
    except Exception:
        log.exception("Rate-limit cleanup scheduler failed to start")


@app.get("/")
def root():
    return {"app": settings.app_name, "status": "ok"}


@app.get("/health")
def health():
    return {"status": "healthy"}
