import logging

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session

from .config import get_settings, validate_settings
from .db import get_session, init_db, ping_database
from .errors import PaySignError, PaymentRequiredError
from .logging_config import configure_logging
from .middleware import RequestIdMiddleware
from .payments import PAYMENT_REQUIRED_HEADER
from .routers import documents, identity, inbox, signing, tools

logger = logging.getLogger(__name__)

settings = get_settings()
configure_logging(settings)

app = FastAPI(title=f"{settings.app_name} API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[PAYMENT_REQUIRED_HEADER, "PAYMENT-RESPONSE", settings.request_id_header],
)
app.add_middleware(RequestIdMiddleware, header_name=settings.request_id_header)


@app.exception_handler(PaySignError)
def handle_paysign_error(request: Request, exc: PaySignError):
    headers = {}
    if isinstance(exc, PaymentRequiredError) and exc.challenge_header:
        headers[PAYMENT_REQUIRED_HEADER] = exc.challenge_header
    if exc.status_code >= 500:
        logger.error("request failed", extra={"path": request.url.path, "error": exc.message})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.on_event("startup")
def on_startup():
    validate_settings(settings)
    init_db()


app.include_router(documents.router, prefix="/api/documents", tags=["documents"])
app.include_router(signing.router, prefix="/api/sign", tags=["signing"])
app.include_router(inbox.router, prefix="/api/inbox", tags=["inbox"])
app.include_router(identity.router, prefix="/api/identity", tags=["identity"])
app.include_router(tools.router, prefix="/api/tools", tags=["tools"])


@app.get("/api/health")
def health(session: Session = Depends(get_session)):
    db_ok = ping_database(session)
    return {"status": "ok" if db_ok else "degraded", "database": db_ok, "service": settings.app_name}


@app.get("/")
def root():
    return {"ok": True, "service": "paysign-api"}
