from typing import Optional
from fastapi import Depends, Request
from sqlmodel import Session

from .config import Settings, get_settings
from .db import get_session
from .errors import ValidationError
from .identity import IdentityService, get_identity_service
from .services.documents import DocumentService
from .services.signing import SigningService
from .storage import ArtifactStore, get_storage
from .utils import is_wallet_address


def get_document_service(
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    storage: ArtifactStore = Depends(get_storage),
) -> DocumentService:
    return DocumentService(session, settings, storage)


def get_signing_service(
    documents: DocumentService = Depends(get_document_service),
    identity: IdentityService = Depends(get_identity_service),
) -> SigningService:
    return SigningService(documents.session, documents.settings, identity, documents)


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def wallet_path(wallet: str) -> str:
    if not is_wallet_address(wallet):
        raise ValidationError("Invalid wallet address")
    return wallet
