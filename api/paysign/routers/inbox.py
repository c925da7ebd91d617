from fastapi import APIRouter, Depends, Request

from ..deps import client_ip, get_document_service, wallet_path
from ..identity import IdentityService, get_identity_service
from ..services.documents import DocumentService

router = APIRouter()


@router.get("/{wallet}")
def get_inbox(
    wallet: str = Depends(wallet_path),
    documents: DocumentService = Depends(get_document_service),
    identity: IdentityService = Depends(get_identity_service),
):
    pending = documents.inbox(wallet)
    identities = identity.list_verified_identities(wallet)
    return {
        "documents": pending,
        "count": len(pending),
        "verifiedIdentities": [i.to_dict() for i in identities],
        "hasVerifiedIdentity": len(identities) > 0,
    }


@router.get("/{wallet}/{document_id}")
def get_inbox_document(
    document_id: str,
    request: Request,
    wallet: str = Depends(wallet_path),
    documents: DocumentService = Depends(get_document_service),
    identity: IdentityService = Depends(get_identity_service),
):
    view = documents.inbox_document(
        wallet, document_id, ip=client_ip(request), user_agent=request.headers.get("user-agent")
    )
    identities = identity.list_verified_identities(wallet)
    return {
        **view,
        "verifiedIdentities": [i.to_dict() for i in identities],
        "hasVerifiedIdentity": len(identities) > 0,
    }
