from typing import Optional
from fastapi import APIRouter, Depends, Query, Request

from ..deps import client_ip, get_signing_service
from ..schemas import SignFieldRequest
from ..services.signing import SigningService

router = APIRouter()


@router.get("/{token}")
def load_signing_session(
    token: str,
    request: Request,
    wallet_address: Optional[str] = Query(default=None, alias="walletAddress"),
    service: SigningService = Depends(get_signing_service),
):
    return service.session_view(
        token, wallet_address, ip=client_ip(request), user_agent=request.headers.get("user-agent")
    )


@router.post("/{token}/field/{field_id}")
def sign_field(
    token: str,
    field_id: str,
    payload: SignFieldRequest,
    request: Request,
    service: SigningService = Depends(get_signing_service),
):
    return service.sign(token, field_id, payload, ip=client_ip(request), user_agent=request.headers.get("user-agent"))


@router.delete("/{token}/field/{field_id}")
def unsign_field(token: str, field_id: str, service: SigningService = Depends(get_signing_service)):
    return service.unsign(token, field_id)


@router.post("/{token}/complete")
def complete_signing(token: str, request: Request, service: SigningService = Depends(get_signing_service)):
    return service.complete(token, ip=client_ip(request), user_agent=request.headers.get("user-agent"))
