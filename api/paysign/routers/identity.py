from typing import Optional
from fastapi import APIRouter, Depends, Query

from ..deps import wallet_path
from ..identity import IdentityService, get_identity_service

router = APIRouter()


@router.get("/names/{wallet}")
def list_verified_names(
    wallet: str = Depends(wallet_path),
    identity: IdentityService = Depends(get_identity_service),
):
    identities = identity.list_verified_identities(wallet)
    return {
        "walletAddress": wallet,
        "identities": [i.to_dict() for i in identities],
        "count": len(identities),
    }


@router.get("/verify/{wallet}/{name}")
def verify_name(
    name: str,
    wallet: str = Depends(wallet_path),
    credential_ref: Optional[str] = Query(default=None, alias="credentialRef"),
    identity: IdentityService = Depends(get_identity_service),
):
    result = identity.verify_name_for_wallet(wallet, name, credential_ref)
    return {
        "walletAddress": wallet,
        "name": name,
        "verified": result.verified,
        "credentialRef": result.credential_ref,
        "fullName": result.full_name,
        "reason": result.reason,
    }
