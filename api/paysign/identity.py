import logging
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import List, Optional

import requests

from .config import Settings, get_settings
from .errors import ExternalServiceError

logger = logging.getLogger(__name__)


@dataclass
class VerifiedIdentity:
    credential_ref: str
    full_name: str
    country: Optional[str] = None
    verified_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "credentialRef": self.credential_ref,
            "fullName": self.full_name,
            "country": self.country,
            "verifiedAt": self.verified_at.isoformat() if self.verified_at else None,
        }


@dataclass
class NameVerification:
    verified: bool
    credential_ref: Optional[str] = None
    full_name: Optional[str] = None
    reason: Optional[str] = None


class IdentityOracle:
    """Source of approved identity credentials held by a wallet."""

    def fetch_claims(self, wallet: str) -> List[VerifiedIdentity]:
        raise NotImplementedError


OWNED_CREDENTIALS_QUERY = """
query OwnedCredentials($owner: String!, $collection: String!) {
  current_token_ownerships_v2(
    where: {
      owner_address: {_eq: $owner}
      amount: {_gt: "0"}
      current_token_data: {collection_id: {_eq: $collection}}
    }
  ) {
    token_data_id
    current_token_data {
      token_properties
    }
  }
}
"""


class IndexerIdentityOracle(IdentityOracle):
    """Reads soulbound identity tokens through an Aptos indexer GraphQL API."""

    def __init__(self, indexer_url: str, collection: str, timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.indexer_url = indexer_url
        self.collection = collection
        self.timeout = timeout
        self.http = session or requests.Session()

    def fetch_claims(self, wallet: str) -> List[VerifiedIdentity]:
        if not self.collection:
            return []
        try:
            response = self.http.post(
                self.indexer_url,
                json={
                    "query": OWNED_CREDENTIALS_QUERY,
                    "variables": {"owner": wallet, "collection": self.collection},
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise ExternalServiceError("identity indexer unavailable", cause=str(exc)) from exc
        if body.get("errors"):
            raise ExternalServiceError("identity indexer query failed", cause=body["errors"])

        claims = []
        for token in (body.get("data") or {}).get("current_token_ownerships_v2") or []:
            props = (token.get("current_token_data") or {}).get("token_properties") or {}
            if props.get("kyc_status") != "approved" or not props.get("full_name"):
                continue
            claims.append(VerifiedIdentity(
                credential_ref=token.get("token_data_id") or "",
                full_name=props["full_name"],
                country=props.get("country"),
                verified_at=_timestamp(props.get("verification_date")),
            ))
        return claims


def _timestamp(value) -> Optional[datetime]:
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    # token properties store either seconds or milliseconds
    if seconds > 1e11:
        seconds /= 1000.0
    return datetime.utcfromtimestamp(seconds)


class IdentityService:
    def __init__(self, oracle: IdentityOracle):
        self.oracle = oracle

    def list_verified_identities(self, wallet: Optional[str]) -> List[VerifiedIdentity]:
        """Approved identities for ``wallet``; empty when none or when the oracle is down."""
        if not wallet:
            return []
        try:
            return self.oracle.fetch_claims(wallet)
        except Exception:
            logger.exception("identity lookup failed", extra={"wallet": wallet})
            return []

    def verify_name_for_wallet(self, wallet: Optional[str], name: str,
                               credential_ref: Optional[str] = None) -> NameVerification:
        identities = self.list_verified_identities(wallet)
        if not identities:
            return NameVerification(verified=False, reason="No verified identities found for this wallet")

        wanted = name.lower()
        if credential_ref:
            for identity in identities:
                if identity.credential_ref == credential_ref and identity.full_name.lower() == wanted:
                    return NameVerification(True, identity.credential_ref, identity.full_name)
            return NameVerification(verified=False, reason="Name does not match the specified credential")

        for identity in identities:
            if identity.full_name.lower() == wanted:
                return NameVerification(True, identity.credential_ref, identity.full_name)
        available = ", ".join(i.full_name for i in identities)
        return NameVerification(
            verified=False,
            reason=f'Name "{name}" not found in wallet\'s verified identities. Available names: {available}',
        )


@lru_cache(maxsize=1)
def _default_identity_service() -> IdentityService:
    settings: Settings = get_settings()
    oracle = IndexerIdentityOracle(
        settings.identity_indexer_url,
        settings.identity_collection_address,
        timeout=settings.identity_timeout_seconds,
    )
    return IdentityService(oracle)


def get_identity_service() -> IdentityService:
    return _default_identity_service()
