"""x402 payment gate for document creation.

A request without a ``PAYMENT-SIGNATURE`` header gets a 402 carrying the
base64-encoded payment requirements. A request with one is verified and then
settled through the facilitator before the route handler runs.
"""
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import requests
from fastapi import Depends, Header, Request, Response

from .config import Settings, get_settings
from .errors import PaymentRequiredError
from .schemas import CamelModel, PaymentInfo
from .utils import b64_json, decode_b64_json

logger = logging.getLogger(__name__)

X402_VERSION = 2
PAYMENT_SIGNATURE_HEADER = "PAYMENT-SIGNATURE"
PAYMENT_REQUIRED_HEADER = "PAYMENT-REQUIRED"
PAYMENT_RESPONSE_HEADER = "PAYMENT-RESPONSE"


class PaymentRequirements(CamelModel):
    scheme: str = "exact"
    network: str
    amount: str
    asset: str
    pay_to: str
    max_timeout_seconds: int = 300
    extra: dict = {}


@dataclass
class VerifyResult:
    is_valid: bool
    payer: Optional[str] = None
    invalid_reason: Optional[str] = None


@dataclass
class SettleResult:
    success: bool
    transaction: Optional[str] = None
    payer: Optional[str] = None
    error_reason: Optional[str] = None


def build_challenge(settings: Settings) -> PaymentRequirements:
    return PaymentRequirements(
        network=settings.payment_network,
        amount=settings.price_atomic,
        asset=settings.usdc_asset_address,
        pay_to=settings.payment_recipient_address,
        max_timeout_seconds=settings.payment_timeout_seconds,
        extra={"sponsored": True},  # facilitator pays gas
    )


def build_payment_required(settings: Settings, url: str) -> dict:
    return {
        "x402Version": X402_VERSION,
        "error": f"{PAYMENT_SIGNATURE_HEADER} header is required",
        "resource": {
            "url": url,
            "description": f"{settings.app_name} document signing - {settings.signature_price_usdc:g} USDC",
            "mimeType": "application/json",
        },
        "accepts": [build_challenge(settings).model_dump(by_alias=True)],
    }


class Facilitator:
    """HTTP client for the x402 facilitator's /verify and /settle endpoints."""

    def __init__(self, base_url: str, timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()

    def _post(self, path: str, payload: dict, requirements: PaymentRequirements) -> dict:
        response = self.http.post(
            f"{self.base_url}/{path}",
            json={
                "paymentPayload": payload,
                "paymentRequirements": requirements.model_dump(by_alias=True),
            },
            timeout=self.timeout,
        )
        logger.info("facilitator response", extra={"path": path, "status": response.status_code})
        if response.status_code >= 500:
            raise ValueError(f"facilitator returned HTTP {response.status_code}")
        body = response.json()
        if not isinstance(body, dict):
            raise ValueError(f"unexpected facilitator body: {body!r}")
        return body

    def verify(self, payload: dict, requirements: PaymentRequirements) -> VerifyResult:
        try:
            body = self._post("verify", payload, requirements)
        except (requests.RequestException, ValueError) as exc:
            logger.warning("payment verification request failed", extra={"error": str(exc)})
            return VerifyResult(is_valid=False, invalid_reason="Verification request failed")
        return VerifyResult(
            is_valid=bool(body.get("isValid")),
            payer=body.get("payer"),
            invalid_reason=body.get("invalidReason"),
        )

    def settle(self, payload: dict, requirements: PaymentRequirements) -> SettleResult:
        try:
            body = self._post("settle", payload, requirements)
        except (requests.RequestException, ValueError) as exc:
            logger.warning("payment settlement request failed", extra={"error": str(exc)})
            return SettleResult(success=False, error_reason="Settlement request failed")
        return SettleResult(
            success=bool(body.get("success")),
            transaction=body.get("transaction"),
            payer=body.get("payer"),
            error_reason=body.get("errorReason"),
        )


@lru_cache(maxsize=1)
def _default_facilitator() -> Facilitator:
    settings = get_settings()
    return Facilitator(settings.facilitator_url, timeout=settings.facilitator_timeout_seconds)


def get_facilitator() -> Facilitator:
    return _default_facilitator()


def require_payment(
    request: Request,
    payment_signature: Optional[str] = Header(default=None, alias=PAYMENT_SIGNATURE_HEADER),
    settings: Settings = Depends(get_settings),
    facilitator: Facilitator = Depends(get_facilitator),
) -> PaymentInfo:
    challenge = b64_json(build_payment_required(settings, str(request.url)))

    if not payment_signature:
        logger.info("returning 402 payment required", extra={"url": str(request.url)})
        raise PaymentRequiredError("Payment required", challenge_header=challenge, x402Version=X402_VERSION)

    payload = decode_b64_json(payment_signature)
    if not isinstance(payload, dict):
        raise PaymentRequiredError(
            "Payment verification failed",
            challenge_header=challenge,
            reason="PAYMENT-SIGNATURE is not base64-encoded JSON",
        )

    requirements = build_challenge(settings)
    verified = facilitator.verify(payload, requirements)
    if not verified.is_valid:
        logger.info("payment verification failed", extra={"reason": verified.invalid_reason})
        raise PaymentRequiredError(
            "Payment verification failed", challenge_header=challenge, reason=verified.invalid_reason
        )

    settled = facilitator.settle(payload, requirements)
    if not settled.success:
        logger.info("payment settlement failed", extra={"reason": settled.error_reason})
        raise PaymentRequiredError(
            "Payment settlement failed", challenge_header=challenge, reason=settled.error_reason
        )

    payer = verified.payer or settled.payer
    if not payer:
        raise PaymentRequiredError(
            "Payment settlement failed", challenge_header=challenge, reason="facilitator did not report a payer"
        )
    logger.info("payment settled", extra={"transaction": settled.transaction, "payer": payer})
    return PaymentInfo(
        transaction=settled.transaction,
        payer=payer,
        amount=requirements.amount,
        network=requirements.network,
    )


def attach_payment_response(response: Response, payment: PaymentInfo):
    response.headers[PAYMENT_RESPONSE_HEADER] = b64_json({
        "success": True,
        "transaction": payment.transaction,
        "network": payment.network,
        "payer": payment.payer,
    })
