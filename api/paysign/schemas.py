from typing import Any, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, model_validator
from pydantic.alias_generators import to_camel

from .errors import ValidationError
from .models import FIELD_TYPES, is_signature_field


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RecipientCreate(CamelModel):
    wallet_address: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    role: Literal["signer", "viewer", "cc"] = "signer"
    signing_order: Optional[int] = None


class FieldCreate(CamelModel):
    recipient_id: str
    field_type: str
    page: int = 1
    position_x: float = 0.0
    position_y: float = 0.0
    width: float = 25.0
    height: float = 6.0
    field_meta: Optional[dict] = None


class DocumentCreate(CamelModel):
    title: Optional[str] = None
    format: Optional[str] = None
    content: Optional[str] = None
    pdf_base64: Optional[str] = None
    recipients: List[RecipientCreate] = []


class FieldsAdd(CamelModel):
    fields: List[FieldCreate]


class RecipientsAdd(CamelModel):
    recipients: List[RecipientCreate]


class OwnerAction(CamelModel):
    wallet_address: Optional[str] = None


class PaymentInfo(CamelModel):
    transaction: Optional[str] = None
    payer: str
    amount: str
    network: str


# ---------- sign payloads ----------

class IdentityPayload(BaseModel):
    mode: Literal["identity"] = "identity"
    credential_ref: str
    verified_name: str
    wallet_signature: Optional[str] = None
    wallet_address: Optional[str] = None
    document_hash: Optional[str] = None


class WalletProofPayload(BaseModel):
    mode: Literal["wallet"] = "wallet"
    wallet_signature: str
    wallet_address: str
    document_hash: str


class TypedPayload(BaseModel):
    mode: Literal["typed"] = "typed"
    text: str


class DrawnPayload(BaseModel):
    mode: Literal["drawn"] = "drawn"
    image: str


class ValuePayload(BaseModel):
    mode: Literal["value"] = "value"
    value: Any


SignPayload = Union[IdentityPayload, WalletProofPayload, TypedPayload, DrawnPayload, ValuePayload]

SIGNATURE_MODES_HINT = (
    "Signature field requires credentialRef+verifiedName, "
    "walletSignature+walletAddress+documentHash, typedSignature, or signatureImage"
)


class SignFieldRequest(CamelModel):
    """Wire shape of a sign request; the mode is resolved by resolve_sign_payload."""

    credential_ref: Optional[str] = None
    verified_name: Optional[str] = None
    wallet_signature: Optional[str] = None
    wallet_address: Optional[str] = None
    document_hash: Optional[str] = None
    typed_signature: Optional[str] = None
    signature_image: Optional[str] = None
    value: Any = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_credential_key(cls, data):
        if isinstance(data, dict) and "kycNftAddress" in data and "credentialRef" not in data:
            data = {**data, "credentialRef": data["kycNftAddress"]}
        return data

    def has_value(self) -> bool:
        return "value" in self.model_fields_set


def resolve_sign_payload(request: SignFieldRequest, field_type: str) -> SignPayload:
    if not is_signature_field(field_type):
        if not request.has_value():
            raise ValidationError("value is required for this field type")
        return ValuePayload(value=request.value)

    if request.credential_ref and request.verified_name:
        return IdentityPayload(
            credential_ref=request.credential_ref,
            verified_name=request.verified_name,
            wallet_signature=request.wallet_signature or None,
            wallet_address=request.wallet_address or None,
            document_hash=request.document_hash or None,
        )
    if request.wallet_signature and request.wallet_address and request.document_hash:
        return WalletProofPayload(
            wallet_signature=request.wallet_signature,
            wallet_address=request.wallet_address,
            document_hash=request.document_hash,
        )
    if request.typed_signature:
        return TypedPayload(text=request.typed_signature)
    if request.signature_image:
        return DrawnPayload(image=request.signature_image)
    raise ValidationError(SIGNATURE_MODES_HINT)


def validate_field_type(field_type: str) -> str:
    if field_type not in FIELD_TYPES:
        raise ValidationError(f"Unknown field type {field_type!r}", allowed=list(FIELD_TYPES))
    return field_type


class MarkupCheck(CamelModel):
    html: Optional[str] = None
    recipient_count: Optional[int] = None
