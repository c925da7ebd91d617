import json
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from ..config import Settings
from ..errors import ForbiddenError, IdentityVerificationError, NotFoundError, StateConflictError, ValidationError
from ..identity import IdentityService
from ..models import Document, Field, Recipient, Signature, is_signature_field
from ..schemas import (
    DrawnPayload,
    IdentityPayload,
    SignFieldRequest,
    TypedPayload,
    ValuePayload,
    WalletProofPayload,
    resolve_sign_payload,
)
from ..utils import read_token, short_address
from .audit import append_event
from .documents import DocumentService, document_summary, field_dict

logger = logging.getLogger(__name__)


def display_value(payload) -> str:
    """What the field shows once signed."""
    if isinstance(payload, IdentityPayload):
        return f"[Verified: {payload.verified_name}]"
    if isinstance(payload, WalletProofPayload):
        return f"[Wallet: {short_address(payload.wallet_address, 6, 4)}]"
    if isinstance(payload, TypedPayload):
        return payload.text
    if isinstance(payload, DrawnPayload):
        return "[signature image]"
    value = payload.value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    return json.dumps(value)


def signature_summary(sig: Optional[Signature]) -> Optional[dict]:
    if sig is None:
        return None
    return {
        "id": sig.id,
        "kind": sig.kind,
        "signedAt": sig.signed_at.isoformat(),
        "verifiedName": sig.verified_name,
        "credentialRef": sig.credential_ref,
        "walletAddress": sig.wallet_address,
    }


class SigningService:
    def __init__(self, session: Session, settings: Settings, identity: IdentityService,
                 documents: DocumentService):
        self.session = session
        self.settings = settings
        self.identity = identity
        self.documents = documents

    def recipient_for_token(self, token: str) -> Recipient:
        data = read_token(self.settings.secret_key, token)
        if not data:
            raise NotFoundError("Invalid signing link")
        recipient = self.session.exec(select(Recipient).where(Recipient.access_token == token)).first()
        if not recipient or recipient.id != data.get("recipient"):
            raise NotFoundError("Invalid signing link")
        return recipient

    def _owned_field(self, recipient: Recipient, field_id: str) -> Field:
        field = self.session.get(Field, field_id)
        if not field:
            raise NotFoundError("Field not found")
        if field.recipient_id != recipient.id:
            raise ForbiddenError("This field is assigned to another recipient")
        return field

    def _pending_document(self, recipient: Recipient, action: str) -> Document:
        doc = self.session.get(Document, recipient.document_id)
        if not doc:
            raise NotFoundError("Document not found")
        if doc.status != "pending":
            raise StateConflictError(f"Cannot {action} a {doc.status} document")
        return doc

    def _signature(self, field_id: str) -> Optional[Signature]:
        return self.session.exec(select(Signature).where(Signature.field_id == field_id)).first()

    def _build_signature(self, field: Field, recipient: Recipient, payload) -> Signature:
        sig = Signature(field_id=field.id, recipient_id=recipient.id)
        if isinstance(payload, IdentityPayload):
            wallet = recipient.wallet_address or payload.wallet_address
            check = self.identity.verify_name_for_wallet(wallet, payload.verified_name, payload.credential_ref)
            if not check.verified:
                logger.info("identity verification failed", extra={"field_id": field.id, "reason": check.reason})
                raise IdentityVerificationError(check.reason)
            sig.verified_name = payload.verified_name
            sig.credential_ref = payload.credential_ref
            sig.wallet_signature = payload.wallet_signature
            sig.wallet_address = payload.wallet_address
            sig.document_hash = payload.document_hash
        elif isinstance(payload, WalletProofPayload):
            sig.wallet_signature = payload.wallet_signature
            sig.wallet_address = payload.wallet_address
            sig.document_hash = payload.document_hash
        elif isinstance(payload, TypedPayload):
            sig.typed_signature = payload.text
        elif isinstance(payload, DrawnPayload):
            sig.signature_image = payload.image
        elif isinstance(payload, ValuePayload):
            sig.typed_signature = display_value(payload)
        return sig

    def sign(self, token: str, field_id: str, request: SignFieldRequest,
             ip: Optional[str] = None, user_agent: Optional[str] = None) -> dict:
        recipient = self.recipient_for_token(token)
        field = self._owned_field(recipient, field_id)
        doc = self._pending_document(recipient, "sign")
        if recipient.signing_status == "signed":
            raise StateConflictError("Recipient has already completed signing")
        if self._signature(field.id):
            raise StateConflictError("Field already signed")

        payload = resolve_sign_payload(request, field.field_type)
        sig = self._build_signature(field, recipient, payload)
        field.value = display_value(payload)
        field.inserted = True
        self.session.add(sig)
        self.session.add(field)
        try:
            self.session.flush()
        except IntegrityError:
            self.session.rollback()
            raise StateConflictError("Field already signed")

        append_event(
            self.session, doc.id, "field_signed",
            {
                "fieldId": field.id,
                "fieldType": field.field_type,
                "mode": payload.mode,
                "identityVerified": isinstance(payload, IdentityPayload),
            },
            actor_wallet=recipient.wallet_address, actor_email=recipient.email, ip=ip, ua=user_agent,
        )
        self.session.commit()
        logger.info("field signed", extra={"document_id": doc.id, "field_id": field.id, "mode": payload.mode})
        return {"success": True, "fieldId": field.id, "value": field.value, "mode": payload.mode}

    def unsign(self, token: str, field_id: str) -> dict:
        recipient = self.recipient_for_token(token)
        field = self._owned_field(recipient, field_id)
        if recipient.signing_status == "signed":
            raise StateConflictError("Cannot unsign after completing signing")
        doc = self._pending_document(recipient, "unsign")

        sig = self._signature(field.id)
        if sig:
            self.session.delete(sig)
        field.value = None
        field.inserted = False
        self.session.add(field)
        append_event(
            self.session, doc.id, "field_unsigned", {"fieldId": field.id, "fieldType": field.field_type},
            actor_wallet=recipient.wallet_address, actor_email=recipient.email,
        )
        self.session.commit()
        return {"success": True, "fieldId": field.id}

    def missing_required(self, recipient: Recipient) -> list:
        fields = self.session.exec(select(Field).where(Field.recipient_id == recipient.id)).all()
        missing = []
        for f in fields:
            required = is_signature_field(f.field_type) or bool((f.meta or {}).get("required"))
            if required and not self._signature(f.id):
                missing.append({"id": f.id, "type": f.field_type})
        return missing

    def complete(self, token: str, ip: Optional[str] = None, user_agent: Optional[str] = None) -> dict:
        recipient = self.recipient_for_token(token)
        doc = self._pending_document(recipient, "complete")
        if recipient.signing_status == "signed":
            raise StateConflictError("Recipient has already completed signing")
        missing = self.missing_required(recipient)
        if missing:
            raise ValidationError("Missing required signatures", missingFields=missing)

        signed_at = datetime.utcnow()
        pending_docs = select(Document.id).where(Document.status == "pending")
        result = self.session.exec(
            update(Recipient)
            .where(
                Recipient.id == recipient.id,
                Recipient.signing_status == "pending",
                Recipient.document_id.in_(pending_docs),
            )
            .values(signing_status="signed", signed_at=signed_at, ip_address=ip, user_agent=user_agent)
        )
        if result.rowcount == 0:
            self.session.rollback()
            current = self.session.get(Document, recipient.document_id)
            if current is None or current.status != "pending":
                raise StateConflictError("Document is no longer pending")
            raise StateConflictError("Recipient has already completed signing")
        append_event(
            self.session, doc.id, "signing_completed", {"recipientId": recipient.id},
            actor_wallet=recipient.wallet_address, actor_email=recipient.email, ip=ip, ua=user_agent,
        )
        self.session.commit()
        logger.info("recipient completed signing", extra={"document_id": doc.id, "recipient_id": recipient.id})

        completed = self.documents.check_and_complete(doc.id)
        return {
            "success": True,
            "recipientStatus": "signed",
            "documentCompleted": completed,
            "signedAt": signed_at.isoformat(),
            "ipAddress": ip,
        }

    def session_view(self, token: str, wallet: Optional[str] = None,
                     ip: Optional[str] = None, user_agent: Optional[str] = None) -> dict:
        recipient = self.recipient_for_token(token)
        doc = self.session.get(Document, recipient.document_id)
        if not doc:
            raise NotFoundError("Document not found")
        if doc.status in ("cancelled", "completed"):
            raise StateConflictError(f"This document has been {doc.status}")

        fields = self.session.exec(
            select(Field).where(Field.recipient_id == recipient.id).order_by(Field.page, Field.created_at)
        ).all()
        field_views = []
        for f in fields:
            sig = self._signature(f.id)
            field_views.append({**field_dict(f), "signed": sig is not None, "signature": signature_summary(sig)})
        signed = len([f for f in field_views if f["signed"]])

        identities = self.identity.list_verified_identities(wallet or recipient.wallet_address)
        append_event(
            self.session, doc.id, "viewed", {"recipientId": recipient.id},
            actor_wallet=recipient.wallet_address, actor_email=recipient.email, ip=ip, ua=user_agent,
        )
        self.session.commit()
        return {
            "document": {**document_summary(doc), "previewUrl": self.documents.preview_url(doc.id)},
            "recipient": {
                "id": recipient.id,
                "name": recipient.name,
                "email": recipient.email,
                "walletAddress": recipient.wallet_address,
                "role": recipient.role,
                "signingStatus": recipient.signing_status,
                "signedAt": recipient.signed_at.isoformat() if recipient.signed_at else None,
            },
            "fields": field_views,
            "totalFields": len(field_views),
            "signedFields": signed,
            "allFieldsSigned": signed == len(field_views),
            "verifiedIdentities": [i.to_dict() for i in identities],
            "hasVerifiedIdentity": len(identities) > 0,
        }
