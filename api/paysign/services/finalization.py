import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlmodel import Session, select

from ..certificate import (
    BADGE_CRYPTOGRAPHIC,
    BADGE_IDENTITY,
    BADGE_NONE,
    ConfirmationRow,
    append_confirmation,
)
from ..errors import RenderFailure
from ..models import SIGNATURE_FIELD_TYPES, Document, Field, Recipient, Signature
from ..stamping import StampItem, stamp_fields
from ..storage import ArtifactStore, final_key, working_key
from ..utils import sha256_bytes

logger = logging.getLogger(__name__)


def signer_badge(signatures: List[Signature]) -> str:
    if any(s.verified_name for s in signatures):
        return BADGE_IDENTITY
    if any(s.wallet_signature for s in signatures):
        return BADGE_CRYPTOGRAPHIC
    return BADGE_NONE


def confirmation_row(recipient: Recipient, signatures: List[Signature]) -> ConfirmationRow:
    """Row for one signer; `signatures` are the ones on signature-class fields."""
    primary: Optional[Signature] = signatures[0] if signatures else None
    row = ConfirmationRow(
        name=recipient.name,
        email=recipient.email,
        badge=signer_badge(signatures),
        kind=primary.kind if primary else None,
        signed_at=recipient.signed_at,
        ip_address=recipient.ip_address,
    )
    if primary is None:
        return row
    if primary.kind == "identity":
        row.typed_text = primary.verified_name
        row.credential_ref = primary.credential_ref
    elif primary.kind == "typed":
        row.typed_text = primary.typed_signature
    elif primary.kind == "drawn":
        row.image_b64 = primary.signature_image
    row.wallet_address = primary.wallet_address if primary.wallet_signature else None
    row.document_hash = primary.document_hash if primary.wallet_signature else None
    return row


class FinalizationPipeline:
    """Stamps signed fields onto the working PDF and appends the confirmation pages."""

    def __init__(self, storage: ArtifactStore):
        self.storage = storage

    def _stamp_items(self, session: Session, document: Document) -> List[StampItem]:
        fields = session.exec(
            select(Field).where(Field.document_id == document.id).order_by(Field.page, Field.created_at)
        ).all()
        field_ids = [f.id for f in fields]
        signatures: Dict[str, Signature] = {}
        if field_ids:
            for sig in session.exec(select(Signature).where(Signature.field_id.in_(field_ids))).all():
                signatures[sig.field_id] = sig
        return [
            StampItem(
                field_type=f.field_type,
                page=f.page,
                x=f.position_x,
                y=f.position_y,
                w=f.width,
                h=f.height,
                value=f.value,
                signature=signatures.get(f.id),
            )
            for f in fields
        ]

    def _rows(self, session: Session, document: Document) -> List[ConfirmationRow]:
        signers = session.exec(
            select(Recipient)
            .where(Recipient.document_id == document.id, Recipient.role == "signer")
            .order_by(Recipient.signing_order, Recipient.created_at)
        ).all()
        rows = []
        for recipient in signers:
            sigs = session.exec(
                select(Signature)
                .join(Field, Field.id == Signature.field_id)
                .where(Signature.recipient_id == recipient.id, Field.field_type.in_(SIGNATURE_FIELD_TYPES))
                .order_by(Signature.signed_at)
            ).all()
            rows.append(confirmation_row(recipient, list(sigs)))
        return rows

    def render(self, session: Session, document: Document, completed_at: datetime) -> bytes:
        original = self.storage.get_bytes(working_key(document.id))
        stamped = stamp_fields(original, self._stamp_items(session, document))
        return append_confirmation(stamped, document.title, self._rows(session, document), completed_at)

    def run(self, session: Session, document: Document, completed_at: Optional[datetime] = None) -> Tuple[str, str]:
        """Produce and store the finalized PDF; returns (storage key, sha256)."""
        completed_at = completed_at or datetime.utcnow()
        try:
            final_pdf = self.render(session, document, completed_at)
            key = final_key(document.id)
            self.storage.put_bytes(key, final_pdf, content_type="application/pdf")
        except Exception as exc:
            logger.exception("finalization failed", extra={"document_id": document.id})
            raise RenderFailure("Failed to finalize document", cause=str(exc)) from exc
        digest = sha256_bytes(final_pdf)
        logger.info("document finalized", extra={"document_id": document.id, "sha256": digest})
        return key, digest
