import binascii
import logging
from datetime import datetime
from typing import Dict, List, Optional

from minio.error import S3Error
from sqlalchemy import func, update
from sqlmodel import Session, delete, select

from ..config import Settings
from ..errors import ForbiddenError, NotFoundError, RenderFailure, StateConflictError, ValidationError
from ..markup import parse_field_markup, render_markup_pdf, resolve_recipients
from ..models import AuditEvent, Document, Field, Recipient, Signature, new_id
from ..schemas import DocumentCreate, FieldCreate, PaymentInfo, RecipientCreate, validate_field_type
from ..storage import ArtifactStore, final_key, working_key
from ..utils import b64_to_bytes, make_token, mask_email, sha256_bytes, short_address
from .audit import append_event, list_events, verify_chain
from .finalization import FinalizationPipeline

logger = logging.getLogger(__name__)


def _same_wallet(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def document_summary(doc: Document) -> dict:
    return {
        "id": doc.id,
        "title": doc.title,
        "status": doc.status,
        "format": doc.format,
        "ownerWallet": doc.owner_wallet,
        "paymentTx": doc.payment_tx,
        "createdAt": _iso(doc.created_at),
        "updatedAt": _iso(doc.updated_at),
        "completedAt": _iso(doc.completed_at),
    }


def field_dict(f: Field) -> dict:
    return {
        "id": f.id,
        "recipientId": f.recipient_id,
        "type": f.field_type,
        "page": f.page,
        "positionX": f.position_x,
        "positionY": f.position_y,
        "width": f.width,
        "height": f.height,
        "value": f.value,
        "meta": f.meta,
        "inserted": f.inserted,
    }


def masked_recipient(r: Recipient) -> dict:
    return {
        "id": r.id,
        "name": r.name,
        "email": mask_email(r.email),
        "walletAddress": short_address(r.wallet_address) if r.wallet_address else None,
        "role": r.role,
        "signingOrder": r.signing_order,
        "signingStatus": r.signing_status,
        "signedAt": _iso(r.signed_at),
    }


class DocumentService:
    def __init__(self, session: Session, settings: Settings, storage: ArtifactStore,
                 pipeline: Optional[FinalizationPipeline] = None):
        self.session = session
        self.settings = settings
        self.storage = storage
        self.pipeline = pipeline or FinalizationPipeline(storage)

    # ---------- helpers ----------

    def _load(self, document_id: str) -> Document:
        doc = self.session.get(Document, document_id)
        if not doc:
            raise NotFoundError("Document not found")
        return doc

    def _recipients(self, document_id: str) -> List[Recipient]:
        return self.session.exec(
            select(Recipient)
            .where(Recipient.document_id == document_id)
            .order_by(Recipient.signing_order, Recipient.created_at)
        ).all()

    def signing_url(self, recipient: Recipient) -> str:
        return f"{self.settings.frontend_url}/sign/{recipient.access_token}"

    def preview_url(self, document_id: str) -> str:
        return f"{self.settings.api_base_url}/api/documents/{document_id}/preview"

    def signing_links(self, recipients: List[Recipient]) -> Dict[str, str]:
        """Links labelled by the order recipients were added, whatever their signing order."""
        return {f"recipient_{r.ordinal}": self.signing_url(r) for r in sorted(recipients, key=lambda r: r.ordinal)}

    def _validate_recipients(self, recipients: List[RecipientCreate]):
        for i, r in enumerate(recipients, start=1):
            if not (r.wallet_address or r.email):
                raise ValidationError(f"Recipient {i}: walletAddress or email is required")
            if not (r.name or "").strip():
                raise ValidationError(f"Recipient {i}: name is required")

    def _new_recipient(self, document_id: str, data: RecipientCreate, position: int) -> Recipient:
        rid = new_id()
        recipient = Recipient(
            id=rid,
            document_id=document_id,
            wallet_address=data.wallet_address or None,
            email=data.email or None,
            name=data.name.strip(),
            role=data.role,
            ordinal=position,
            signing_order=data.signing_order if data.signing_order is not None else position,
            access_token=make_token(self.settings.secret_key, {"recipient": rid}),
        )
        self.session.add(recipient)
        return recipient

    def _working_pdf(self, request: DocumentCreate, fmt: str) -> bytes:
        if fmt == "html":
            return render_markup_pdf(request.content)
        try:
            pdf = b64_to_bytes(request.pdf_base64)
        except (binascii.Error, ValueError):
            raise ValidationError("pdfBase64 is not valid base64")
        if not pdf.startswith(b"%PDF"):
            raise ValidationError("pdfBase64 does not contain a PDF document")
        return pdf

    def _touch(self, doc: Document):
        doc.updated_at = datetime.utcnow()
        self.session.add(doc)

    # ---------- lifecycle ----------

    def create(self, request: DocumentCreate, payment: PaymentInfo) -> dict:
        title = (request.title or "").strip()
        if not title:
            raise ValidationError("title is required")
        fmt = request.format or ("html" if request.content and not request.pdf_base64 else "pdf")
        if fmt not in ("pdf", "html"):
            raise ValidationError("format must be 'pdf' or 'html'")
        if fmt == "pdf" and (not request.pdf_base64 or request.content):
            raise ValidationError("pdf documents require pdfBase64 and no content")
        if fmt == "html" and (not request.content or request.pdf_base64):
            raise ValidationError("html documents require content and no pdfBase64")
        if not request.recipients:
            raise ValidationError("At least one recipient is required")
        self._validate_recipients(request.recipients)

        pdf = self._working_pdf(request, fmt)
        doc = Document(
            title=title,
            status="draft",
            owner_wallet=payment.payer,
            format=fmt,
            payment_tx=payment.transaction,
            payment_network=payment.network,
            payment_amount=payment.amount,
            source_markup=request.content if fmt == "html" else None,
        )
        self.session.add(doc)
        self.session.flush()

        recipients = [self._new_recipient(doc.id, r, i) for i, r in enumerate(request.recipients, start=1)]
        self.session.flush()

        warnings: List[str] = []
        if fmt == "html":
            parsed = parse_field_markup(request.content)
            for recipient_id, pf in resolve_recipients(parsed, [r.id for r in recipients]):
                self.session.add(Field(
                    document_id=doc.id,
                    recipient_id=recipient_id,
                    field_type=pf.field_type,
                    page=pf.page,
                    position_x=pf.position_x,
                    position_y=pf.position_y,
                    width=pf.width,
                    height=pf.height,
                    meta=pf.meta,
                ))
            warnings = parsed.warnings

        key = working_key(doc.id)
        self.storage.put_bytes(key, pdf, content_type="application/pdf")
        doc.artifact_key = key
        doc.artifact_sha256 = sha256_bytes(pdf)
        self.session.add(doc)

        append_event(
            self.session, doc.id, "created",
            {"title": title, "format": fmt, "paymentTx": payment.transaction, "recipients": len(recipients)},
            actor_wallet=payment.payer,
        )
        self.session.commit()
        logger.info("document created", extra={"document_id": doc.id, "format": fmt, "warnings": len(warnings)})
        return {
            "documentId": doc.id,
            "status": doc.status,
            "signingLinks": self.signing_links(recipients),
            "previewUrl": self.preview_url(doc.id),
            "recipients": [masked_recipient(r) for r in recipients],
            "warnings": warnings,
        }

    def add_recipients(self, document_id: str, recipients: List[RecipientCreate]) -> dict:
        doc = self._load(document_id)
        if doc.status != "draft":
            raise StateConflictError("Recipients can only be added to draft documents")
        if not recipients:
            raise ValidationError("At least one recipient is required")
        self._validate_recipients(recipients)
        start = len(self._recipients(document_id))
        added = [self._new_recipient(doc.id, r, start + i) for i, r in enumerate(recipients, start=1)]
        self._touch(doc)
        self.session.commit()
        return {
            "documentId": doc.id,
            "recipients": [masked_recipient(r) for r in added],
            "signingLinks": self.signing_links(self._recipients(document_id)),
        }

    def add_fields(self, document_id: str, fields: List[FieldCreate]) -> dict:
        doc = self._load(document_id)
        if doc.status != "draft":
            raise StateConflictError("Fields can only be added to draft documents")
        recipient_ids = {r.id for r in self._recipients(document_id)}
        created = []
        for i, f in enumerate(fields, start=1):
            validate_field_type(f.field_type)
            if f.recipient_id not in recipient_ids:
                raise ValidationError(f"Field {i}: recipient {f.recipient_id} does not belong to this document")
            if f.page < 1:
                raise ValidationError(f"Field {i}: page must be 1 or greater")
            for name, value in (("positionX", f.position_x), ("positionY", f.position_y),
                                ("width", f.width), ("height", f.height)):
                if not 0 <= value <= 100:
                    raise ValidationError(f"Field {i}: {name} must be between 0 and 100")
            field = Field(
                document_id=doc.id,
                recipient_id=f.recipient_id,
                field_type=f.field_type,
                page=f.page,
                position_x=f.position_x,
                position_y=f.position_y,
                width=f.width,
                height=f.height,
                meta=f.field_meta,
            )
            self.session.add(field)
            created.append(field)
        self._touch(doc)
        self.session.commit()
        return {"documentId": doc.id, "fields": [field_dict(f) for f in created]}

    def distribute(self, document_id: str) -> dict:
        doc = self._load(document_id)
        if doc.status != "draft":
            raise StateConflictError(f"Cannot distribute a {doc.status} document")
        recipients = self._recipients(document_id)
        if not recipients:
            raise ValidationError("Document has no recipients")
        for r in recipients:
            if r.role != "signer":
                continue
            has_field = self.session.exec(select(Field.id).where(Field.recipient_id == r.id)).first()
            if not has_field:
                raise ValidationError(f"Recipient {r.name} has no fields to sign", recipientId=r.id)
        doc.status = "pending"
        self._touch(doc)
        append_event(self.session, doc.id, "distributed", {"recipients": len(recipients)},
                     actor_wallet=doc.owner_wallet)
        self.session.commit()
        logger.info("document distributed", extra={"document_id": doc.id})
        return {"documentId": doc.id, "status": doc.status, "signingLinks": self.signing_links(recipients)}

    def cancel(self, document_id: str, wallet: Optional[str]) -> dict:
        doc = self._load(document_id)
        if not _same_wallet(doc.owner_wallet, wallet):
            raise ForbiddenError("Only the document owner can cancel this document")
        if doc.status != "pending":
            raise StateConflictError(f"Cannot cancel a {doc.status} document")
        now = datetime.utcnow()
        result = self.session.exec(
            update(Document)
            .where(Document.id == document_id, Document.status == "pending")
            .values(status="cancelled", updated_at=now)
        )
        if result.rowcount == 0:
            self.session.rollback()
            raise StateConflictError("Document is no longer pending")
        append_event(self.session, document_id, "document_cancelled", {}, actor_wallet=wallet)
        self.session.commit()
        logger.info("document cancelled", extra={"document_id": document_id})
        return {"documentId": document_id, "status": "cancelled"}

    def delete(self, document_id: str, wallet: Optional[str]) -> dict:
        doc = self._load(document_id)
        if not _same_wallet(doc.owner_wallet, wallet):
            raise ForbiddenError("Only the document owner can delete this document")
        if doc.status not in ("draft", "cancelled"):
            raise StateConflictError(f"Cannot delete a {doc.status} document")

        # children before parents, one transaction
        field_ids = select(Field.id).where(Field.document_id == document_id)
        self.session.exec(delete(Signature).where(Signature.field_id.in_(field_ids)))
        self.session.exec(delete(Field).where(Field.document_id == document_id))
        self.session.exec(delete(Recipient).where(Recipient.document_id == document_id))
        self.session.exec(
            update(AuditEvent).where(AuditEvent.document_id == document_id).values(document_id=None)
        )
        self.session.exec(delete(Document).where(Document.id == document_id))
        self.session.commit()

        for key in (working_key(document_id), final_key(document_id)):
            try:
                self.storage.delete_object(key)
            except S3Error:
                logger.exception("could not remove stored artifact", extra={"key": key})
        logger.info("document deleted", extra={"document_id": document_id})
        return {"success": True, "documentId": document_id}

    # ---------- completion ----------

    def all_signers_signed(self, document_id: str) -> bool:
        signers = [r for r in self._recipients(document_id) if r.role == "signer"]
        return len(signers) > 0 and all(r.signing_status == "signed" for r in signers)

    def check_and_complete(self, document_id: str) -> bool:
        doc = self.session.exec(
            select(Document).where(Document.id == document_id).with_for_update()
        ).first()
        if not doc:
            raise NotFoundError("Document not found")
        if doc.status == "completed":
            return True
        if doc.status != "pending" or not self.all_signers_signed(document_id):
            return False

        completed_at = datetime.utcnow()
        try:
            key, digest = self.pipeline.run(self.session, doc, completed_at)
        except RenderFailure as exc:
            self.session.rollback()
            append_event(self.session, document_id, "finalization_failed", {"error": exc.details.get("cause")})
            self.session.commit()
            logger.error("document left pending after finalization failure", extra={"document_id": document_id})
            return False

        result = self.session.exec(
            update(Document)
            .where(Document.id == document_id, Document.status == "pending")
            .values(
                status="completed",
                completed_at=completed_at,
                updated_at=completed_at,
                artifact_key=key,
                artifact_sha256=digest,
            )
        )
        if result.rowcount == 0:
            # lost the race; whoever won decides the outcome
            self.session.rollback()
            return self._load(document_id).status == "completed"
        append_event(self.session, document_id, "document_completed", {"sha256": digest})
        self.session.commit()
        logger.info("document completed", extra={"document_id": document_id})
        return True

    def retry_finalization(self, document_id: str) -> dict:
        doc = self._load(document_id)
        if doc.status not in ("pending", "completed"):
            raise StateConflictError(f"Cannot finalize a {doc.status} document")
        if doc.status == "pending" and not self.all_signers_signed(document_id):
            raise StateConflictError("Not all signers have completed signing")
        completed = self.check_and_complete(document_id)
        return {"documentId": document_id, "completed": completed, "status": self._load(document_id).status}

    # ---------- queries ----------

    def get(self, document_id: str) -> dict:
        doc = self._load(document_id)
        fields = self.session.exec(
            select(Field).where(Field.document_id == document_id).order_by(Field.page, Field.created_at)
        ).all()
        return {
            **document_summary(doc),
            "recipients": [masked_recipient(r) for r in self._recipients(document_id)],
            "fields": [field_dict(f) for f in fields],
        }

    def list_by_owner(self, wallet: str) -> List[dict]:
        docs = self.session.exec(
            select(Document)
            .where(func.lower(Document.owner_wallet) == wallet.lower())
            .order_by(Document.created_at.desc())
        ).all()
        out = []
        for doc in docs:
            signers = [r for r in self._recipients(doc.id) if r.role == "signer"]
            out.append({
                **document_summary(doc),
                "signerCount": len(signers),
                "signedCount": len([r for r in signers if r.signing_status == "signed"]),
            })
        return out

    def inbox(self, wallet: str) -> List[dict]:
        rows = self.session.exec(
            select(Recipient, Document)
            .join(Document, Document.id == Recipient.document_id)
            .where(
                func.lower(Recipient.wallet_address) == wallet.lower(),
                Recipient.signing_status == "pending",
                Document.status == "pending",
            )
            .order_by(Document.created_at.desc())
        ).all()
        return [
            {
                "documentId": doc.id,
                "title": doc.title,
                "status": doc.status,
                "createdAt": _iso(doc.created_at),
                "ownerWallet": doc.owner_wallet,
                "recipientId": recipient.id,
                "role": recipient.role,
                "signingUrl": self.signing_url(recipient),
            }
            for recipient, doc in rows
        ]

    def inbox_document(self, wallet: str, document_id: str,
                       ip: Optional[str] = None, user_agent: Optional[str] = None) -> dict:
        """One document as seen by the recipient holding `wallet`."""
        doc = self._load(document_id)
        recipient = next(
            (r for r in self._recipients(document_id) if _same_wallet(r.wallet_address, wallet)), None
        )
        if recipient is None:
            raise ForbiddenError("Wallet is not a recipient on this document", walletAddress=wallet)

        fields = self.session.exec(
            select(Field).where(Field.recipient_id == recipient.id).order_by(Field.page, Field.created_at)
        ).all()
        signed_ids = set()
        if fields:
            signed_ids = set(self.session.exec(
                select(Signature.field_id).where(Signature.field_id.in_([f.id for f in fields]))
            ).all())
        field_views = [{**field_dict(f), "signed": f.id in signed_ids} for f in fields]

        append_event(self.session, doc.id, "viewed", {"recipientId": recipient.id, "via": "inbox"},
                     actor_wallet=wallet, ip=ip, ua=user_agent)
        self.session.commit()
        return {
            "document": document_summary(doc),
            "recipient": {
                "id": recipient.id,
                "name": recipient.name,
                "email": recipient.email,
                "role": recipient.role,
                "signingStatus": recipient.signing_status,
            },
            "fields": field_views,
            "totalFields": len(field_views),
            "signedFields": len(signed_ids),
            "allFieldsSigned": len(signed_ids) == len(field_views),
            "signingUrl": self.signing_url(recipient),
        }

    def audit_trail(self, document_id: str) -> dict:
        self._load(document_id)
        events = list_events(self.session, document_id)
        return {
            "documentId": document_id,
            "chainValid": verify_chain(self.session, document_id),
            "events": [
                {
                    "id": e.id,
                    "type": e.event_type,
                    "actorWallet": e.actor_wallet,
                    "actorEmail": mask_email(e.actor_email),
                    "ipAddress": e.ip_address,
                    "data": e.data,
                    "createdAt": _iso(e.created_at),
                    "hash": e.hash,
                }
                for e in events
            ],
        }

    def download(self, document_id: str) -> bytes:
        doc = self._load(document_id)
        if doc.status != "completed":
            raise NotFoundError("Document is not completed")
        try:
            return self.storage.get_bytes(final_key(document_id))
        except S3Error:
            logger.exception("finalized artifact missing", extra={"document_id": document_id})
            raise NotFoundError("Finalized document not available")

    def preview(self, document_id: str) -> bytes:
        self._load(document_id)
        try:
            return self.storage.get_bytes(working_key(document_id))
        except S3Error:
            logger.exception("working artifact missing", extra={"document_id": document_id})
            raise NotFoundError("Document preview not available")
