import uuid
from typing import Optional
from datetime import datetime
from sqlalchemy import Column, JSON, UniqueConstraint
from sqlmodel import SQLModel, Field as ORMField

SIGNATURE_FIELD_TYPES = ("signature", "free-signature", "initial")
FIELD_TYPES = SIGNATURE_FIELD_TYPES + (
    "name", "email", "date",
    "text", "number",
    "checkbox", "radio", "dropdown",
)
EVENT_TYPES = (
    "created",
    "distributed",
    "viewed",
    "field_signed",
    "field_unsigned",
    "signing_completed",
    "document_completed",
    "document_cancelled",
    "finalization_failed",
)


def new_id() -> str:
    return str(uuid.uuid4())


def is_signature_field(field_type: str) -> bool:
    return field_type in SIGNATURE_FIELD_TYPES


class Document(SQLModel, table=True):
    id: str = ORMField(default_factory=new_id, primary_key=True)
    title: str
    status: str = ORMField(default="draft", index=True)  # draft|pending|completed|cancelled
    owner_wallet: str = ORMField(index=True)
    format: str = "pdf"  # pdf|html
    payment_tx: Optional[str] = None
    payment_network: Optional[str] = None
    payment_amount: Optional[str] = None
    artifact_key: Optional[str] = None
    artifact_sha256: Optional[str] = None
    source_markup: Optional[str] = None
    created_at: datetime = ORMField(default_factory=datetime.utcnow)
    updated_at: datetime = ORMField(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None


class Recipient(SQLModel, table=True):
    id: str = ORMField(default_factory=new_id, primary_key=True)
    document_id: str = ORMField(foreign_key="document.id", index=True)
    wallet_address: Optional[str] = ORMField(default=None, index=True)
    email: Optional[str] = None
    name: str
    role: str = "signer"  # signer|viewer|cc
    ordinal: int = 1  # 1-based position in the order recipients were added
    signing_order: Optional[int] = None
    signing_status: str = "pending"  # pending|signed|rejected
    signed_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    access_token: str = ORMField(unique=True, index=True)
    created_at: datetime = ORMField(default_factory=datetime.utcnow)


class Field(SQLModel, table=True):
    id: str = ORMField(default_factory=new_id, primary_key=True)
    document_id: str = ORMField(foreign_key="document.id", index=True)
    recipient_id: str = ORMField(foreign_key="recipient.id", index=True)
    field_type: str
    page: int = 1
    position_x: float = 0.0
    position_y: float = 0.0
    width: float = 25.0
    height: float = 6.0
    value: Optional[str] = None
    meta: Optional[dict] = ORMField(default=None, sa_column=Column(JSON))
    inserted: bool = False
    created_at: datetime = ORMField(default_factory=datetime.utcnow)


class Signature(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("field_id", name="uq_signature_field"),)

    id: str = ORMField(default_factory=new_id, primary_key=True)
    field_id: str = ORMField(foreign_key="field.id", index=True)
    recipient_id: str = ORMField(foreign_key="recipient.id", index=True)
    signature_image: Optional[str] = None
    typed_signature: Optional[str] = None
    verified_name: Optional[str] = None
    credential_ref: Optional[str] = None
    wallet_signature: Optional[str] = None
    wallet_address: Optional[str] = None
    document_hash: Optional[str] = None
    signed_at: datetime = ORMField(default_factory=datetime.utcnow)

    @property
    def kind(self) -> str:
        if self.verified_name:
            return "identity"
        if self.wallet_signature:
            return "wallet"
        if self.typed_signature is not None:
            return "typed"
        if self.signature_image:
            return "drawn"
        return "value"


class AuditEvent(SQLModel, table=True):
    __tablename__ = "audit_event"

    id: Optional[int] = ORMField(default=None, primary_key=True)
    document_id: Optional[str] = ORMField(default=None, foreign_key="document.id", index=True)
    event_type: str = ORMField(index=True)
    actor_wallet: Optional[str] = None
    actor_email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    data: Optional[dict] = ORMField(default=None, sa_column=Column(JSON))
    created_at: datetime = ORMField(default_factory=datetime.utcnow)
    prev_hash: Optional[str] = None
    hash: Optional[str] = None
