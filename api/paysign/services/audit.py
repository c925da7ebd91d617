from typing import Optional
from sqlmodel import Session, select
from ..models import EVENT_TYPES, AuditEvent
from ..utils import canonical_json, sha256_bytes

GENESIS_HASH = "0" * 64


def append_event(
    session: Session,
    document_id: Optional[str],
    event_type: str,
    data: Optional[dict] = None,
    actor_wallet: Optional[str] = None,
    actor_email: Optional[str] = None,
    ip: Optional[str] = None,
    ua: Optional[str] = None,
) -> AuditEvent:
    """Add a hash-chained event to the session. The caller commits."""
    if event_type not in EVENT_TYPES:
        raise ValueError(f"unknown audit event type {event_type!r}")
    last = session.exec(
        select(AuditEvent).where(AuditEvent.document_id == document_id).order_by(AuditEvent.id.desc())
    ).first()
    prev_hash = last.hash if last and last.hash else GENESIS_HASH
    payload = {
        "document_id": document_id,
        "type": event_type,
        "actor_wallet": actor_wallet,
        "actor_email": actor_email,
        "data": data or {},
    }
    event = AuditEvent(
        document_id=document_id,
        event_type=event_type,
        actor_wallet=actor_wallet,
        actor_email=actor_email,
        ip_address=ip,
        user_agent=ua,
        data=data or {},
        prev_hash=prev_hash,
    )
    event.hash = sha256_bytes((prev_hash + canonical_json(payload)).encode())
    session.add(event)
    session.flush()
    return event


def verify_chain(session: Session, document_id: str) -> bool:
    """Recompute the document's hash chain; False if any event was altered."""
    events = session.exec(
        select(AuditEvent).where(AuditEvent.document_id == document_id).order_by(AuditEvent.id)
    ).all()
    prev_hash = GENESIS_HASH
    for event in events:
        payload = {
            "document_id": document_id,
            "type": event.event_type,
            "actor_wallet": event.actor_wallet,
            "actor_email": event.actor_email,
            "data": event.data or {},
        }
        if event.prev_hash != prev_hash:
            return False
        if event.hash != sha256_bytes((prev_hash + canonical_json(payload)).encode()):
            return False
        prev_hash = event.hash
    return True


def list_events(session: Session, document_id: str):
    return session.exec(
        select(AuditEvent).where(AuditEvent.document_id == document_id).order_by(AuditEvent.id)
    ).all()
