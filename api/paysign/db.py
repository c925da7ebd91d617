import logging
from sqlmodel import SQLModel, create_engine, Session
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from .config import get_settings

logger = logging.getLogger(__name__)

_settings = get_settings()
_connect_args = {"check_same_thread": False} if _settings.database_url.startswith("sqlite") else {}
engine = create_engine(_settings.database_url, echo=False, pool_pre_ping=True, connect_args=_connect_args)

def init_db():
    from .models import Document, Recipient, Field, Signature, AuditEvent
    SQLModel.metadata.create_all(engine)

def get_session():
    with Session(engine) as session:
        yield session

def ping_database(session: Session) -> bool:
    try:
        session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("database ping failed")
        return False
    return True
