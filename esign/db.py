
from sqlmodel import SQLModel, create_engine
from .config import DATABASE_URL


def make_engine(url: str = DATABASE_URL):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=False, pool_pre_ping=True, connect_args=connect_args)

def init_db(engine):
    from .models import User, Document, Envelope, Signer, Signature, DocumentField, AuditLog
    SQLModel.metadata.create_all(engine)
