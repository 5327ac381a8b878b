
import json
from enum import Enum
from typing import Optional
from datetime import datetime
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field as ORMField

from .utils import utcnow

# timestamps are naive UTC and stored without time zone


class EnvelopeStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    VIEWED = "VIEWED"
    PARTIALLY_SIGNED = "PARTIALLY_SIGNED"
    COMPLETED = "COMPLETED"
    DECLINED = "DECLINED"
    VOIDED = "VOIDED"


TERMINAL_STATUSES = frozenset({EnvelopeStatus.COMPLETED, EnvelopeStatus.DECLINED, EnvelopeStatus.VOIDED})


class SignerRole(str, Enum):
    SIGNER = "SIGNER"
    CC = "CC"


class FieldType(str, Enum):
    SIGNATURE = "SIGNATURE"
    TEXT = "TEXT"
    DATE = "DATE"
    CHECKBOX = "CHECKBOX"
    INITIAL = "INITIAL"


class User(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    email: str = ORMField(index=True, unique=True)
    name: str = ""
    access_token: Optional[str] = ORMField(default=None, index=True, unique=True)
    created_at: datetime = ORMField(default_factory=utcnow, sa_type=DateTime)

class Document(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    owner_id: int = ORMField(index=True)
    filename: str
    storage_path: str
    mime_type: str = "application/pdf"
    size_bytes: int = 0
    original_hash: Optional[str] = None
    # certification digest of record and where the artifact lives
    signed_pdf_hash: Optional[str] = None
    signed_pdf_path: Optional[str] = None
    created_at: datetime = ORMField(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = ORMField(default_factory=utcnow, sa_type=DateTime)

class Envelope(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    owner_id: int = ORMField(index=True)
    document_id: int
    status: EnvelopeStatus = EnvelopeStatus.DRAFT
    subject: Optional[str] = None
    message: Optional[str] = None
    created_at: datetime = ORMField(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = ORMField(default_factory=utcnow, sa_type=DateTime)
    completed_at: Optional[datetime] = ORMField(default=None, sa_type=DateTime)

class Signer(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    envelope_id: int = ORMField(index=True)
    email: str
    name: str
    role: SignerRole = SignerRole.SIGNER
    routing_order: int = 1
    signing_link: str = ORMField(index=True, unique=True)
    otp_code: Optional[str] = None
    otp_expiry: Optional[datetime] = ORMField(default=None, sa_type=DateTime)
    otp_verified: bool = False
    session_token: Optional[str] = ORMField(default=None, index=True)
    session_expiry: Optional[datetime] = ORMField(default=None, sa_type=DateTime)
    signed_at: Optional[datetime] = ORMField(default=None, sa_type=DateTime)
    declined_at: Optional[datetime] = ORMField(default=None, sa_type=DateTime)
    decline_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    geo: Optional[str] = None

class Signature(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    signer_id: int = ORMField(index=True, unique=True)
    consent_given: bool = False
    consent_text: Optional[str] = None
    image_data: Optional[str] = None  # data:image/png;base64,...
    typed_text: Optional[str] = None
    placement_json: str = "{}"  # page, x, y, width, height, suppress_text
    created_at: datetime = ORMField(default_factory=utcnow, sa_type=DateTime)

    @property
    def placement(self) -> dict:
        return json.loads(self.placement_json or "{}")

class DocumentField(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    envelope_id: int = ORMField(index=True)
    signer_id: int = ORMField(index=True)
    type: FieldType
    page: int
    x: float
    y: float
    width: float
    height: float
    required: bool = True
    value: Optional[str] = None
    label: Optional[str] = None
    created_at: datetime = ORMField(default_factory=utcnow, sa_type=DateTime)

class AuditLog(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    envelope_id: int = ORMField(index=True)
    timestamp: datetime = ORMField(default_factory=utcnow, sa_type=DateTime)
    actor_email: Optional[str] = None
    actor_role: Optional[str] = None  # OWNER|SIGNER|SYSTEM
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    event: str
    details_json: str = "{}"
    prev_hash: Optional[str] = None
    hash: Optional[str] = None

    @property
    def details(self) -> dict:
        return json.loads(self.details_json or "{}")
