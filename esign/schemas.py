
from datetime import datetime
from pydantic import BaseModel, Field
from typing import List, Optional

from .models import FieldType, SignerRole


class Placement(BaseModel):
    page: int = Field(1, ge=1)
    x: float = Field(ge=0, le=1)
    y: float = Field(ge=0, le=1)
    width: float = Field(ge=0, le=1)
    height: float = Field(ge=0, le=1)
    suppress_text: bool = False

class EnvelopeCreate(BaseModel):
    document_id: int
    subject: Optional[str] = None
    message: Optional[str] = None

class SignerCreate(BaseModel):
    email: str
    name: str
    role: SignerRole = SignerRole.SIGNER
    routing_order: int = 1
    placement: Optional[Placement] = None

class FieldPlacement(BaseModel):
    id: Optional[int] = None
    signer_id: int
    type: FieldType
    page: int = 1
    x: float
    y: float
    width: float
    height: float
    required: bool = True
    value: Optional[str] = None
    label: Optional[str] = None

class VoidRequest(BaseModel):
    reason: str = ""

class DeclineRequest(BaseModel):
    reason: str = ""

class CodeSubmit(BaseModel):
    code: str

class SignatureInput(BaseModel):
    consent: bool
    image: Optional[str] = None  # data:image/png;base64,...
    text: Optional[str] = None
    placement: Optional[Placement] = None
    suppress_text: bool = False

class SigningMetadata(BaseModel):
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    geo: Optional[str] = None

class InitiationResult(BaseModel):
    sent: bool
    reason: str  # sent|signer_not_found|dispatch_failed
    expires_at: Optional[datetime] = None

class SessionDescriptor(BaseModel):
    signer_id: int
    envelope_id: int
    token: str
    expires_at: datetime

class CertificationResult(BaseModel):
    envelope_id: int
    document_id: int
    original_hash: str
    content_hash: str
    complete_hash: str
    fingerprint: str
    storage_path: str
    fallback_document: bool = False

class IntegrityReport(BaseModel):
    envelope_id: int
    document_id: int
    recorded_hash: Optional[str]
    actual_hash: Optional[str]
    valid: bool

class SignerView(BaseModel):
    id: int
    name: str
    email: str
    role: SignerRole
    routing_order: int
    signed_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    signing_link: Optional[str] = None

class EnvelopeView(BaseModel):
    id: int
    document_id: int
    status: str
    subject: Optional[str] = None
    message: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    signers: List[SignerView] = []
