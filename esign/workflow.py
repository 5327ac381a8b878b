import json
import re
from datetime import timedelta
from typing import Callable, Iterable, List, Optional

from sqlmodel import Session, select

from . import config
from .audit import SYSTEM, Actor, AuditEvent, AuditLedger
from .compliance import get_compliance_info
from .errors import InvalidStateError, NotFoundError, ValidationError
from .fields import ValidationResult, validate
from .logger import get_logger
from .models import (
    TERMINAL_STATUSES,
    Document,
    DocumentField,
    Envelope,
    EnvelopeStatus,
    FieldType,
    Signature,
    Signer,
    SignerRole,
)
from .notifications import COMPLETION, SIGNING_INVITATION, Notifier
from .repository import Repository
from .schemas import (
    EnvelopeView,
    FieldPlacement,
    Placement,
    SignatureInput,
    SignerCreate,
    SignerView,
    SigningMetadata,
)
from .utils import DATA_URL_PNG_PREFIX, generate_code, make_link_token, utcnow
from .verification import SignerVerificationService, signer_actor

logger = get_logger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

ALLOWED_TRANSITIONS = {
    EnvelopeStatus.DRAFT: {EnvelopeStatus.SENT, EnvelopeStatus.DECLINED, EnvelopeStatus.VOIDED},
    EnvelopeStatus.SENT: {
        EnvelopeStatus.VIEWED,
        EnvelopeStatus.PARTIALLY_SIGNED,
        EnvelopeStatus.COMPLETED,
        EnvelopeStatus.DECLINED,
        EnvelopeStatus.VOIDED,
    },
    EnvelopeStatus.VIEWED: {
        EnvelopeStatus.PARTIALLY_SIGNED,
        EnvelopeStatus.COMPLETED,
        EnvelopeStatus.DECLINED,
        EnvelopeStatus.VOIDED,
    },
    EnvelopeStatus.PARTIALLY_SIGNED: {EnvelopeStatus.COMPLETED, EnvelopeStatus.DECLINED, EnvelopeStatus.VOIDED},
    EnvelopeStatus.COMPLETED: set(),
    EnvelopeStatus.DECLINED: set(),
    EnvelopeStatus.VOIDED: set(),
}

SIGNABLE_STATUSES = {EnvelopeStatus.SENT, EnvelopeStatus.VIEWED, EnvelopeStatus.PARTIALLY_SIGNED}

TRANSITION_EVENTS = {
    EnvelopeStatus.PARTIALLY_SIGNED: AuditEvent.ENVELOPE_PARTIALLY_SIGNED,
    EnvelopeStatus.COMPLETED: AuditEvent.ENVELOPE_COMPLETED,
}


def derive_status(current: EnvelopeStatus, signers: Iterable[Signer]) -> EnvelopeStatus:
    """Envelope status as implied by the SIGNER-role signers, from scratch."""
    if current in TERMINAL_STATUSES or current == EnvelopeStatus.DRAFT:
        return current
    required = [s for s in signers if s.role == SignerRole.SIGNER]
    signed = sum(1 for s in required if s.signed_at)
    if required and signed == len(required):
        return EnvelopeStatus.COMPLETED
    if signed:
        return EnvelopeStatus.PARTIALLY_SIGNED
    return current


class EnvelopeWorkflow:
    """Envelope lifecycle: DRAFT -> SENT -> (VIEWED) -> PARTIALLY_SIGNED -> COMPLETED."""

    def __init__(
        self,
        repo: Repository,
        ledger: AuditLedger,
        verification: SignerVerificationService,
        notifier: Notifier,
        clock: Callable = utcnow,
        frontend_url: str = config.FRONTEND_URL,
        jurisdiction: str = config.COMPLIANCE_JURISDICTION,
        invite_code_ttl: timedelta = timedelta(minutes=config.INVITE_CODE_TTL_MINUTES),
        on_completed: Optional[Callable[[int], None]] = None,
    ):
        self.repo = repo
        self.ledger = ledger
        self.verification = verification
        self.notifier = notifier
        self.clock = clock
        self.frontend_url = frontend_url.rstrip("/")
        self.compliance = get_compliance_info(jurisdiction)
        self.invite_code_ttl = invite_code_ttl
        self.on_completed = on_completed

    # ---------- helpers ----------

    def _load(self, session: Session, envelope_id: int, owner_id: Optional[int] = None) -> Envelope:
        envelope = self.repo.locked(session, Envelope, envelope_id)
        if envelope is None or (owner_id is not None and envelope.owner_id != owner_id):
            raise NotFoundError("Envelope not found", entity_id=envelope_id)
        return envelope

    def _load_signer(self, session: Session, envelope_id: int, signer_id: int) -> Signer:
        signer = self.repo.locked(session, Signer, signer_id)
        if signer is None or signer.envelope_id != envelope_id:
            raise NotFoundError("Signer not found", entity_id=signer_id)
        return signer

    def _transition(
        self,
        session: Session,
        envelope: Envelope,
        target: EnvelopeStatus,
        event: str,
        actor: Actor,
        details: Optional[dict] = None,
    ) -> None:
        if target not in ALLOWED_TRANSITIONS[envelope.status]:
            raise InvalidStateError(
                f"Cannot move envelope from {envelope.status.value} to {target.value}",
                entity_id=envelope.id,
                event=event,
            )
        previous = envelope.status
        now = self.clock()
        envelope.status = target
        envelope.updated_at = now
        if target == EnvelopeStatus.COMPLETED:
            envelope.completed_at = now
        session.add(envelope)
        payload = {"from": previous.value, "to": target.value}
        payload.update(details or {})
        self.ledger.append(session, envelope.id, event, actor, payload)

    def _apply_derived_status(self, session: Session, envelope: Envelope, actor: Actor, event: Optional[str] = None) -> None:
        # fresh read of every signer inside the envelope lock
        signers = self.repo.signers_of(envelope.id, session=session)
        target = derive_status(envelope.status, signers)
        if target != envelope.status:
            self._transition(session, envelope, target, event or TRANSITION_EVENTS[target], actor)
            logger.info("envelope_status_changed", envelope_id=envelope.id, status=target.value)

    def _require_draft(self, envelope: Envelope, event: str) -> None:
        if envelope.status != EnvelopeStatus.DRAFT:
            raise InvalidStateError("Cannot modify non-draft envelope", entity_id=envelope.id, event=event)

    def signing_link(self, signer: Signer) -> str:
        return f"{self.frontend_url}/sign/{signer.signing_link}"

    # ---------- owner operations ----------

    def create(
        self,
        owner_id: int,
        document_id: int,
        subject: Optional[str] = None,
        message: Optional[str] = None,
        actor: Actor = SYSTEM,
    ) -> Envelope:
        # a new envelope starts its own chain, so no audit key is needed
        with self.repo.transaction(("document", document_id)) as session:
            document = session.get(Document, document_id)
            if document is None or document.owner_id != owner_id:
                raise NotFoundError("Document not found", entity_id=document_id, event=AuditEvent.ENVELOPE_CREATED)
            envelope = Envelope(owner_id=owner_id, document_id=document_id, subject=subject, message=message)
            session.add(envelope)
            session.flush()
            self.ledger.append(session, envelope.id, AuditEvent.ENVELOPE_CREATED, actor, {"document_id": document_id})
        return envelope

    def add_signer(self, envelope_id: int, payload: SignerCreate, owner_id: Optional[int] = None, actor: Actor = SYSTEM) -> Signer:
        email = (payload.email or "").strip()
        if not EMAIL_RE.match(email):
            raise ValidationError("Invalid signer email", entity_id=envelope_id, event=AuditEvent.SIGNER_ADDED)
        if not payload.name or not payload.name.strip():
            raise ValidationError("Signer name is required", entity_id=envelope_id, event=AuditEvent.SIGNER_ADDED)
        if isinstance(payload.routing_order, bool) or not isinstance(payload.routing_order, int) or payload.routing_order < 1:
            raise ValidationError("Routing order must be an integer >= 1", entity_id=envelope_id, event=AuditEvent.SIGNER_ADDED)

        with self.repo.transaction(("envelope", envelope_id), ("audit", envelope_id)) as session:
            envelope = self._load(session, envelope_id, owner_id)
            self._require_draft(envelope, AuditEvent.SIGNER_ADDED)
            signer = Signer(
                envelope_id=envelope.id,
                email=email,
                name=payload.name.strip(),
                role=payload.role,
                routing_order=payload.routing_order,
                signing_link=make_link_token(),
                otp_code=generate_code(self.verification.code_length),
                otp_expiry=self.clock() + self.invite_code_ttl,
            )
            session.add(signer)
            session.flush()
            if payload.placement is not None:
                p = payload.placement
                field = DocumentField(
                    envelope_id=envelope.id,
                    signer_id=signer.id,
                    type=FieldType.SIGNATURE,
                    page=p.page,
                    x=p.x,
                    y=p.y,
                    width=p.width,
                    height=p.height,
                    required=True,
                )
                session.add(field)
                session.flush()
                self.ledger.append(
                    session, envelope.id, AuditEvent.FIELD_ADDED, actor,
                    {"signer_id": signer.id, "field_id": field.id, "type": FieldType.SIGNATURE.value},
                )
            self.ledger.append(
                session, envelope.id, AuditEvent.SIGNER_ADDED, actor,
                {"signer_id": signer.id, "email": signer.email, "name": signer.name, "role": signer.role.value},
            )
        return signer

    def add_field(self, envelope_id: int, payload: FieldPlacement, owner_id: Optional[int] = None, actor: Actor = SYSTEM) -> DocumentField:
        if payload.page < 1 or any(v < 0 or v > 1 for v in (payload.x, payload.y, payload.width, payload.height)):
            raise ValidationError("Field bounds must be normalized to the page", entity_id=envelope_id, event=AuditEvent.FIELD_ADDED)
        with self.repo.transaction(("envelope", envelope_id), ("audit", envelope_id)) as session:
            envelope = self._load(session, envelope_id, owner_id)
            self._require_draft(envelope, AuditEvent.FIELD_ADDED)
            signer = session.get(Signer, payload.signer_id)
            if signer is None or signer.envelope_id != envelope.id:
                raise NotFoundError("Signer not found", entity_id=payload.signer_id, event=AuditEvent.FIELD_ADDED)
            field = DocumentField(
                envelope_id=envelope.id,
                signer_id=signer.id,
                type=payload.type,
                page=payload.page,
                x=payload.x,
                y=payload.y,
                width=payload.width,
                height=payload.height,
                required=payload.required,
                value=payload.value,
                label=payload.label,
            )
            session.add(field)
            session.flush()
            self.ledger.append(
                session, envelope.id, AuditEvent.FIELD_ADDED, actor,
                {"signer_id": signer.id, "field_id": field.id, "type": payload.type.value},
            )
        return field

    def fields(self, envelope_id: int) -> List[DocumentField]:
        with self.repo.session() as session:
            return list(
                session.exec(
                    select(DocumentField).where(DocumentField.envelope_id == envelope_id).order_by(DocumentField.id)
                ).all()
            )

    def validate_fields(self, envelope_id: int) -> ValidationResult:
        # geometry is stored normalized, so the page is 1 x 1
        return validate(self.fields(envelope_id), 1.0, 1.0)

    def send(self, envelope_id: int, owner_id: Optional[int] = None, actor: Actor = SYSTEM) -> Envelope:
        signer_keys = [("signer", s.id) for s in self.repo.signers_of(envelope_id)]
        with self.repo.transaction(("envelope", envelope_id), *signer_keys, ("audit", envelope_id)) as session:
            envelope = self._load(session, envelope_id, owner_id)
            self._require_draft(envelope, AuditEvent.ENVELOPE_SENT)
            signers = self.repo.signers_of(envelope.id, session=session)
            if not signers:
                raise InvalidStateError("Add at least one signer", entity_id=envelope.id, event=AuditEvent.ENVELOPE_SENT)
            # the invitation code is valid from the moment it is mailed
            expires_at = self.clock() + self.invite_code_ttl
            for signer in signers:
                if not signer.otp_code:
                    signer.otp_code = generate_code(self.verification.code_length)
                signer.otp_expiry = expires_at
                session.add(signer)
            self._transition(session, envelope, EnvelopeStatus.SENT, AuditEvent.ENVELOPE_SENT, actor)
            document = session.get(Document, envelope.document_id)

        for signer in signers:
            sent = self.notifier.send(
                signer.email,
                SIGNING_INVITATION,
                {
                    "signer_name": signer.name,
                    "document_name": document.filename if document else None,
                    "subject": envelope.subject,
                    "message": envelope.message,
                    "signing_link": self.signing_link(signer),
                    "code": signer.otp_code,
                },
            )
            if sent:
                self.ledger.try_record(envelope.id, AuditEvent.INVITATION_EMAIL_SENT, actor, {"recipient": signer.email})
            else:
                logger.warning("invitation_not_sent", envelope_id=envelope.id, signer_id=signer.id)
                self.ledger.try_record(envelope.id, AuditEvent.INVITATION_EMAIL_FAILED, actor, {"recipient": signer.email})
        return envelope

    def void(self, envelope_id: int, owner_id: int, reason: str = "", actor: Actor = SYSTEM) -> Envelope:
        with self.repo.transaction(("envelope", envelope_id), ("audit", envelope_id)) as session:
            envelope = self._load(session, envelope_id, owner_id)
            if envelope.status in TERMINAL_STATUSES:
                raise InvalidStateError("Envelope is already closed", entity_id=envelope.id, event=AuditEvent.ENVELOPE_VOIDED)
            self._transition(session, envelope, EnvelopeStatus.VOIDED, AuditEvent.ENVELOPE_VOIDED, actor, {"reason": reason})
        return envelope

    def recompute_status(self, envelope_id: int, actor: Actor = SYSTEM) -> Envelope:
        with self.repo.transaction(("envelope", envelope_id), ("audit", envelope_id)) as session:
            envelope = self._load(session, envelope_id)
            self._apply_derived_status(session, envelope, actor, AuditEvent.STATUS_RECOMPUTED)
        return envelope

    def get(self, envelope_id: int, owner_id: Optional[int] = None) -> Envelope:
        envelope = self.repo.get(Envelope, envelope_id)
        if envelope is None or (owner_id is not None and envelope.owner_id != owner_id):
            raise NotFoundError("Envelope not found", entity_id=envelope_id)
        return envelope

    def view(self, envelope_id: int, owner_id: Optional[int] = None) -> EnvelopeView:
        envelope = self.get(envelope_id, owner_id)
        return EnvelopeView(
            id=envelope.id,
            document_id=envelope.document_id,
            status=envelope.status.value,
            subject=envelope.subject,
            message=envelope.message,
            created_at=envelope.created_at,
            completed_at=envelope.completed_at,
            signers=[
                SignerView(
                    id=s.id,
                    name=s.name,
                    email=s.email,
                    role=s.role,
                    routing_order=s.routing_order,
                    signed_at=s.signed_at,
                    declined_at=s.declined_at,
                )
                for s in self.repo.signers_of(envelope.id)
            ],
        )

    # ---------- signer operations ----------

    def mark_viewed(self, envelope_id: int, signer_id: int, metadata: Optional[SigningMetadata] = None) -> Envelope:
        metadata = metadata or SigningMetadata()
        with self.repo.transaction(("envelope", envelope_id), ("audit", envelope_id)) as session:
            envelope = self._load(session, envelope_id)
            signer = self._load_signer(session, envelope_id, signer_id)
            if envelope.status in (EnvelopeStatus.DRAFT, EnvelopeStatus.VOIDED):
                raise InvalidStateError("Envelope is not open for signing", entity_id=envelope.id, event=AuditEvent.VIEWED)
            actor = Actor(email=signer.email, role="SIGNER", ip=metadata.ip, user_agent=metadata.user_agent)
            if envelope.status == EnvelopeStatus.SENT:
                self._transition(session, envelope, EnvelopeStatus.VIEWED, AuditEvent.VIEWED, actor, {"signer_id": signer.id})
            else:
                self.ledger.append(session, envelope.id, AuditEvent.VIEWED, actor, {"signer_id": signer.id})
        return envelope

    def _placement_for(self, session: Session, signer: Signer, signature: SignatureInput) -> Placement:
        field = session.exec(
            select(DocumentField).where(
                DocumentField.envelope_id == signer.envelope_id,
                DocumentField.signer_id == signer.id,
                DocumentField.type == FieldType.SIGNATURE,
            ).order_by(DocumentField.id)
        ).first()
        if field is not None:
            return Placement(
                page=field.page, x=field.x, y=field.y, width=field.width, height=field.height,
                suppress_text=signature.suppress_text,
            )
        if signature.placement is not None:
            return signature.placement.model_copy(update={"suppress_text": signature.suppress_text})
        raise ValidationError("Signature placement is required", entity_id=signer.id, event=AuditEvent.SIGNED)

    def record_signature(
        self,
        envelope_id: int,
        signer_id: int,
        session_token: Optional[str],
        signature: SignatureInput,
        metadata: Optional[SigningMetadata] = None,
    ) -> Envelope:
        metadata = metadata or SigningMetadata()
        with self.repo.transaction(("envelope", envelope_id), ("signer", signer_id), ("audit", envelope_id)) as session:
            envelope = self._load(session, envelope_id)
            signer = self._load_signer(session, envelope_id, signer_id)
            if envelope.status not in SIGNABLE_STATUSES:
                raise InvalidStateError(
                    f"Envelope is {envelope.status.value}", entity_id=envelope.id, event=AuditEvent.SIGNED
                )
            if signer.role != SignerRole.SIGNER:
                raise InvalidStateError("Carbon-copy recipients do not sign", entity_id=signer.id, event=AuditEvent.SIGNED)
            if signer.signed_at or signer.declined_at:
                raise InvalidStateError("Signer has already acted on this envelope", entity_id=signer.id, event=AuditEvent.SIGNED)
            self.verification.require_session(signer, session_token)
            if not signature.consent:
                raise ValidationError("Electronic signature consent is required", entity_id=signer.id, event=AuditEvent.SIGNED)
            if signature.image:
                if not signature.image.startswith(DATA_URL_PNG_PREFIX):
                    raise ValidationError("Signature image must be a PNG data URL", entity_id=signer.id, event=AuditEvent.SIGNED)
            elif not (signature.text and signature.text.strip()):
                raise ValidationError("A drawn or typed signature is required", entity_id=signer.id, event=AuditEvent.SIGNED)
            placement = self._placement_for(session, signer, signature)

            now = self.clock()
            session.add(
                Signature(
                    signer_id=signer.id,
                    consent_given=True,
                    consent_text=self.compliance.consent_text,
                    image_data=signature.image or None,
                    typed_text=None if signature.image else signature.text.strip(),
                    placement_json=json.dumps(placement.model_dump()),
                    created_at=now,
                )
            )
            signer.signed_at = now
            signer.ip_address = metadata.ip
            signer.user_agent = metadata.user_agent
            signer.geo = metadata.geo
            session.add(signer)
            session.flush()
            actor = Actor(email=signer.email, role="SIGNER", ip=metadata.ip, user_agent=metadata.user_agent)
            self.ledger.append(session, envelope.id, AuditEvent.SIGNED, actor, {"signer_id": signer.id, "page": placement.page})
            self._apply_derived_status(session, envelope, actor)

        if envelope.status == EnvelopeStatus.COMPLETED:
            self._notify_completion(envelope)
            if self.on_completed is not None:
                self.on_completed(envelope.id)
        return envelope

    def decline(
        self,
        envelope_id: int,
        signer_id: int,
        reason: str = "",
        metadata: Optional[SigningMetadata] = None,
    ) -> Envelope:
        metadata = metadata or SigningMetadata()
        with self.repo.transaction(("envelope", envelope_id), ("signer", signer_id), ("audit", envelope_id)) as session:
            envelope = self._load(session, envelope_id)
            signer = self._load_signer(session, envelope_id, signer_id)
            if envelope.status in TERMINAL_STATUSES:
                raise InvalidStateError("Envelope is already closed", entity_id=envelope.id, event=AuditEvent.DECLINED)
            if signer.signed_at or signer.declined_at:
                raise InvalidStateError("Signer has already acted on this envelope", entity_id=signer.id, event=AuditEvent.DECLINED)
            signer.declined_at = self.clock()
            signer.decline_reason = reason or None
            signer.ip_address = metadata.ip
            signer.user_agent = metadata.user_agent
            session.add(signer)
            actor = Actor(email=signer.email, role="SIGNER", ip=metadata.ip, user_agent=metadata.user_agent)
            self._transition(
                session, envelope, EnvelopeStatus.DECLINED, AuditEvent.DECLINED, actor,
                {"signer_id": signer.id, "reason": reason},
            )
        return envelope

    def _notify_completion(self, envelope: Envelope) -> None:
        document = self.repo.get(Document, envelope.document_id)
        signers = self.repo.signers_of(envelope.id)
        names = [s.name for s in signers if s.role == SignerRole.SIGNER]
        for signer in signers:
            sent = self.notifier.send(
                signer.email,
                COMPLETION,
                {
                    "signer_name": signer.name,
                    "document_name": document.filename if document else None,
                    "subject": envelope.subject,
                    "signers": names,
                    "download_link": f"{self.signing_link(signer)}/download",
                },
            )
            event = AuditEvent.COMPLETION_EMAIL_SENT if sent else AuditEvent.COMPLETION_EMAIL_FAILED
            if not sent:
                logger.warning("completion_notice_not_sent", envelope_id=envelope.id, signer_id=signer.id)
            self.ledger.try_record(envelope.id, event, signer_actor(signer), {"recipient": signer.email})
