
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from .logger import get_logger
from .models import AuditLog
from .repository import Repository
from .utils import canonical_json, sha256_bytes, utcnow

logger = get_logger(__name__)

GENESIS_HASH = "0" * 64


class AuditEvent:
    ENVELOPE_CREATED = "ENVELOPE_CREATED"
    SIGNER_ADDED = "SIGNER_ADDED"
    FIELD_ADDED = "FIELD_ADDED"
    ENVELOPE_SENT = "ENVELOPE_SENT"
    INVITATION_EMAIL_SENT = "INVITATION_EMAIL_SENT"
    INVITATION_EMAIL_FAILED = "INVITATION_EMAIL_FAILED"
    VIEWED = "VIEWED"
    VERIFICATION_CODE_SENT = "VERIFICATION_CODE_SENT"
    VERIFICATION_CODE_FAILED = "VERIFICATION_CODE_FAILED"
    OTP_VERIFIED = "OTP_VERIFIED"
    OTP_REJECTED = "OTP_REJECTED"
    SESSION_ENDED = "SESSION_ENDED"
    SIGNED = "SIGNED"
    ENVELOPE_PARTIALLY_SIGNED = "ENVELOPE_PARTIALLY_SIGNED"
    ENVELOPE_COMPLETED = "ENVELOPE_COMPLETED"
    DECLINED = "DECLINED"
    ENVELOPE_VOIDED = "ENVELOPE_VOIDED"
    STATUS_RECOMPUTED = "STATUS_RECOMPUTED"
    COMPLETION_EMAIL_SENT = "COMPLETION_EMAIL_SENT"
    COMPLETION_EMAIL_FAILED = "COMPLETION_EMAIL_FAILED"
    COMPLETE_SIGNED_PDF_GENERATED = "COMPLETE_SIGNED_PDF_GENERATED"


class Actor(BaseModel):
    email: Optional[str] = None
    role: str = "SYSTEM"  # OWNER|SIGNER|SYSTEM
    ip: Optional[str] = None
    user_agent: Optional[str] = None


SYSTEM = Actor()


class ChainReport(BaseModel):
    envelope_id: int
    entries: int
    valid: bool
    broken_entry_id: Optional[int] = None


def _entry_hash(prev_hash: str, entry: AuditLog) -> str:
    payload = {
        "envelope_id": entry.envelope_id,
        "timestamp": entry.timestamp.isoformat(),
        "actor": entry.actor_email,
        "role": entry.actor_role,
        "ip": entry.ip_address,
        "user_agent": entry.user_agent,
        "event": entry.event,
        "details": entry.details_json,
    }
    return sha256_bytes((prev_hash + canonical_json(payload)).encode())


class AuditLedger:
    """
    Append-only, hash-chained event log keyed by envelope id.

    Appending reads the chain head and inserts after it, so the caller's
    transaction must already hold ``("audit", envelope_id)``. Taking it up
    front, before any write, keeps the in-process lock ahead of the
    database write lock.
    """

    def __init__(self, repo: Repository):
        self.repo = repo

    def append(
        self,
        session: Session,
        envelope_id: int,
        event: str,
        actor: Actor = SYSTEM,
        details: Optional[dict] = None,
    ) -> AuditLog:
        last = session.exec(
            select(AuditLog).where(AuditLog.envelope_id == envelope_id).order_by(AuditLog.id.desc())
        ).first()
        prev_hash = last.hash if last else GENESIS_HASH
        entry = AuditLog(
            envelope_id=envelope_id,
            timestamp=utcnow(),
            actor_email=actor.email,
            actor_role=actor.role,
            ip_address=actor.ip,
            user_agent=actor.user_agent,
            event=event,
            details_json=canonical_json(details or {}),
            prev_hash=prev_hash,
        )
        entry.hash = _entry_hash(prev_hash, entry)
        session.add(entry)
        session.flush()
        return entry

    def record(self, envelope_id: int, event: str, actor: Actor = SYSTEM, details: Optional[dict] = None) -> AuditLog:
        with self.repo.transaction(("audit", envelope_id)) as session:
            return self.append(session, envelope_id, event, actor, details)

    def try_record(
        self, envelope_id: int, event: str, actor: Actor = SYSTEM, details: Optional[dict] = None
    ) -> Optional[AuditLog]:
        """``record`` for best-effort follow-ups after a commit; a failed write is logged."""
        try:
            return self.record(envelope_id, event, actor, details)
        except SQLAlchemyError:
            logger.error("audit_record_failed", envelope_id=envelope_id, audit_event=event, exc_info=True)
            return None

    def entries(self, envelope_id: int) -> List[AuditLog]:
        with self.repo.session() as session:
            return list(
                session.exec(
                    select(AuditLog).where(AuditLog.envelope_id == envelope_id).order_by(AuditLog.id)
                ).all()
            )

    def verify_chain(self, envelope_id: int) -> ChainReport:
        entries = self.entries(envelope_id)
        prev_hash = GENESIS_HASH
        for entry in entries:
            if entry.prev_hash != prev_hash or entry.hash != _entry_hash(prev_hash, entry):
                return ChainReport(envelope_id=envelope_id, entries=len(entries), valid=False, broken_entry_id=entry.id)
            prev_hash = entry.hash
        return ChainReport(envelope_id=envelope_id, entries=len(entries), valid=True)
