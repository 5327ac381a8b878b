
from datetime import timedelta
from typing import Callable, Optional

from . import config
from .audit import Actor, AuditEvent, AuditLedger
from .errors import ExpiredError, InvalidCodeError, NotFoundError, UnverifiedError
from .logger import get_logger
from .models import Signer
from .notifications import VERIFICATION_CODE, Notifier
from .repository import Repository
from .schemas import InitiationResult, SessionDescriptor
from .utils import codes_match, generate_code, is_link_token, new_session_token, utcnow

logger = get_logger(__name__)


def signer_actor(signer: Signer) -> Actor:
    return Actor(email=signer.email, role="SIGNER")


class SignerVerificationService:
    """
    One-time-code issuance and signing sessions, per signer.

    A signer moves UNVERIFIED -> CODE_ISSUED -> VERIFIED (session active) and
    from there to an expired or ended session. Issuing a code always drops
    the previous session, and every expiry is checked lazily against the
    injected clock.
    """

    def __init__(
        self,
        repo: Repository,
        ledger: AuditLedger,
        notifier: Notifier,
        clock: Callable = utcnow,
        code_length: int = config.OTP_LENGTH,
        code_ttl: timedelta = timedelta(minutes=config.OTP_TTL_MINUTES),
        session_ttl: timedelta = timedelta(hours=config.SESSION_TTL_HOURS),
    ):
        self.repo = repo
        self.ledger = ledger
        self.notifier = notifier
        self.clock = clock
        self.code_length = code_length
        self.code_ttl = code_ttl
        self.session_ttl = session_ttl

    def _lock_keys(self, signer_id: int):
        # a signer never moves between envelopes, so its chain is known before locking
        signer = self.repo.get(Signer, signer_id)
        keys = [("signer", signer_id)]
        if signer is not None:
            keys.append(("audit", signer.envelope_id))
        return keys

    def locate(self, link_token: str) -> Signer:
        signer = self.repo.first(Signer, signing_link=link_token) if is_link_token(link_token) else None
        if signer is None:
            raise NotFoundError("Signing request not found", event="LOCATE_SIGNER")
        return signer

    def initiate_verification(self, signer_id: int) -> InitiationResult:
        with self.repo.transaction(("signer", signer_id)) as session:
            signer = self.repo.locked(session, Signer, signer_id)
            if signer is None:
                return InitiationResult(sent=False, reason="signer_not_found")
            expires_at = self.clock() + self.code_ttl
            signer.otp_code = generate_code(self.code_length)
            signer.otp_expiry = expires_at
            signer.otp_verified = False
            signer.session_token = None
            signer.session_expiry = None
            session.add(signer)

        # dispatch happens after the signer row is released
        sent = self.notifier.send(
            signer.email,
            VERIFICATION_CODE,
            {
                "signer_name": signer.name,
                "code": signer.otp_code,
                "expires_in_minutes": int(self.code_ttl.total_seconds() // 60),
            },
        )
        event = AuditEvent.VERIFICATION_CODE_SENT if sent else AuditEvent.VERIFICATION_CODE_FAILED
        self.ledger.try_record(signer.envelope_id, event, signer_actor(signer), {"signer_id": signer.id})
        if not sent:
            logger.warning("verification_code_not_sent", signer_id=signer.id, envelope_id=signer.envelope_id)
            return InitiationResult(sent=False, reason="dispatch_failed", expires_at=expires_at)
        return InitiationResult(sent=True, reason="sent", expires_at=expires_at)

    def verify_code(self, signer_id: int, submitted_code: str) -> SessionDescriptor:
        failure: Optional[Exception] = None
        with self.repo.transaction(*self._lock_keys(signer_id)) as session:
            signer = self.repo.locked(session, Signer, signer_id)
            if signer is None:
                raise NotFoundError("Signer not found", entity_id=signer_id, event=AuditEvent.OTP_REJECTED)
            now = self.clock()
            if not signer.otp_code or not signer.otp_expiry or signer.otp_expiry <= now:
                failure = ExpiredError("Verification code has expired", entity_id=signer_id, event=AuditEvent.OTP_REJECTED)
                reason = "expired"
            elif not codes_match((submitted_code or "").strip(), signer.otp_code):
                failure = InvalidCodeError("Invalid verification code", entity_id=signer_id, event=AuditEvent.OTP_REJECTED)
                reason = "mismatch"
            if failure is not None:
                self.ledger.append(
                    session, signer.envelope_id, AuditEvent.OTP_REJECTED, signer_actor(signer),
                    {"signer_id": signer.id, "reason": reason},
                )
            else:
                signer.otp_verified = True
                signer.session_token = new_session_token()
                signer.session_expiry = now + self.session_ttl
                session.add(signer)
                self.ledger.append(
                    session, signer.envelope_id, AuditEvent.OTP_VERIFIED, signer_actor(signer), {"signer_id": signer.id}
                )
        if failure is not None:
            raise failure
        return SessionDescriptor(
            signer_id=signer.id,
            envelope_id=signer.envelope_id,
            token=signer.session_token,
            expires_at=signer.session_expiry,
        )

    def validate_session(self, signer_id: int, token: Optional[str]) -> bool:
        signer = self.repo.get(Signer, signer_id)
        return self.session_is_active(signer, token)

    def session_is_active(self, signer: Optional[Signer], token: Optional[str]) -> bool:
        if signer is None or not token or not signer.session_token or not signer.session_expiry:
            return False
        return (
            codes_match(token, signer.session_token)
            and signer.session_expiry > self.clock()
            and signer.otp_verified
        )

    def require_session(self, signer: Signer, token: Optional[str]) -> None:
        if not self.session_is_active(signer, token):
            raise UnverifiedError("An active verified session is required", entity_id=signer.id, event=AuditEvent.SIGNED)

    def end_session(self, signer_id: int) -> bool:
        with self.repo.transaction(*self._lock_keys(signer_id)) as session:
            signer = self.repo.locked(session, Signer, signer_id)
            if signer is None:
                return False
            if signer.session_token is None and signer.session_expiry is None:
                return True
            signer.session_token = None
            signer.session_expiry = None
            session.add(signer)
            self.ledger.append(session, signer.envelope_id, AuditEvent.SESSION_ENDED, signer_actor(signer), {"signer_id": signer.id})
        return True
