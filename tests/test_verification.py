import pytest

from esign.audit import AuditEvent
from esign.errors import ExpiredError, InvalidCodeError, NotFoundError
from esign.models import Signer
from esign.notifications import VERIFICATION_CODE

from conftest import open_session


def events(services, envelope_id):
    return [e.event for e in services.ledger.entries(envelope_id)]


def test_initiate_issues_numeric_code_and_dispatches(services, notifier, clock, sent):
    env, alice, _, _ = sent
    result = services.verification.initiate_verification(alice.id)
    assert result.sent and result.reason == "sent"
    assert result.expires_at == clock.now + services.verification.code_ttl
    stored = services.repo.get(Signer, alice.id)
    assert len(stored.otp_code) == 6 and stored.otp_code.isdigit()
    delivered = notifier.of_kind(VERIFICATION_CODE)
    assert delivered[-1]["to"] == "alice@example.com"
    assert delivered[-1]["data"]["code"] == stored.otp_code
    assert events(services, env.id)[-1] == AuditEvent.VERIFICATION_CODE_SENT


def test_initiate_for_unknown_signer_reports_not_found(services):
    result = services.verification.initiate_verification(9999)
    assert not result.sent
    assert result.reason == "signer_not_found"


def test_initiate_reports_dispatch_failure(services, notifier, sent):
    env, alice, _, _ = sent
    notifier.fail = True
    result = services.verification.initiate_verification(alice.id)
    assert not result.sent
    assert result.reason == "dispatch_failed"
    assert events(services, env.id)[-1] == AuditEvent.VERIFICATION_CODE_FAILED


def test_verify_code_opens_session(services, clock, sent):
    env, alice, _, _ = sent
    services.verification.initiate_verification(alice.id)
    code = services.repo.get(Signer, alice.id).otp_code
    session = services.verification.verify_code(alice.id, code)
    assert session.signer_id == alice.id
    assert session.envelope_id == env.id
    assert session.expires_at == clock.now + services.verification.session_ttl
    assert services.verification.validate_session(alice.id, session.token)
    assert events(services, env.id)[-1] == AuditEvent.OTP_VERIFIED


def test_expired_code_rejected_even_when_digits_match(services, clock, sent):
    env, alice, _, _ = sent
    services.verification.initiate_verification(alice.id)
    code = services.repo.get(Signer, alice.id).otp_code
    clock.advance(minutes=11)
    with pytest.raises(ExpiredError) as exc:
        services.verification.verify_code(alice.id, code)
    assert exc.value.entity_id == alice.id
    assert events(services, env.id)[-1] == AuditEvent.OTP_REJECTED


def test_wrong_code_rejected(services, sent):
    env, alice, _, _ = sent
    services.verification.initiate_verification(alice.id)
    code = services.repo.get(Signer, alice.id).otp_code
    wrong = "0" * 6 if code != "0" * 6 else "1" * 6
    with pytest.raises(InvalidCodeError):
        services.verification.verify_code(alice.id, wrong)
    assert services.ledger.entries(env.id)[-1].details["reason"] == "mismatch"


def test_verify_unknown_signer(services):
    with pytest.raises(NotFoundError):
        services.verification.verify_code(4242, "123456")


def test_reverifying_same_code_is_idempotent(services, sent):
    _, alice, _, _ = sent
    services.verification.initiate_verification(alice.id)
    code = services.repo.get(Signer, alice.id).otp_code
    first = services.verification.verify_code(alice.id, code)
    second = services.verification.verify_code(alice.id, code)
    assert second.token != first.token
    assert services.verification.validate_session(alice.id, second.token)
    assert not services.verification.validate_session(alice.id, first.token)


def test_new_code_invalidates_existing_session(services, sent):
    _, alice, _, _ = sent
    token = open_session(services, alice)
    assert services.verification.validate_session(alice.id, token)
    services.verification.initiate_verification(alice.id)
    assert not services.verification.validate_session(alice.id, token)


def test_invitation_code_expires_after_thirty_minutes(services, clock, sent):
    _, alice, _, _ = sent
    code = services.repo.get(Signer, alice.id).otp_code
    clock.advance(minutes=31)
    with pytest.raises(ExpiredError):
        services.verification.verify_code(alice.id, code)


def test_session_expires_lazily(services, clock, sent):
    _, alice, _, _ = sent
    token = open_session(services, alice)
    clock.advance(hours=23, minutes=59)
    assert services.verification.validate_session(alice.id, token)
    clock.advance(minutes=2)
    assert not services.verification.validate_session(alice.id, token)


def test_validate_session_rejects_bad_tokens(services, sent):
    _, alice, bob, _ = sent
    token = open_session(services, alice)
    assert not services.verification.validate_session(alice.id, None)
    assert not services.verification.validate_session(alice.id, "not-the-token")
    assert not services.verification.validate_session(bob.id, token)
    assert not services.verification.validate_session(9999, token)


def test_end_session_is_idempotent(services, sent):
    env, alice, _, _ = sent
    token = open_session(services, alice)
    assert services.verification.end_session(alice.id)
    assert not services.verification.validate_session(alice.id, token)
    assert services.verification.end_session(alice.id)
    assert events(services, env.id).count(AuditEvent.SESSION_ENDED) == 1
    assert not services.verification.end_session(9999)


def test_locate_by_signing_link(services, sent):
    _, alice, _, _ = sent
    assert services.verification.locate(alice.signing_link).id == alice.id
    with pytest.raises(NotFoundError):
        services.verification.locate("forged-token")
