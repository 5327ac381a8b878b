from datetime import datetime
from io import BytesIO

import pytest
from pypdf import PdfReader, PdfWriter

from esign import deps as deps_module
from esign.audit import AuditEvent
from esign.certification import (
    FALLBACK_NOTICE,
    compute_fingerprint,
    format_signed_at,
    render_content,
    stamp_certification,
)
from esign.compliance import get_compliance_info
from esign.errors import InvalidStateError, NotFoundError
from esign.models import Document, Signer
from esign.schemas import Placement, SignerCreate
from esign.utils import sha256_bytes
from esign.worker import certify_envelope

from conftest import sign, store_document


def page_text(data: bytes, index: int = -1) -> str:
    reader = PdfReader(BytesIO(data))
    return reader.pages[index].extract_text()


@pytest.fixture
def completed(services, sent):
    env, alice, bob, carol = sent
    sign(services, alice)
    sign(services, bob, image=None, text="Bob Builder")
    return env, alice, bob, carol


def test_fingerprint_binds_envelope_document_and_time():
    signed_at = datetime(2026, 10, 18, 9, 0, 0)
    expected = sha256_bytes(b"122026-10-18T09:00:00")[:16].upper()
    assert compute_fingerprint(1, 2, signed_at) == expected
    assert len(expected) == 16
    assert compute_fingerprint(1, 3, signed_at) != expected


def test_signed_timestamp_is_localized():
    value = datetime(2026, 10, 18, 9, 0, 0)
    assert format_signed_at(value, get_compliance_info("IN")) == "18-10-2026 14:30:00 IST"
    assert format_signed_at(value, get_compliance_info("US")) == "18-10-2026 09:00:00 UTC"
    assert format_signed_at(None, get_compliance_info("IN")) == "N/A"


def test_certify_completed_envelope(services, store, completed):
    env = completed[0]
    result = services.certification.certify(env.id)
    doc = services.repo.get(Document, result.document_id)
    assert result.complete_hash
    assert result.complete_hash != doc.original_hash
    assert result.content_hash not in (result.complete_hash, doc.original_hash)
    assert not result.fallback_document
    assert result.storage_path == f"signed/{env.id}.pdf"
    assert doc.signed_pdf_hash == result.complete_hash
    assert doc.signed_pdf_path == result.storage_path
    artifact = store.get(result.storage_path)
    assert sha256_bytes(artifact) == result.complete_hash

    footer = page_text(artifact)
    assert f"Digital Fingerprint: {result.fingerprint}" in footer
    assert "Digitally Signed: 18-10-2026 14:30:00 IST" in footer
    assert "Verified under Information Technology Act, 2000" in footer
    assert "Digital Signature Certificate - India Compliance" in footer
    assert "e-Signature" in page_text(artifact, 0)
    assert "Bob Builder" in page_text(artifact, 1)


def test_certification_audit_entry(services, completed):
    env = completed[0]
    result = services.certification.certify(env.id)
    entry = services.ledger.entries(env.id)[-1]
    assert entry.event == AuditEvent.COMPLETE_SIGNED_PDF_GENERATED
    assert entry.details["original_hash"] == result.original_hash
    assert entry.details["content_hash"] == result.content_hash
    assert entry.details["complete_hash"] == result.complete_hash
    assert entry.details["fingerprint"] == result.fingerprint
    assert services.ledger.verify_chain(env.id).valid


def test_certification_is_idempotent(services, store, completed):
    env = completed[0]
    first = services.certification.certify(env.id)
    first_bytes = store.get(first.storage_path)
    second = services.certification.certify(env.id)
    assert second.complete_hash == first.complete_hash
    assert second.content_hash == first.content_hash
    assert store.get(second.storage_path) == first_bytes
    doc = services.repo.get(Document, second.document_id)
    assert doc.signed_pdf_hash == second.complete_hash
    generated = [e for e in services.ledger.entries(env.id) if e.event == AuditEvent.COMPLETE_SIGNED_PDF_GENERATED]
    assert len(generated) == 2


def test_partially_signed_envelope_can_be_certified(services, sent):
    env, alice, _, _ = sent
    sign(services, alice)
    result = services.certification.certify(env.id)
    assert result.complete_hash


def test_certification_needs_a_signature(services, sent):
    env = sent[0]
    with pytest.raises(InvalidStateError):
        services.certification.certify(env.id)
    with pytest.raises(NotFoundError):
        services.certification.certify(9999)


def test_unparseable_source_falls_back_to_placeholder(services, owner, store):
    doc = store_document(services, owner, b"this is not a pdf", filename="broken.pdf")
    wf = services.workflow
    env = wf.create(owner.id, doc.id)
    erin = wf.add_signer(
        env.id,
        SignerCreate(email="erin@example.com", name="Erin", placement=Placement(page=3, x=0.1, y=0.5, width=0.3, height=0.1)),
        owner.id,
    )
    wf.send(env.id, owner.id)
    sign(services, erin)
    result = services.certification.certify(env.id)
    assert result.fallback_document
    artifact = store.get(result.storage_path)
    assert len(PdfReader(BytesIO(artifact)).pages) == 1
    text = page_text(artifact)
    assert FALLBACK_NOTICE in text
    assert "Digital Fingerprint" in text
    assert services.ledger.entries(env.id)[-1].details["fallback_document"] is True


def empty_pdf() -> bytes:
    buf = BytesIO()
    PdfWriter().write(buf)
    return buf.getvalue()


def test_source_without_pages_falls_back_to_placeholder(services, owner, store):
    doc = store_document(services, owner, empty_pdf(), filename="empty.pdf")
    wf = services.workflow
    env = wf.create(owner.id, doc.id)
    frank = wf.add_signer(
        env.id,
        SignerCreate(email="frank@example.com", name="Frank", placement=Placement(page=1, x=0.1, y=0.5, width=0.3, height=0.1)),
        owner.id,
    )
    wf.send(env.id, owner.id)
    sign(services, frank)
    result = services.certification.certify(env.id)
    assert result.fallback_document
    artifact = store.get(result.storage_path)
    assert len(PdfReader(BytesIO(artifact)).pages) == 1
    assert FALLBACK_NOTICE in page_text(artifact)
    assert sha256_bytes(artifact) == result.complete_hash


def test_placement_past_last_page_lands_on_last_page(services, owner, document, store):
    wf = services.workflow
    env = wf.create(owner.id, document.id)
    dana = wf.add_signer(
        env.id,
        SignerCreate(email="dana@example.com", name="Dana", placement=Placement(page=5, x=0.1, y=0.5, width=0.3, height=0.1)),
        owner.id,
    )
    wf.send(env.id, owner.id)
    sign(services, dana, image=None, text="Dana Typed")
    result = services.certification.certify(env.id)
    assert not result.fallback_document
    artifact = store.get(result.storage_path)
    assert len(PdfReader(BytesIO(artifact)).pages) == 2
    assert "Dana Typed" in page_text(artifact, 1)
    assert "Dana Typed" not in page_text(artifact, 0)


def test_stages_are_pure_over_a_snapshot(services, completed):
    env = completed[0]
    snapshot = services.certification.snapshot(env.id)
    compliance = get_compliance_info("IN")
    content_a = render_content(snapshot, compliance)
    content_b = render_content(snapshot, compliance)
    assert content_a == content_b
    complete = stamp_certification(content_a, snapshot, compliance)
    assert complete.complete_hash == sha256_bytes(complete.data)
    assert complete.fingerprint == compute_fingerprint(env.id, snapshot.document_id, snapshot.latest_signed_at)


def test_signature_summary_respects_suppression(services, completed):
    env = completed[0]
    snapshot = services.certification.snapshot(env.id)
    compliance = get_compliance_info("IN")
    with_summary = render_content(snapshot, compliance, include_summary=True)
    without = render_content(snapshot, compliance, include_summary=False)
    assert "Electronic Signatures" in page_text(with_summary.data)
    assert "Electronic Signatures" not in page_text(without.data)


def test_verify_artifact_detects_tampering(services, store, completed):
    env = completed[0]
    report = services.certification.verify_artifact(env.id)
    assert not report.valid and report.recorded_hash is None
    result = services.certification.certify(env.id)
    report = services.certification.verify_artifact(env.id)
    assert report.valid and report.actual_hash == result.complete_hash
    store.put(result.storage_path, store.get(result.storage_path) + b"\n%tampered")
    report = services.certification.verify_artifact(env.id)
    assert not report.valid
    assert report.recorded_hash == result.complete_hash


def test_completion_certificate_lists_signers(services, completed):
    env = completed[0]
    services.certification.certify(env.id)
    pdf = services.certification.render_certificate(env.id)
    reader = PdfReader(BytesIO(pdf))
    text = "".join(page.extract_text() for page in reader.pages)
    assert "Certificate of Completion" in text
    assert "alice@example.com" in text
    assert "COMPLETE_SIGNED_PDF_GENERATED" in text


def test_worker_task_certifies(services, store, completed, monkeypatch):
    env = completed[0]
    monkeypatch.setattr(deps_module, "_services", services)
    result = certify_envelope.run(env.id)
    assert result["envelope_id"] == env.id
    assert sha256_bytes(store.get(result["storage_path"])) == result["complete_hash"]


def test_snapshot_uses_latest_signature_time(services, clock, sent):
    env, alice, bob, _ = sent
    sign(services, alice)
    clock.advance(minutes=5)
    sign(services, bob)
    snapshot = services.certification.snapshot(env.id)
    assert snapshot.latest_signed_at == services.repo.get(Signer, bob.id).signed_at
