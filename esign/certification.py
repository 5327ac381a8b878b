"""
Two-stage certification of an envelope's document.

The pipeline runs over an immutable snapshot of the envelope, its signers and
their signatures:

1. ``render_content`` draws every captured signature onto the source pages
   and hashes the result (the content hash). An unparseable source is
   replaced by a placeholder page carrying a notice.
2. ``stamp_certification`` reloads the stage-1 bytes, stamps the
   certification footer on the last page and hashes the final bytes (the
   complete hash, the digest of record).

``CertificationEngine`` takes the snapshot, runs both stages outside any
lock, then stores the artifact and records the digests under the document
lock so concurrent runs resolve last-writer-wins.
"""

import binascii
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

from sqlmodel import select

from . import config
from .audit import AuditEvent, AuditLedger
from .canvas import BLACK, GREY, PdfCanvas, load_document, placeholder_document, read_image
from .certificate import build_certificate
from .compliance import ComplianceInfo, get_compliance_info
from .errors import InvalidStateError, NotFoundError, RenderError
from .logger import get_logger
from .models import Document, Envelope, EnvelopeStatus, Signature
from .repository import Repository
from .schemas import CertificationResult, IntegrityReport
from .storage import ArtifactStore
from .utils import b64png_to_bytes, sha256_bytes, utcnow

logger = get_logger(__name__)

CERTIFIABLE_STATUSES = {EnvelopeStatus.PARTIALLY_SIGNED, EnvelopeStatus.COMPLETED}
FALLBACK_NOTICE = "Original PDF could not be parsed. Generated summary PDF instead."
SIGNATURE_CAPTION = "e-Signature"
IMAGE_SCALE = 1.2
SUMMARY_IMAGE_SCALE = 0.3
FOOTER_Y = 30


@dataclass(frozen=True)
class SignerSnapshot:
    signer_id: int
    name: str
    email: str
    signed_at: Optional[datetime]
    image_png: Optional[bytes] = None
    typed_text: Optional[str] = None
    placement: Optional[Tuple[Tuple[str, object], ...]] = None

    @property
    def placement_map(self) -> dict:
        return dict(self.placement or ())

    @property
    def suppress_text(self) -> bool:
        return bool(self.placement_map.get("suppress_text"))


@dataclass(frozen=True)
class CertificationSnapshot:
    envelope_id: int
    document_id: int
    source: bytes
    original_hash: Optional[str]
    signers: Tuple[SignerSnapshot, ...]
    completed_at: Optional[datetime] = None

    @property
    def latest_signed_at(self) -> datetime:
        stamps = [s.signed_at for s in self.signers if s.signed_at]
        if stamps:
            return max(stamps)
        if self.completed_at:
            return self.completed_at
        raise InvalidStateError("No signer has completed", entity_id=self.envelope_id, event=AuditEvent.COMPLETE_SIGNED_PDF_GENERATED)


@dataclass(frozen=True)
class ContentStage:
    data: bytes
    content_hash: str
    fallback_document: bool


@dataclass(frozen=True)
class CompleteStage:
    data: bytes
    complete_hash: str
    fingerprint: str


def compute_fingerprint(envelope_id: int, document_id: int, signed_at: datetime) -> str:
    """Short identifier binding envelope, document and the latest signing time."""
    seed = f"{envelope_id}{document_id}{signed_at.isoformat()}"
    return sha256_bytes(seed.encode())[:16].upper()


def format_signed_at(value: Optional[datetime], compliance: ComplianceInfo) -> str:
    if value is None:
        return "N/A"
    local = value.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(compliance.timezone))
    return f"{local.strftime('%d-%m-%Y %H:%M:%S')} {compliance.timezone_label}"


def _draw_signature(doc: PdfCanvas, signer: SignerSnapshot) -> None:
    placement = signer.placement_map
    if not placement or placement.get("page") is None:
        return
    index = doc.page_index(placement["page"])
    pw, ph = doc.page_size(index)
    left = (placement.get("x") or 0) * pw
    base = (placement.get("y") or 0) * ph
    if signer.image_png:
        try:
            image = read_image(signer.image_png)
        except RenderError:
            logger.warning("signature_image_unreadable", signer_id=signer.signer_id)
            return
        width = max(10, placement.get("width", 0.25) * pw * IMAGE_SCALE)
        height = max(10, placement.get("height", 0.08) * ph * IMAGE_SCALE)
        doc.embed_image(index, left, base, width, height, image)
        caption = min(9, max(7, height * 0.2 + 1))
    elif signer.typed_text:
        size = min(36, max(15, placement.get("height", 0.08) * ph * IMAGE_SCALE))
        doc.draw_text(index, left, base, signer.typed_text, size=size, font="Helvetica-Oblique")
        caption = min(9, max(7, size * 0.25 + 1))
    else:
        return
    doc.draw_text(index, left, max(8, base - (caption + 2)), SIGNATURE_CAPTION, size=caption, font="Helvetica-Bold", color=GREY)


def _draw_summary(doc: PdfCanvas, signers, compliance: ComplianceInfo) -> None:
    index = doc.last_page()
    y = 40
    doc.draw_text(index, 50, y + 20, "Electronic Signatures", size=12, font="Helvetica-Bold")
    for signer in signers:
        doc.draw_text(index, 50, y, f"{signer.name} <{signer.email}> signed at {format_signed_at(signer.signed_at, compliance)}")
        y += 14
        if signer.image_png:
            try:
                image = read_image(signer.image_png)
            except RenderError:
                continue
            iw, ih = image.getSize()
            width, height = iw * SUMMARY_IMAGE_SCALE, ih * SUMMARY_IMAGE_SCALE
            doc.embed_image(index, 50, y + 4, width, height, image)
            y += height + 10
        elif signer.typed_text:
            doc.draw_text(index, 50, y + 4, signer.typed_text, size=27, font="Helvetica-Oblique")
            y += 37


def _paint_content(doc: PdfCanvas, snapshot: CertificationSnapshot, compliance: ComplianceInfo, include_summary: bool) -> bytes:
    for signer in snapshot.signers:
        _draw_signature(doc, signer)
    if include_summary and not any(s.suppress_text for s in snapshot.signers):
        _draw_summary(doc, snapshot.signers, compliance)
    return doc.serialize()


def render_content(snapshot: CertificationSnapshot, compliance: ComplianceInfo, include_summary: bool = False) -> ContentStage:
    fallback = False
    try:
        data = _paint_content(load_document(snapshot.source), snapshot, compliance, include_summary)
    except RenderError as exc:
        logger.warning("certification_fallback_document", envelope_id=snapshot.envelope_id, error=str(exc))
        fallback = True
        data = _paint_content(placeholder_document(FALLBACK_NOTICE), snapshot, compliance, include_summary)
    return ContentStage(data=data, content_hash=sha256_bytes(data), fallback_document=fallback)


def stamp_certification(content: ContentStage, snapshot: CertificationSnapshot, compliance: ComplianceInfo) -> CompleteStage:
    signed_at = snapshot.latest_signed_at
    fingerprint = compute_fingerprint(snapshot.envelope_id, snapshot.document_id, signed_at)
    doc = load_document(content.data)
    index = doc.last_page()
    width, _ = doc.page_size(index)
    doc.draw_rule(index, 40, FOOTER_Y + 24, width - 80, 1)
    doc.draw_text(index, 40, FOOTER_Y + 30, compliance.footer_title, size=10, font="Helvetica-Bold")
    doc.draw_text(index, 40, FOOTER_Y + 12, f"Digital Fingerprint: {fingerprint}", size=8)
    doc.draw_text(index, width - 320, FOOTER_Y + 12, f"Digitally Signed: {format_signed_at(signed_at, compliance)}", size=8, color=BLACK)
    doc.draw_text(index, 40, FOOTER_Y, compliance.footer_statement, size=7, color=GREY)
    data = doc.serialize()
    return CompleteStage(data=data, complete_hash=sha256_bytes(data), fingerprint=fingerprint)


def artifact_path(envelope_id: int) -> str:
    return f"signed/{envelope_id}.pdf"


class CertificationEngine:
    def __init__(
        self,
        repo: Repository,
        ledger: AuditLedger,
        store: ArtifactStore,
        jurisdiction: str = config.COMPLIANCE_JURISDICTION,
        include_summary: bool = config.INCLUDE_SIGNATURE_SUMMARY,
        clock=utcnow,
    ):
        self.repo = repo
        self.ledger = ledger
        self.store = store
        self.compliance = get_compliance_info(jurisdiction)
        self.include_summary = include_summary
        self.clock = clock

    def snapshot(self, envelope_id: int) -> CertificationSnapshot:
        envelope = self.repo.get(Envelope, envelope_id)
        if envelope is None:
            raise NotFoundError("Envelope not found", entity_id=envelope_id, event=AuditEvent.COMPLETE_SIGNED_PDF_GENERATED)
        if envelope.status not in CERTIFIABLE_STATUSES:
            raise InvalidStateError(
                f"Envelope is {envelope.status.value}; nothing has been signed yet",
                entity_id=envelope_id,
                event=AuditEvent.COMPLETE_SIGNED_PDF_GENERATED,
            )
        document = self.repo.get(Document, envelope.document_id)
        if document is None:
            raise NotFoundError("Document not found", entity_id=envelope.document_id, event=AuditEvent.COMPLETE_SIGNED_PDF_GENERATED)

        signers = []
        with self.repo.session() as session:
            for signer in self.repo.signers_of(envelope_id, session=session):
                signature = session.exec(select(Signature).where(Signature.signer_id == signer.id)).first()
                signers.append(self._signer_snapshot(signer, signature))
        return CertificationSnapshot(
            envelope_id=envelope.id,
            document_id=document.id,
            source=self.store.get(document.storage_path),
            original_hash=document.original_hash,
            signers=tuple(signers),
            completed_at=envelope.completed_at,
        )

    @staticmethod
    def _signer_snapshot(signer, signature: Optional[Signature]) -> SignerSnapshot:
        if signature is None:
            return SignerSnapshot(signer_id=signer.id, name=signer.name, email=signer.email, signed_at=signer.signed_at)
        image = None
        if signature.image_data:
            try:
                image = b64png_to_bytes(signature.image_data)
            except (binascii.Error, ValueError):
                logger.warning("signature_image_unreadable", signer_id=signer.id)
        return SignerSnapshot(
            signer_id=signer.id,
            name=signer.name,
            email=signer.email,
            signed_at=signer.signed_at,
            image_png=image,
            typed_text=signature.typed_text,
            placement=tuple(sorted(signature.placement.items())),
        )

    def run_stages(self, snapshot: CertificationSnapshot) -> Tuple[ContentStage, CompleteStage]:
        content = render_content(snapshot, self.compliance, self.include_summary)
        complete = stamp_certification(content, snapshot, self.compliance)
        return content, complete

    def certify(self, envelope_id: int) -> CertificationResult:
        snapshot = self.snapshot(envelope_id)
        # rendering happens without holding any entity lock
        content, complete = self.run_stages(snapshot)
        path = artifact_path(envelope_id)

        with self.repo.transaction(("document", snapshot.document_id), ("audit", envelope_id)) as session:
            document = self.repo.locked(session, Document, snapshot.document_id)
            self.store.put(path, complete.data, "application/pdf")
            document.signed_pdf_hash = complete.complete_hash
            document.signed_pdf_path = path
            document.updated_at = self.clock()
            session.add(document)
            self.ledger.append(
                session,
                envelope_id,
                AuditEvent.COMPLETE_SIGNED_PDF_GENERATED,
                details={
                    "original_hash": snapshot.original_hash,
                    "content_hash": content.content_hash,
                    "complete_hash": complete.complete_hash,
                    "fingerprint": complete.fingerprint,
                    "storage_path": path,
                    "fallback_document": content.fallback_document,
                },
            )
        logger.info("envelope_certified", envelope_id=envelope_id, complete_hash=complete.complete_hash)
        return CertificationResult(
            envelope_id=envelope_id,
            document_id=snapshot.document_id,
            original_hash=snapshot.original_hash or "",
            content_hash=content.content_hash,
            complete_hash=complete.complete_hash,
            fingerprint=complete.fingerprint,
            storage_path=path,
            fallback_document=content.fallback_document,
        )

    def _certified_document(self, envelope_id: int) -> Document:
        envelope = self.repo.get(Envelope, envelope_id)
        if envelope is None:
            raise NotFoundError("Envelope not found", entity_id=envelope_id)
        document = self.repo.get(Document, envelope.document_id)
        if document is None:
            raise NotFoundError("Document not found", entity_id=envelope.document_id)
        return document

    def artifact(self, envelope_id: int) -> bytes:
        document = self._certified_document(envelope_id)
        if not document.signed_pdf_path:
            raise NotFoundError("Envelope has not been certified", entity_id=envelope_id)
        return self.store.get(document.signed_pdf_path)

    def verify_artifact(self, envelope_id: int) -> IntegrityReport:
        document = self._certified_document(envelope_id)
        actual = None
        if document.signed_pdf_path:
            try:
                actual = sha256_bytes(self.store.get(document.signed_pdf_path))
            except NotFoundError:
                logger.warning("certified_artifact_missing", envelope_id=envelope_id, path=document.signed_pdf_path)
        return IntegrityReport(
            envelope_id=envelope_id,
            document_id=document.id,
            recorded_hash=document.signed_pdf_hash,
            actual_hash=actual,
            valid=bool(actual) and actual == document.signed_pdf_hash,
        )

    def render_certificate(self, envelope_id: int) -> bytes:
        envelope = self.repo.get(Envelope, envelope_id)
        if envelope is None:
            raise NotFoundError("Envelope not found", entity_id=envelope_id)
        document = self.repo.get(Document, envelope.document_id)
        return build_certificate(
            envelope,
            document,
            self.repo.signers_of(envelope_id),
            self.ledger.entries(envelope_id),
            self.compliance,
        )
