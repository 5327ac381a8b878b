from io import BytesIO
from typing import Iterable, Optional

from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

from .compliance import ComplianceInfo
from .models import AuditLog, Document, Envelope, Signer

TOP = 750
BOTTOM = 72
LINE = 14
MAX_CHARS = 95


def _fmt(value) -> str:
    if value is None:
        return "-"
    if hasattr(value, "strftime"):
        return value.strftime("%Y-%m-%d %H:%M:%S UTC")
    return str(value)


class _Writer:
    """Top-down text cursor over a reportlab canvas with page breaks."""

    def __init__(self, c: canvas.Canvas):
        self.c = c
        self.y = TOP

    def line(self, text: str, font: str = "Helvetica", size: int = 10, gap: int = LINE):
        if self.y < BOTTOM:
            self.c.showPage()
            self.y = TOP
        self.c.setFont(font, size)
        self.c.drawString(72, self.y, text[:MAX_CHARS])
        self.y -= gap

    def heading(self, text: str):
        self.y -= 6
        self.line(text, font="Helvetica-Bold", size=12, gap=18)


def build_certificate(
    envelope: Envelope,
    document: Optional[Document],
    signers: Iterable[Signer],
    entries: Iterable[AuditLog],
    compliance: ComplianceInfo,
) -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=letter, invariant=1)
    out = _Writer(c)
    out.line("Certificate of Completion", font="Helvetica-Bold", size=14, gap=30)

    out.heading("Envelope")
    out.line(f"Envelope ID: {envelope.id}")
    out.line(f"Subject: {envelope.subject or '-'}")
    out.line(f"Status: {envelope.status.value}")
    out.line(f"Created: {_fmt(envelope.created_at)}")
    out.line(f"Completed: {_fmt(envelope.completed_at)}")

    out.heading("Document")
    if document is not None:
        out.line(f"File: {document.filename}")
        out.line(f"Original SHA-256: {document.original_hash or '-'}")
        out.line(f"Certified SHA-256: {document.signed_pdf_hash or '-'}")

    out.heading("Signers")
    for signer in signers:
        out.line(f"{signer.name} <{signer.email}> ({signer.role.value})")
        if signer.signed_at:
            out.line(f"    signed {_fmt(signer.signed_at)} from {signer.ip_address or 'unknown IP'}")
        elif signer.declined_at:
            out.line(f"    declined {_fmt(signer.declined_at)}: {signer.decline_reason or '-'}")
        else:
            out.line("    pending")

    out.heading("Audit Trail")
    for entry in entries:
        actor = entry.actor_email or entry.actor_role or "SYSTEM"
        out.line(f"{_fmt(entry.timestamp)}  {entry.event}  {actor}")
        out.line(f"    hash {entry.hash}", size=7, gap=12)

    out.heading("Legal Notice")
    out.line(compliance.jurisdiction)
    for law in compliance.applicable_laws:
        out.line(f"- {law}")

    c.showPage()
    c.save()
    return buf.getvalue()
