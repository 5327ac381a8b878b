from typing import Optional
from fastapi import APIRouter, Depends, Header, Request, Response

from ..deps import Services, get_services
from ..errors import NotFoundError
from ..models import Document, EnvelopeStatus
from ..schemas import CodeSubmit, DeclineRequest, SignatureInput, SigningMetadata

router = APIRouter()


def _metadata(request: Request) -> SigningMetadata:
    return SigningMetadata(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        geo=request.headers.get("X-Client-Geo"),
    )


@router.get("/{token}")
def load_signing_request(token: str, request: Request, services: Services = Depends(get_services)):
    signer = services.verification.locate(token)
    envelope = services.workflow.mark_viewed(signer.envelope_id, signer.id, _metadata(request))
    view = services.workflow.view(envelope.id)
    compliance = services.workflow.compliance
    return {
        "envelope": view,
        "signer": next(s for s in view.signers if s.id == signer.id),
        "fields": [f for f in services.workflow.fields(envelope.id) if f.signer_id == signer.id],
        "consent_text": compliance.consent_text,
        "legal_notice": compliance.legal_notice,
    }


@router.get("/{token}/pdf")
def get_original_pdf(token: str, services: Services = Depends(get_services)):
    signer = services.verification.locate(token)
    envelope = services.workflow.get(signer.envelope_id)
    doc = services.repo.get(Document, envelope.document_id)
    if doc is None:
        raise NotFoundError("Document not found", entity_id=envelope.document_id)
    return Response(content=services.store.get(doc.storage_path), media_type="application/pdf")


@router.post("/{token}/code")
def request_code(token: str, services: Services = Depends(get_services)):
    signer = services.verification.locate(token)
    return services.verification.initiate_verification(signer.id)


@router.post("/{token}/verify")
def verify_code(token: str, payload: CodeSubmit, services: Services = Depends(get_services)):
    signer = services.verification.locate(token)
    return services.verification.verify_code(signer.id, payload.code)


@router.post("/{token}/sign")
def sign(
    token: str,
    payload: SignatureInput,
    request: Request,
    x_signer_session: Optional[str] = Header(default=None, alias="X-Signer-Session"),
    services: Services = Depends(get_services),
):
    signer = services.verification.locate(token)
    envelope = services.workflow.record_signature(
        signer.envelope_id, signer.id, x_signer_session, payload, _metadata(request)
    )
    return {"ok": True, "status": envelope.status.value, "completed": envelope.status == EnvelopeStatus.COMPLETED}


@router.post("/{token}/decline")
def decline(token: str, payload: DeclineRequest, request: Request, services: Services = Depends(get_services)):
    signer = services.verification.locate(token)
    envelope = services.workflow.decline(signer.envelope_id, signer.id, payload.reason, _metadata(request))
    return {"ok": True, "status": envelope.status.value}


@router.post("/{token}/logout")
def end_session(token: str, services: Services = Depends(get_services)):
    signer = services.verification.locate(token)
    return {"ok": services.verification.end_session(signer.id)}


@router.get("/{token}/signed-pdf")
def get_signed_pdf(token: str, services: Services = Depends(get_services)):
    signer = services.verification.locate(token)
    return Response(content=services.certification.artifact(signer.envelope_id), media_type="application/pdf")
