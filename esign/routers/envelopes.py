from fastapi import APIRouter, Depends, Response

from ..audit import Actor
from ..auth import current_owner
from ..deps import Services, get_services
from ..models import User
from ..schemas import EnvelopeCreate, FieldPlacement, SignerCreate, SignerView, VoidRequest

router = APIRouter()


def _owner_actor(owner: User) -> Actor:
    return Actor(email=owner.email, role="OWNER")


@router.post("")
def create_envelope(
    data: EnvelopeCreate,
    owner: User = Depends(current_owner),
    services: Services = Depends(get_services),
):
    env = services.workflow.create(owner.id, data.document_id, data.subject, data.message, actor=_owner_actor(owner))
    return services.workflow.view(env.id, owner.id)


@router.get("/{envelope_id}")
def get_envelope(
    envelope_id: int,
    owner: User = Depends(current_owner),
    services: Services = Depends(get_services),
):
    return services.workflow.view(envelope_id, owner.id)


@router.post("/{envelope_id}/signers")
def add_signer(
    envelope_id: int,
    data: SignerCreate,
    owner: User = Depends(current_owner),
    services: Services = Depends(get_services),
):
    signer = services.workflow.add_signer(envelope_id, data, owner.id, actor=_owner_actor(owner))
    return SignerView(
        id=signer.id,
        name=signer.name,
        email=signer.email,
        role=signer.role,
        routing_order=signer.routing_order,
        signing_link=services.workflow.signing_link(signer),
    )


@router.post("/{envelope_id}/fields")
def add_field(
    envelope_id: int,
    data: FieldPlacement,
    owner: User = Depends(current_owner),
    services: Services = Depends(get_services),
):
    return services.workflow.add_field(envelope_id, data, owner.id, actor=_owner_actor(owner))


@router.get("/{envelope_id}/fields")
def list_fields(
    envelope_id: int,
    owner: User = Depends(current_owner),
    services: Services = Depends(get_services),
):
    services.workflow.get(envelope_id, owner.id)
    return services.workflow.fields(envelope_id)


@router.get("/{envelope_id}/fields/validate")
def validate_fields(
    envelope_id: int,
    owner: User = Depends(current_owner),
    services: Services = Depends(get_services),
):
    services.workflow.get(envelope_id, owner.id)
    return services.workflow.validate_fields(envelope_id)


@router.post("/{envelope_id}/send")
def send_envelope(
    envelope_id: int,
    owner: User = Depends(current_owner),
    services: Services = Depends(get_services),
):
    services.workflow.send(envelope_id, owner.id, actor=_owner_actor(owner))
    return services.workflow.view(envelope_id, owner.id)


@router.post("/{envelope_id}/void")
def void_envelope(
    envelope_id: int,
    payload: VoidRequest,
    owner: User = Depends(current_owner),
    services: Services = Depends(get_services),
):
    services.workflow.void(envelope_id, owner.id, payload.reason, actor=_owner_actor(owner))
    return services.workflow.view(envelope_id, owner.id)


@router.post("/{envelope_id}/recompute")
def recompute_status(
    envelope_id: int,
    owner: User = Depends(current_owner),
    services: Services = Depends(get_services),
):
    services.workflow.get(envelope_id, owner.id)
    services.workflow.recompute_status(envelope_id, actor=_owner_actor(owner))
    return services.workflow.view(envelope_id, owner.id)


@router.get("/{envelope_id}/audit")
def audit_trail(
    envelope_id: int,
    owner: User = Depends(current_owner),
    services: Services = Depends(get_services),
):
    services.workflow.get(envelope_id, owner.id)
    entries = services.ledger.entries(envelope_id)
    return {
        "chain": services.ledger.verify_chain(envelope_id),
        "entries": [
            {
                "id": e.id,
                "timestamp": e.timestamp,
                "event": e.event,
                "actor_email": e.actor_email,
                "actor_role": e.actor_role,
                "ip_address": e.ip_address,
                "details": e.details,
                "hash": e.hash,
            }
            for e in entries
        ],
    }


@router.post("/{envelope_id}/certify")
def certify_envelope(
    envelope_id: int,
    owner: User = Depends(current_owner),
    services: Services = Depends(get_services),
):
    services.workflow.get(envelope_id, owner.id)
    return services.certification.certify(envelope_id)


@router.get("/{envelope_id}/verify")
def verify_artifact(
    envelope_id: int,
    owner: User = Depends(current_owner),
    services: Services = Depends(get_services),
):
    services.workflow.get(envelope_id, owner.id)
    return services.certification.verify_artifact(envelope_id)


@router.get("/{envelope_id}/signed-pdf")
def download_signed_pdf(
    envelope_id: int,
    owner: User = Depends(current_owner),
    services: Services = Depends(get_services),
):
    services.workflow.get(envelope_id, owner.id)
    return Response(
        content=services.certification.artifact(envelope_id),
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="envelope-{envelope_id}-signed.pdf"'},
    )


@router.get("/{envelope_id}/certificate")
def download_certificate(
    envelope_id: int,
    owner: User = Depends(current_owner),
    services: Services = Depends(get_services),
):
    services.workflow.get(envelope_id, owner.id)
    return Response(
        content=services.certification.render_certificate(envelope_id),
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="envelope-{envelope_id}-certificate.pdf"'},
    )
