from fastapi import APIRouter, Depends, File, HTTPException, Response, UploadFile

from ..auth import current_owner
from ..deps import Services, get_services
from ..models import Document, User
from ..utils import sha256_bytes, utcnow

router = APIRouter()


@router.post("")
async def upload_document(
    file: UploadFile = File(...),
    owner: User = Depends(current_owner),
    services: Services = Depends(get_services),
):
    data = await file.read()
    if not data:
        raise HTTPException(422, "empty upload")
    doc = services.repo.create(
        Document(
            owner_id=owner.id,
            filename=file.filename or "document.pdf",
            storage_path="pending",
            mime_type=file.content_type or "application/pdf",
            size_bytes=len(data),
            original_hash=sha256_bytes(data),
        )
    )
    key = f"documents/{owner.id}/{doc.id}-{doc.filename}"
    services.store.put(key, data, content_type=doc.mime_type)
    return services.repo.update(Document, doc.id, storage_path=key, updated_at=utcnow())


@router.get("/{document_id}")
def get_document(
    document_id: int,
    owner: User = Depends(current_owner),
    services: Services = Depends(get_services),
):
    doc = services.repo.get(Document, document_id)
    if not doc or doc.owner_id != owner.id:
        raise HTTPException(404, "document not found")
    return doc


@router.get("/{document_id}/pdf")
def download_document_pdf(
    document_id: int,
    owner: User = Depends(current_owner),
    services: Services = Depends(get_services),
):
    doc = services.repo.get(Document, document_id)
    if not doc or doc.owner_id != owner.id:
        raise HTTPException(404, "document not found")
    return Response(
        content=services.store.get(doc.storage_path),
        media_type=doc.mime_type,
        headers={"Content-Disposition": f'attachment; filename="{doc.filename}"'},
    )
