from fastapi import APIRouter, Depends, Response

from ..auth import require_admin
from ..deps import get_document_service, wallet_path
from ..payments import attach_payment_response, require_payment
from ..schemas import DocumentCreate, FieldsAdd, OwnerAction, PaymentInfo, RecipientsAdd
from ..services.documents import DocumentService

router = APIRouter()


@router.post("", status_code=201)
@router.post("/create", status_code=201)
def create_document(
    data: DocumentCreate,
    response: Response,
    payment: PaymentInfo = Depends(require_payment),
    service: DocumentService = Depends(get_document_service),
):
    result = service.create(data, payment)
    attach_payment_response(response, payment)
    return {"success": True, **result, "payment": payment.model_dump(by_alias=True)}


@router.get("/owner/{wallet}")
def list_owned_documents(
    wallet: str = Depends(wallet_path),
    service: DocumentService = Depends(get_document_service),
):
    docs = service.list_by_owner(wallet)
    return {"documents": docs, "count": len(docs)}


@router.get("/{document_id}")
def get_document(document_id: str, service: DocumentService = Depends(get_document_service)):
    return service.get(document_id)


@router.put("/{document_id}/fields")
def add_fields(document_id: str, payload: FieldsAdd, service: DocumentService = Depends(get_document_service)):
    return service.add_fields(document_id, payload.fields)


@router.put("/{document_id}/recipients")
def add_recipients(document_id: str, payload: RecipientsAdd,
                   service: DocumentService = Depends(get_document_service)):
    return service.add_recipients(document_id, payload.recipients)


@router.post("/{document_id}/distribute")
def distribute_document(document_id: str, service: DocumentService = Depends(get_document_service)):
    return service.distribute(document_id)


@router.post("/{document_id}/cancel")
def cancel_document(document_id: str, payload: OwnerAction,
                    service: DocumentService = Depends(get_document_service)):
    return service.cancel(document_id, payload.wallet_address)


@router.delete("/{document_id}")
def delete_document(document_id: str, payload: OwnerAction,
                    service: DocumentService = Depends(get_document_service)):
    return service.delete(document_id, payload.wallet_address)


@router.get("/{document_id}/audit")
def get_audit_trail(document_id: str, service: DocumentService = Depends(get_document_service)):
    return service.audit_trail(document_id)


@router.post("/{document_id}/finalize", dependencies=[Depends(require_admin)])
def finalize_document(document_id: str, service: DocumentService = Depends(get_document_service)):
    return service.retry_finalization(document_id)


@router.get("/{document_id}/preview")
def preview_document(document_id: str, service: DocumentService = Depends(get_document_service)):
    return Response(content=service.preview(document_id), media_type="application/pdf")


@router.get("/{document_id}/download")
def download_document(document_id: str, service: DocumentService = Depends(get_document_service)):
    pdf = service.download(document_id)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{document_id}.pdf"'},
    )
