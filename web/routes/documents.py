"""Document delivery route."""

from fastapi import APIRouter, Depends

from courier.services.delivery import DeliveryCoordinator, DeliveryStatus
from web.dependencies import get_coordinator
from web.models import DocumentRequest, DocumentResponse

router = APIRouter(prefix="/api/documents", tags=["documents"])


@router.post("", response_model=DocumentResponse)
async def send_document(
    body: DocumentRequest,
    coordinator: DeliveryCoordinator = Depends(get_coordinator),
) -> DocumentResponse:
    """
    Send a document now, or queue it until the transport is ready.

    A failed delivery is reported in the response; it does not fail the request.
    """
    outcome = await coordinator.send_document(
        body.target,
        body.document_bytes(),
        body.filename,
        caption=body.caption,
        mimetype=body.mimetype,
        wait_timeout=body.wait_timeout,
    )
    return DocumentResponse(
        accepted=outcome.status is not DeliveryStatus.FAILED,
        delivery=outcome.to_dict(),
    )
