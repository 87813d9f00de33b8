"""Deal REST API routes.

Routes:
    POST   /api/v1/deals                          Propose a new deal
    GET    /api/v1/deals                          Deals the caller participates in
    GET    /api/v1/deals/admin                    Paginated search over all deals (admin)
    POST   /api/v1/deals/assign-user              Link invitations sent to the caller's email
    GET    /api/v1/deals/{id}                     Deal details
    GET    /api/v1/deals/{id}/status              Lightweight status check
    GET    /api/v1/deals/{id}/logs                Ingested vault events
    PATCH  /api/v1/deals/{id}                     Edit a proposal
    POST   /api/v1/deals/{id}/confirm             Approve a proposal
    POST   /api/v1/deals/{id}/cancel              Cancel a proposal
    POST   /api/v1/deals/{id}/retry-settlement    Re-open a pending settlement
    POST   /api/v1/deals/{id}/repaid              Close a finished deal
    POST   /api/v1/deals/{id}/publish             Push to the finance app
    POST   /api/v1/deals/{id}/viewed              Clear the caller's "new" flag
    POST   /api/v1/deals/{id}/documents/viewed    Clear the "new documents" flag
    POST   /api/v1/deals/{id}/documents           Attach a document
    DELETE /api/v1/deals/{id}/documents/{doc_id}  Remove a document
    DELETE /api/v1/deals/{id}                     Delete a deal (admin)
    POST   /api/v1/deals/{id}/nft                 Backfill an EVM linkage (admin)
    POST   /api/v1/deals/{id}/deposit-contract    Set the bridged deposit address (admin)
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Response

from deal_escrow.api.deps import (
    get_current_user,
    get_deal_service,
    require_admin,
)
from deal_escrow.domain.enums import DealStatus
from deal_escrow.infrastructure.database.orm_models import User
from deal_escrow.logging_config import get_logger
from deal_escrow.schemas.deal import (
    AddDocumentRequest,
    AssignDepositContractRequest,
    AssignNftRequest,
    CreateDealRequest,
    DealLogResponse,
    DealPageResponse,
    DealResponse,
    DealStatusResponse,
    DocumentResponse,
    UpdateDealRequest,
)
from deal_escrow.services.deal_service import DealService

router = APIRouter(prefix="/api/v1/deals", tags=["Deals"])
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Create and list
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=DealResponse,
    status_code=201,
    summary="Propose a new deal",
)
async def create_deal(
    request: CreateDealRequest,
    user: User = Depends(get_current_user),
    svc: DealService = Depends(get_deal_service),
) -> DealResponse:
    """Create a deal in PROPOSAL status with the caller's approval recorded."""
    deal = await svc.create_deal(user, request)
    return DealResponse.from_deal(deal, user.id)


@router.get(
    "",
    response_model=list[DealResponse],
    summary="Deals the caller participates in",
)
async def list_my_deals(
    status: DealStatus | None = Query(default=None),
    user: User = Depends(get_current_user),
    svc: DealService = Depends(get_deal_service),
) -> list[DealResponse]:
    deals = await svc.find_deals_by_user(user, status)
    return [DealResponse.from_deal(deal, user.id) for deal in deals]


@router.get(
    "/admin",
    response_model=DealPageResponse,
    summary="Search all deals",
)
async def paginate_deals(
    offset: int = Query(default=0, ge=0),
    status: DealStatus | None = Query(default=None),
    emails_search: str | None = Query(default=None, description="Participant email substring"),
    search: str | None = Query(default=None, description="Deal name substring"),
    admin: User = Depends(require_admin),
    svc: DealService = Depends(get_deal_service),
) -> DealPageResponse:
    deals, total = await svc.paginate(
        offset=offset, status=status, emails_search=emails_search, search=search
    )
    return DealPageResponse(
        items=[DealResponse.from_deal(deal, admin.id) for deal in deals],
        total=total,
        offset=offset,
        limit=svc.page_size,
    )


@router.post(
    "/assign-user",
    summary="Link pending invitations to the caller",
)
async def assign_user(
    user: User = Depends(get_current_user),
    svc: DealService = Depends(get_deal_service),
) -> dict:
    """Called after sign-up: entries invited by email now point at this user."""
    linked = await svc.assign_user_to_deals(user)
    return {"linked": linked}


# ---------------------------------------------------------------------------
# Read one
# ---------------------------------------------------------------------------


@router.get(
    "/{deal_id}",
    response_model=DealResponse,
    summary="Get deal details",
)
async def get_deal(
    deal_id: uuid.UUID,
    user: User = Depends(get_current_user),
    svc: DealService = Depends(get_deal_service),
) -> DealResponse:
    deal = await svc.find_user_deal(deal_id, user)
    return DealResponse.from_deal(deal, user.id)


@router.get(
    "/{deal_id}/status",
    response_model=DealStatusResponse,
    summary="Lightweight status check",
)
async def get_deal_status(
    deal_id: uuid.UUID,
    user: User = Depends(get_current_user),
    svc: DealService = Depends(get_deal_service),
) -> DealStatusResponse:
    await svc.find_user_deal(deal_id, user)
    return DealStatusResponse(**await svc.get_status(deal_id))


@router.get(
    "/{deal_id}/logs",
    response_model=list[DealLogResponse],
    summary="Vault activity",
)
async def get_deal_logs(
    deal_id: uuid.UUID,
    user: User = Depends(get_current_user),
    svc: DealService = Depends(get_deal_service),
) -> list[DealLogResponse]:
    await svc.find_user_deal(deal_id, user)
    logs = await svc.find_deal_logs(deal_id)
    return [DealLogResponse.model_validate(log) for log in logs]


# ---------------------------------------------------------------------------
# Proposal lifecycle
# ---------------------------------------------------------------------------


@router.patch(
    "/{deal_id}",
    response_model=DealResponse,
    summary="Edit a proposal",
)
async def update_deal(
    deal_id: uuid.UUID,
    request: UpdateDealRequest,
    user: User = Depends(get_current_user),
    svc: DealService = Depends(get_deal_service),
) -> DealResponse:
    """Apply the fields sent. Every other participant has to approve again."""
    deal = await svc.update_deal(deal_id, request.model_dump(exclude_unset=True), user)
    return DealResponse.from_deal(deal, user.id)


@router.post(
    "/{deal_id}/confirm",
    response_model=DealResponse,
    summary="Approve a proposal",
)
async def confirm_deal(
    deal_id: uuid.UUID,
    user: User = Depends(get_current_user),
    svc: DealService = Depends(get_deal_service),
) -> DealResponse:
    """Record the caller's approval. The last approval confirms the deal and opens settlement."""
    deal = await svc.confirm_deal(deal_id, user)
    return DealResponse.from_deal(deal, user.id)


@router.post(
    "/{deal_id}/cancel",
    response_model=DealResponse,
    summary="Cancel a proposal",
)
async def cancel_deal(
    deal_id: uuid.UUID,
    user: User = Depends(get_current_user),
    svc: DealService = Depends(get_deal_service),
) -> DealResponse:
    deal = await svc.cancel_deal(deal_id, user)
    return DealResponse.from_deal(deal, user.id)


@router.post(
    "/{deal_id}/retry-settlement",
    response_model=DealResponse,
    summary="Retry opening settlement",
)
async def retry_settlement(
    deal_id: uuid.UUID,
    user: User = Depends(get_current_user),
    svc: DealService = Depends(get_deal_service),
) -> DealResponse:
    deal = await svc.retry_settlement(deal_id, user)
    return DealResponse.from_deal(deal, user.id)


@router.post(
    "/{deal_id}/repaid",
    response_model=DealResponse,
    summary="Set a finished deal as repaid",
)
async def set_deal_as_repaid(
    deal_id: uuid.UUID,
    user: User = Depends(get_current_user),
    svc: DealService = Depends(get_deal_service),
) -> DealResponse:
    deal = await svc.set_deal_as_repaid(deal_id, user)
    return DealResponse.from_deal(deal, user.id)


@router.post(
    "/{deal_id}/publish",
    response_model=DealResponse,
    summary="Publish to the finance app",
)
async def publish_deal(
    deal_id: uuid.UUID,
    user: User = Depends(get_current_user),
    svc: DealService = Depends(get_deal_service),
) -> DealResponse:
    deal = await svc.publish_deal(deal_id, user)
    return DealResponse.from_deal(deal, user.id)


# ---------------------------------------------------------------------------
# Viewer state and documents
# ---------------------------------------------------------------------------


@router.post(
    "/{deal_id}/viewed",
    response_model=DealResponse,
    summary="Mark the deal as viewed",
)
async def set_deal_as_viewed(
    deal_id: uuid.UUID,
    user: User = Depends(get_current_user),
    svc: DealService = Depends(get_deal_service),
) -> DealResponse:
    deal = await svc.set_deal_as_viewed(deal_id, user)
    return DealResponse.from_deal(deal, user.id)


@router.post(
    "/{deal_id}/documents/viewed",
    response_model=DealResponse,
    summary="Mark the deal documents as viewed",
)
async def set_documents_as_viewed(
    deal_id: uuid.UUID,
    user: User = Depends(get_current_user),
    svc: DealService = Depends(get_deal_service),
) -> DealResponse:
    deal = await svc.set_documents_as_viewed(deal_id, user)
    return DealResponse.from_deal(deal, user.id)


@router.post(
    "/{deal_id}/documents",
    response_model=DocumentResponse,
    status_code=201,
    summary="Attach a document to the deal",
)
async def add_deal_document(
    deal_id: uuid.UUID,
    request: AddDocumentRequest,
    user: User = Depends(get_current_user),
    svc: DealService = Depends(get_deal_service),
) -> DocumentResponse:
    document = await svc.add_deal_document(
        deal_id,
        user,
        url=request.url,
        description=request.description,
        publicly_visible=request.publicly_visible,
    )
    return DocumentResponse.from_document(document, user.id)


@router.delete(
    "/{deal_id}/documents/{document_id}",
    status_code=204,
    summary="Remove a deal document",
)
async def remove_deal_document(
    deal_id: uuid.UUID,
    document_id: uuid.UUID,
    user: User = Depends(get_current_user),
    svc: DealService = Depends(get_deal_service),
) -> Response:
    await svc.remove_deal_document(deal_id, document_id, user)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


@router.delete(
    "/{deal_id}",
    status_code=204,
    summary="Delete a deal",
)
async def delete_deal(
    deal_id: uuid.UUID,
    admin: User = Depends(require_admin),
    svc: DealService = Depends(get_deal_service),
) -> Response:
    await svc.delete_deal(deal_id)
    logger.info("api.deal_deleted", deal_id=str(deal_id), by=str(admin.id))
    return Response(status_code=204)


@router.post(
    "/{deal_id}/nft",
    response_model=DealResponse,
    summary="Backfill the EVM settlement linkage",
)
async def assign_nft(
    deal_id: uuid.UUID,
    request: AssignNftRequest,
    admin: User = Depends(require_admin),
    svc: DealService = Depends(get_deal_service),
) -> DealResponse:
    deal = await svc.assign_nft_to_deal(
        deal_id,
        nft_id=request.nft_id,
        mint_tx_hash=request.mint_tx_hash,
        vault_address=request.vault_address,
    )
    return DealResponse.from_deal(deal, admin.id)


@router.post(
    "/{deal_id}/deposit-contract",
    response_model=DealResponse,
    summary="Set the bridged deposit address",
)
async def assign_deposit_contract(
    deal_id: uuid.UUID,
    request: AssignDepositContractRequest,
    admin: User = Depends(require_admin),
    svc: DealService = Depends(get_deal_service),
) -> DealResponse:
    deal = await svc.assign_deposit_contract(deal_id, request.deposit_contract_address)
    return DealResponse.from_deal(deal, admin.id)
