"""Milestone REST API routes.

Routes:
    PUT    /api/v1/deals/{id}/milestones/current                        Signed cursor advance
    POST   /api/v1/deals/{id}/milestones/{mid}/review-request           Supplier submits
    POST   /api/v1/deals/{id}/milestones/{mid}/approve                  Buyer approves (pays out)
    POST   /api/v1/deals/{id}/milestones/{mid}/deny                     Buyer denies
    POST   /api/v1/deals/{id}/milestones/{mid}/documents                Attach a document
    PATCH  /api/v1/deals/{id}/milestones/{mid}/documents/{doc}          Edit a document
    POST   /api/v1/deals/{id}/milestones/{mid}/documents/{doc}/viewed   Mark as seen
    DELETE /api/v1/deals/{id}/milestones/{mid}/documents/{doc}          Remove a document
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Response

from deal_escrow.api.deps import get_current_user, get_milestone_service
from deal_escrow.infrastructure.database.orm_models import User
from deal_escrow.schemas.deal import (
    AddDocumentRequest,
    DealResponse,
    DocumentResponse,
    MilestoneResponse,
    UpdateCurrentMilestoneRequest,
    UpdateDocumentRequest,
)
from deal_escrow.services.milestone_service import MilestoneService

router = APIRouter(prefix="/api/v1/deals/{deal_id}/milestones", tags=["Milestones"])


@router.put(
    "/current",
    response_model=DealResponse,
    summary="Advance the current milestone",
)
async def update_current_milestone(
    deal_id: uuid.UUID,
    request: UpdateCurrentMilestoneRequest,
    user: User = Depends(get_current_user),
    svc: MilestoneService = Depends(get_milestone_service),
) -> DealResponse:
    """Pay out the previous milestone and move the cursor. Requires the buyer's wallet signature."""
    deal = await svc.update_current_milestone(
        deal_id, request.current_milestone, request.signature, user
    )
    return DealResponse.from_deal(deal, user.id)


# ---------------------------------------------------------------------------
# Review cycle
# ---------------------------------------------------------------------------


@router.post(
    "/{milestone_id}/review-request",
    response_model=MilestoneResponse,
    summary="Submit the current milestone for review",
)
async def submit_review_request(
    deal_id: uuid.UUID,
    milestone_id: uuid.UUID,
    user: User = Depends(get_current_user),
    svc: MilestoneService = Depends(get_milestone_service),
) -> MilestoneResponse:
    milestone = await svc.submit_milestone_review_request(deal_id, milestone_id, user)
    return MilestoneResponse.from_milestone(milestone, user.id)


@router.post(
    "/{milestone_id}/approve",
    response_model=MilestoneResponse,
    summary="Approve the current milestone",
)
async def approve_milestone(
    deal_id: uuid.UUID,
    milestone_id: uuid.UUID,
    user: User = Depends(get_current_user),
    svc: MilestoneService = Depends(get_milestone_service),
) -> MilestoneResponse:
    milestone = await svc.approve_milestone(deal_id, milestone_id, user)
    return MilestoneResponse.from_milestone(milestone, user.id)


@router.post(
    "/{milestone_id}/deny",
    response_model=MilestoneResponse,
    summary="Deny the current milestone",
)
async def deny_milestone(
    deal_id: uuid.UUID,
    milestone_id: uuid.UUID,
    user: User = Depends(get_current_user),
    svc: MilestoneService = Depends(get_milestone_service),
) -> MilestoneResponse:
    milestone = await svc.deny_milestone(deal_id, milestone_id, user)
    return MilestoneResponse.from_milestone(milestone, user.id)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


@router.post(
    "/{milestone_id}/documents",
    response_model=DocumentResponse,
    status_code=201,
    summary="Attach a document to the current milestone",
)
async def add_milestone_document(
    deal_id: uuid.UUID,
    milestone_id: uuid.UUID,
    request: AddDocumentRequest,
    user: User = Depends(get_current_user),
    svc: MilestoneService = Depends(get_milestone_service),
) -> DocumentResponse:
    document = await svc.add_milestone_document(
        deal_id,
        milestone_id,
        user,
        url=request.url,
        description=request.description,
        publicly_visible=request.publicly_visible,
    )
    return DocumentResponse.from_document(document, user.id)


@router.patch(
    "/{milestone_id}/documents/{document_id}",
    response_model=DocumentResponse,
    summary="Edit a milestone document",
)
async def update_milestone_document(
    deal_id: uuid.UUID,
    milestone_id: uuid.UUID,
    document_id: uuid.UUID,
    request: UpdateDocumentRequest,
    user: User = Depends(get_current_user),
    svc: MilestoneService = Depends(get_milestone_service),
) -> DocumentResponse:
    document = await svc.update_milestone_document(
        deal_id,
        milestone_id,
        document_id,
        request.model_dump(exclude_unset=True),
        user,
    )
    return DocumentResponse.from_document(document, user.id)


@router.post(
    "/{milestone_id}/documents/{document_id}/viewed",
    response_model=DocumentResponse,
    summary="Mark a milestone document as seen",
)
async def set_milestone_document_as_viewed(
    deal_id: uuid.UUID,
    milestone_id: uuid.UUID,
    document_id: uuid.UUID,
    user: User = Depends(get_current_user),
    svc: MilestoneService = Depends(get_milestone_service),
) -> DocumentResponse:
    document = await svc.set_milestone_document_as_viewed(
        deal_id, milestone_id, document_id, user
    )
    return DocumentResponse.from_document(document, user.id)


@router.delete(
    "/{milestone_id}/documents/{document_id}",
    status_code=204,
    summary="Remove a milestone document",
)
async def remove_milestone_document(
    deal_id: uuid.UUID,
    milestone_id: uuid.UUID,
    document_id: uuid.UUID,
    user: User = Depends(get_current_user),
    svc: MilestoneService = Depends(get_milestone_service),
) -> Response:
    await svc.remove_milestone_document(deal_id, milestone_id, document_id, user)
    return Response(status_code=204)
