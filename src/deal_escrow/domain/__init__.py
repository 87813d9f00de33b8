"""Domain layer: pure business logic with zero framework dependencies."""

from deal_escrow.domain.enums import (
    DealStatus,
    MilestoneApprovalStatus,
    NotificationEvent,
    SettlementKind,
    SettlementState,
)
from deal_escrow.domain.exceptions import (
    BadRequestError,
    DealEscrowError,
    DealNotFoundError,
    ForbiddenError,
    InternalServerError,
    UnauthorizedError,
)
from deal_escrow.domain.settlement_protocol import (
    DealTerms,
    MilestoneRelease,
    SettlementBackend,
    SettlementLinkage,
)
from deal_escrow.domain.state_machine import (
    DealStateMachine,
    MilestoneApprovalMachine,
    validate_transition,
)

__all__ = [
    "DealStatus",
    "MilestoneApprovalStatus",
    "NotificationEvent",
    "SettlementKind",
    "SettlementState",
    "BadRequestError",
    "DealEscrowError",
    "DealNotFoundError",
    "ForbiddenError",
    "InternalServerError",
    "UnauthorizedError",
    "DealTerms",
    "MilestoneRelease",
    "SettlementBackend",
    "SettlementLinkage",
    "DealStateMachine",
    "MilestoneApprovalMachine",
    "validate_transition",
]
