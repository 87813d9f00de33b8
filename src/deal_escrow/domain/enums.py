"""Domain enumerations for the Deal Escrow service.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class DealStatus(enum.StrEnum):
    """Lifecycle states of a deal.

    Transitions are enforced by DealStateMachine.
    See domain/state_machine.py for the transition table.
    """

    PROPOSAL = "PROPOSAL"
    CONFIRMED = "CONFIRMED"
    FINISHED = "FINISHED"
    REPAID = "REPAID"
    CANCELLED = "CANCELLED"


class MilestoneApprovalStatus(enum.StrEnum):
    """Review state of a single milestone (see MilestoneApprovalMachine)."""

    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    DENIED = "DENIED"


class MilestoneStatus(enum.StrEnum):
    """Progress marker shown to participants; does not gate any transition."""

    IN_PROGRESS = "IN_PROGRESS"
    NOT_COMPLETED = "NOT_COMPLETED"
    COMPLETED = "COMPLETED"


class SettlementKind(enum.StrEnum):
    """Which settlement backend holds a deal's escrowed value.

    Recorded on the deal at creation time and used for every later dispatch.
    """

    EVM_CONTRACT = "EVM_CONTRACT"
    LEDGER_IOU = "LEDGER_IOU"


class SettlementState(enum.StrEnum):
    """Progress of a deal's settlement linkage.

    NONE       -> nothing opened yet (or automatic acceptance disabled)
    PENDING    -> confirmation succeeded but the backend call failed; retryable
    ACTIVE     -> linkage attached, milestones can be paid out
    COMPLETED  -> deal repaid and marked completed on the backend
    """

    NONE = "NONE"
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class ParticipantRole(enum.StrEnum):
    BUYER = "BUYER"
    SUPPLIER = "SUPPLIER"


class AccountType(enum.StrEnum):
    """The kind of account a user registered with."""

    BUYER = "BUYER"
    SUPPLIER = "SUPPLIER"
    INVESTOR = "INVESTOR"


class UserRole(enum.StrEnum):
    REGULAR = "REGULAR"
    ADMIN = "ADMIN"


class LogSyncJobType(enum.StrEnum):
    VAULT = "VAULT"


class NotificationEvent(enum.StrEnum):
    """Events emitted to deal participants.

    Delivery is best-effort: a failed notification never aborts the
    operation that produced it.
    """

    INVITE_TO_SIGNUP = "invite-to-signup"
    NEW_PROPOSAL = "new-proposal"
    PROPOSAL_CANCELLED = "proposal-cancelled"
    CHANGES_IN_PROPOSAL = "changes-in-proposal"
    DEAL_CONFIRMED = "deal-confirmed"
    MILESTONE_APPROVAL_REQUESTED = "milestone-approval-requested"
    MILESTONE_APPROVED = "milestone-approved"
    MILESTONE_DENIED = "milestone-denied"
    MILESTONE_DOCUMENT_UPLOADED = "milestone-document-uploaded"
    DEAL_COMPLETED = "deal-completed"
    NEW_DOCUMENT_UPLOADED = "new-document-uploaded"
