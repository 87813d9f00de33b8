"""Domain exceptions for the Deal Escrow service.

These exceptions are framework-agnostic and represent business rule violations.
Each family carries the HTTP status the API layer's middleware renders it with:

    BadRequestError      400  invalid state, precondition or input
    UnauthorizedError    401  caller lacks the participant role required
    ForbiddenError       403  bad signature or locked milestone
    InternalServerError  500  missing configuration or backend failure
"""


class DealEscrowError(Exception):
    """Base exception for all domain errors."""

    status_code = 400

    def __init__(self, message: str, code: str = "DEAL_ESCROW_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- 400 ---


class BadRequestError(DealEscrowError):
    """Invalid state, precondition failure, or malformed input."""

    def __init__(self, message: str, code: str = "BAD_REQUEST") -> None:
        super().__init__(message=message, code=code)


class DealNotFoundError(BadRequestError):
    def __init__(self, deal_id: str) -> None:
        super().__init__(message=f"Deal not found: {deal_id}", code="DEAL_NOT_FOUND")
        self.deal_id = deal_id


class UserNotFoundError(BadRequestError):
    def __init__(self, identifier: str) -> None:
        super().__init__(message=f"User not found: {identifier}", code="USER_NOT_FOUND")


class InvalidDealStateError(BadRequestError):
    """Raised when an operation requires a different deal status.

    Example: cancelling a deal that is already CONFIRMED.
    """

    def __init__(self, message: str, current_status: str | None = None) -> None:
        super().__init__(message=message, code="INVALID_DEAL_STATE")
        self.current_status = current_status


class EmptyUpdateError(BadRequestError):
    def __init__(self) -> None:
        super().__init__(message="No data to update", code="EMPTY_UPDATE")


class MilestoneNotFoundError(BadRequestError):
    def __init__(self, milestone_id: str) -> None:
        super().__init__(message="Milestone not found", code="MILESTONE_NOT_FOUND")
        self.milestone_id = milestone_id


class NotCurrentMilestoneError(BadRequestError):
    def __init__(self) -> None:
        super().__init__(
            message="Milestone is not the current milestone",
            code="NOT_CURRENT_MILESTONE",
        )


class InvalidMilestoneTransitionError(BadRequestError):
    """Raised when a milestone's approval status does not allow the action."""

    def __init__(self, message: str, current_status: str) -> None:
        super().__init__(message=message, code="INVALID_MILESTONE_TRANSITION")
        self.current_status = current_status


class WrongNextMilestoneError(BadRequestError):
    """Raised when the requested milestone is not exactly the next one."""

    def __init__(self, expected_index: int) -> None:
        super().__init__(
            message=(
                "Cannot update milestone. "
                f"The next milestone to update is Milestone {expected_index}"
            ),
            code="WRONG_NEXT_MILESTONE",
        )
        self.expected_index = expected_index


class SettlementNotLinkedError(BadRequestError):
    def __init__(self) -> None:
        super().__init__(
            message="Deal NFT must be minted first",
            code="SETTLEMENT_NOT_LINKED",
        )


class SettlementAlreadyLinkedError(BadRequestError):
    def __init__(self, deal_id: str) -> None:
        super().__init__(
            message=f"Deal {deal_id} already has a settlement linkage",
            code="SETTLEMENT_ALREADY_LINKED",
        )


class DocumentNotFoundError(BadRequestError):
    def __init__(self, document_id: str) -> None:
        super().__init__(message=f"Document not found: {document_id}", code="DOCUMENT_NOT_FOUND")


class DocumentAlreadySeenError(BadRequestError):
    def __init__(self) -> None:
        super().__init__(message="Document already seen", code="DOCUMENT_ALREADY_SEEN")


class InsufficientSharesError(BadRequestError):
    def __init__(self, current: str, requested: str) -> None:
        super().__init__(
            message=f"Insufficient shares. Current: {current}, Requested: {requested}",
            code="INSUFFICIENT_SHARES",
        )
        self.current = current
        self.requested = requested


class LedgerWalletMissingError(BadRequestError):
    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="LEDGER_WALLET_MISSING")


class ConfirmDealError(BadRequestError):
    """Generic wrapper for unexpected failures inside confirm_deal."""

    def __init__(self) -> None:
        super().__init__(message="Failed to confirm deal", code="CONFIRM_DEAL_FAILED")


class RepayDealError(BadRequestError):
    def __init__(self) -> None:
        super().__init__(message="Failed to set deal as repaid", code="REPAY_DEAL_FAILED")


class PublishDealError(BadRequestError):
    def __init__(self) -> None:
        super().__init__(message="Failed to publish deal", code="PUBLISH_DEAL_FAILED")


# --- 401 ---


class UnauthorizedError(DealEscrowError):
    """Caller is not a participant with the role the operation requires."""

    status_code = 401

    def __init__(self, message: str, code: str = "UNAUTHORIZED") -> None:
        super().__init__(message=message, code=code)


# --- 403 ---


class ForbiddenError(DealEscrowError):
    status_code = 403

    def __init__(self, message: str, code: str = "FORBIDDEN") -> None:
        super().__init__(message=message, code=code)


class InvalidSignatureError(ForbiddenError):
    def __init__(self) -> None:
        super().__init__(message="Invalid signature", code="INVALID_SIGNATURE")


# --- 500 ---


class InternalServerError(DealEscrowError):
    status_code = 500

    def __init__(self, message: str, code: str = "INTERNAL_SERVER_ERROR") -> None:
        super().__init__(message=message, code=code)


class MissingConfigurationError(InternalServerError):
    def __init__(self, setting: str) -> None:
        super().__init__(message=f"{setting} missing in config", code="MISSING_CONFIGURATION")
        self.setting = setting


class SettlementError(InternalServerError):
    """Raised when a settlement backend call fails or exhausts its retries."""

    def __init__(self, message: str, tx_hash: str | None = None) -> None:
        super().__init__(message=message, code="SETTLEMENT_ERROR")
        self.tx_hash = tx_hash


class FinanceReportingError(InternalServerError):
    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="FINANCE_REPORTING_ERROR")
