"""Deal and milestone state machine guards.

Uses python-statemachine to enforce legal transitions at the domain level.
Services instantiate a machine at the persisted status, fire the event, and
only then write the resulting status back to the ORM row. An illegal event
raises TransitionNotAllowed.

Deal transition table:
    PROPOSAL   -> PROPOSAL    (proposal_edited)
    PROPOSAL   -> CONFIRMED   (all_parties_approved, only when unanimous)
    PROPOSAL   -> CANCELLED   (proposal_cancelled)
    CONFIRMED  -> FINISHED    (final_milestone_approved)
    FINISHED   -> REPAID      (repayment_recorded)

Milestone approval table:
    PENDING    -> SUBMITTED   (review_requested)
    DENIED     -> SUBMITTED   (review_requested)
    SUBMITTED  -> APPROVED    (buyer_approves)
    SUBMITTED  -> DENIED      (buyer_denies)
"""

from __future__ import annotations

from statemachine import State, StateMachine


class _GuardMixin:
    """Shared construction and introspection for the guard machines."""

    def _validate_start(self, current_status: str) -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )

    @property
    def status(self) -> str:
        """Return the current state value as a string."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [event.name for event in self.allowed_events]


class DealStateMachine(_GuardMixin, StateMachine):
    """Guards the deal lifecycle.

    Usage:
        sm = DealStateMachine(current_status="PROPOSAL")
        sm.all_parties_approved(approvals=[True, True])
        sm.status  # "CONFIRMED"
    """

    # --- States ---
    PROPOSAL = State("PROPOSAL", initial=True)
    CONFIRMED = State("CONFIRMED")
    FINISHED = State("FINISHED")
    REPAID = State("REPAID", final=True)
    CANCELLED = State("CANCELLED", final=True)

    # --- Events / Transitions ---
    proposal_edited = PROPOSAL.to(PROPOSAL)
    all_parties_approved = PROPOSAL.to(CONFIRMED, cond="unanimous")
    proposal_cancelled = PROPOSAL.to(CANCELLED)
    final_milestone_approved = CONFIRMED.to(FINISHED)
    repayment_recorded = FINISHED.to(REPAID)

    def __init__(self, current_status: str = "PROPOSAL") -> None:
        self._validate_start(current_status)
        super().__init__(start_value=current_status)

    def unanimous(self, approvals: list[bool] | None = None) -> bool:
        """Every buyer and supplier entry has approved."""
        return all(approvals or [])


class MilestoneApprovalMachine(_GuardMixin, StateMachine):
    """Guards a single milestone's review cycle."""

    PENDING = State("PENDING", initial=True)
    SUBMITTED = State("SUBMITTED")
    APPROVED = State("APPROVED", final=True)
    DENIED = State("DENIED")

    review_requested = PENDING.to(SUBMITTED) | DENIED.to(SUBMITTED)
    buyer_approves = SUBMITTED.to(APPROVED)
    buyer_denies = SUBMITTED.to(DENIED)

    def __init__(self, current_status: str = "PENDING") -> None:
        self._validate_start(current_status)
        super().__init__(start_value=current_status)


def validate_transition(current_status: str, event_name: str, **event_kwargs) -> str:
    """Fire ``event_name`` on a temporary DealStateMachine and return the new status.

    Raises:
        TransitionNotAllowed: If the transition is illegal or its guard fails.
        ValueError: If the status or event name is invalid.
    """
    sm = DealStateMachine(current_status=current_status)

    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )

    event_method(**event_kwargs)
    return sm.status
