"""Participant predicates for deal operations.

Membership is decided on participant user ids; entries without a user id
(invited but not yet registered) never authorise anyone. Functions accept
any object exposing ``buyers`` and ``suppliers`` sequences of participants,
so they work on ORM rows and plain test doubles alike.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from deal_escrow.domain.exceptions import UnauthorizedError

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable, Sequence


class ParticipantLike(Protocol):
    user_id: uuid.UUID | None
    email: str
    approved: bool


class DealLike(Protocol):
    @property
    def buyers(self) -> Sequence[ParticipantLike]: ...

    @property
    def suppliers(self) -> Sequence[ParticipantLike]: ...


def _ids(participants: Iterable[ParticipantLike]) -> set[uuid.UUID]:
    return {p.user_id for p in participants if p.user_id is not None}


def buyer_ids(deal: DealLike) -> set[uuid.UUID]:
    return _ids(deal.buyers)


def supplier_ids(deal: DealLike) -> set[uuid.UUID]:
    return _ids(deal.suppliers)


def participant_ids(deal: DealLike) -> set[uuid.UUID]:
    return buyer_ids(deal) | supplier_ids(deal)


def is_participant(deal: DealLike, user_id: uuid.UUID) -> bool:
    return user_id in participant_ids(deal)


def check_deal_access(
    deal: DealLike,
    user_id: uuid.UUID,
    message: str = "You are not allowed to access this deal information",
) -> None:
    if not is_participant(deal, user_id):
        raise UnauthorizedError(message)


def check_deal_buyer(
    deal: DealLike,
    user_id: uuid.UUID,
    message: str = "Only a deal buyer can do this operation on this deal",
) -> None:
    if user_id not in buyer_ids(deal):
        raise UnauthorizedError(message)


def check_deal_supplier(
    deal: DealLike,
    user_id: uuid.UUID,
    message: str = "Only a deal supplier can do this operation on this deal",
) -> None:
    if user_id not in supplier_ids(deal):
        raise UnauthorizedError(message)


def all_participants_approved(deal: DealLike) -> bool:
    """Unanimity over every entry, registered or not."""
    return all(p.approved for p in [*deal.buyers, *deal.suppliers])


def notification_recipients(deal: DealLike, exclude_email: str | None = None) -> list[str]:
    """Participant emails in deal order, de-duplicated, minus the actor."""
    recipients: list[str] = []
    for participant in [*deal.buyers, *deal.suppliers]:
        email = participant.email
        if email == exclude_email or email in recipients:
            continue
        recipients.append(email)
    return recipients
