"""Tests for the participant predicates."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field

import pytest

from deal_escrow.domain.authorization import (
    all_participants_approved,
    check_deal_access,
    check_deal_buyer,
    check_deal_supplier,
    is_participant,
    notification_recipients,
)
from deal_escrow.domain.exceptions import UnauthorizedError

BUYER_ID = uuid.uuid4()
SUPPLIER_ID = uuid.uuid4()
STRANGER_ID = uuid.uuid4()


@dataclass
class Entry:
    email: str
    user_id: uuid.UUID | None = None
    approved: bool = False


@dataclass
class FakeDeal:
    buyers: list[Entry] = field(default_factory=list)
    suppliers: list[Entry] = field(default_factory=list)


def _deal() -> FakeDeal:
    return FakeDeal(
        buyers=[Entry("b@example.com", BUYER_ID, approved=True)],
        suppliers=[
            Entry("s@example.com", SUPPLIER_ID),
            Entry("invited@example.com"),
        ],
    )


class TestMembership:
    def test_registered_entries_are_participants(self) -> None:
        deal = _deal()
        assert is_participant(deal, BUYER_ID)
        assert is_participant(deal, SUPPLIER_ID)
        assert not is_participant(deal, STRANGER_ID)

    def test_access_check_raises_for_stranger(self) -> None:
        with pytest.raises(UnauthorizedError):
            check_deal_access(_deal(), STRANGER_ID)

    def test_buyer_check(self) -> None:
        check_deal_buyer(_deal(), BUYER_ID)
        with pytest.raises(UnauthorizedError, match="Only buyer"):
            check_deal_buyer(_deal(), SUPPLIER_ID, "Only buyer can approve milestone")

    def test_supplier_check(self) -> None:
        check_deal_supplier(_deal(), SUPPLIER_ID)
        with pytest.raises(UnauthorizedError):
            check_deal_supplier(_deal(), BUYER_ID)


class TestApprovals:
    def test_unregistered_entries_count_toward_unanimity(self) -> None:
        deal = _deal()
        deal.suppliers[0].approved = True
        assert not all_participants_approved(deal)

        deal.suppliers[1].approved = True
        assert all_participants_approved(deal)


class TestRecipients:
    def test_actor_is_excluded(self) -> None:
        recipients = notification_recipients(_deal(), exclude_email="b@example.com")
        assert recipients == ["s@example.com", "invited@example.com"]

    def test_duplicates_are_dropped(self) -> None:
        deal = _deal()
        deal.suppliers.append(Entry("b@example.com", BUYER_ID))
        assert notification_recipients(deal) == [
            "b@example.com",
            "s@example.com",
            "invited@example.com",
        ]
