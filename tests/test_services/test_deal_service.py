"""Tests for the deal lifecycle (create, confirm, edit, repay, publish).

Runs against SQLite and the simulated settlement backends.
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from deal_escrow.domain.enums import AccountType, DealStatus, SettlementKind, SettlementState
from deal_escrow.domain.exceptions import (
    DealNotFoundError,
    DocumentNotFoundError,
    EmptyUpdateError,
    InvalidDealStateError,
    PublishDealError,
    SettlementAlreadyLinkedError,
    SettlementError,
    UnauthorizedError,
)
from deal_escrow.infrastructure.database.orm_models import User
from deal_escrow.infrastructure.database.repositories import LogSyncJobRepository
from deal_escrow.infrastructure.finance_app import FinanceAppClient
from deal_escrow.services.deal_service import DealService


class TestCreate:
    @pytest.mark.asyncio
    async def test_creator_is_pre_approved(
        self, make_services, evm_registry, buyer, supplier, payload
    ) -> None:
        deals, _ = make_services(evm_registry)
        deal = await deals.create_deal(buyer, payload())

        assert deal.status == DealStatus.PROPOSAL
        assert deal.settlement_kind == SettlementKind.EVM_CONTRACT
        assert deal.settlement_state == SettlementState.NONE
        assert [p.approved for p in deal.buyers] == [True]
        assert [(p.approved, p.is_new) for p in deal.suppliers] == [(False, True)]
        assert deal.suppliers[0].user_id == supplier.id
        assert deal.suppliers[0].wallet_address == supplier.wallet_address

    @pytest.mark.asyncio
    async def test_milestones_are_ordered(
        self, make_services, evm_registry, buyer, supplier, payload
    ) -> None:
        deals, _ = make_services(evm_registry)
        deal = await deals.create_deal(buyer, payload())

        assert deal.milestone_percentages == [10, 10, 10, 10, 10, 10, 40]
        assert deal.milestones[0].status == "IN_PROGRESS"
        assert {m.status for m in deal.milestones[1:]} == {"NOT_COMPLETED"}
        assert deal.current_milestone == 0

    @pytest.mark.asyncio
    async def test_kind_follows_registry(
        self, make_services, ledger_registry, buyer, supplier, payload
    ) -> None:
        deals, _ = make_services(ledger_registry)
        deal = await deals.create_deal(buyer, payload())
        assert deal.settlement_kind == SettlementKind.LEDGER_IOU

    @pytest.mark.asyncio
    async def test_unregistered_participant_is_invited(
        self, make_services, evm_registry, buyer, notifier, payload
    ) -> None:
        deals, _ = make_services(evm_registry)
        with patch.object(notifier, "send", new_callable=AsyncMock) as mock_send:
            deal = await deals.create_deal(buyer, payload(supplier_email="new@example.com"))

        assert deal.suppliers[0].user_id is None
        events = [c.args[0] for c in mock_send.await_args_list]
        assert events == ["invite-to-signup", "new-proposal"]
        assert mock_send.await_args_list[0].args[1] == ["new@example.com"]

    @pytest.mark.asyncio
    async def test_company_is_saved_on_creator(
        self, make_services, evm_registry, buyer, supplier, payload
    ) -> None:
        deals, _ = make_services(evm_registry)
        await deals.create_deal(buyer, payload(buyer_company={"name": "Acme Roasters"}))
        assert buyer.company["name"] == "Acme Roasters"


class TestConfirm:
    @pytest.mark.asyncio
    async def test_unanimous_approval_opens_settlement(
        self, confirmed_deal, evm_registry, backends, session
    ) -> None:
        deal = await confirmed_deal(evm_registry)

        assert deal.status == DealStatus.CONFIRMED
        assert deal.settlement_state == SettlementState.ACTIVE
        assert deal.nft_id == 1
        assert deal.mint_tx_hash is not None
        assert backends[SettlementKind.EVM_CONTRACT].calls[0][0] == "open_deal"

        jobs = await LogSyncJobRepository(session).list_active()
        assert [(j.contract, j.nft_id) for j in jobs] == [(deal.vault_address, 1)]

    @pytest.mark.asyncio
    async def test_ledger_deal_gets_vault_and_borrower(
        self, confirmed_deal, ledger_registry, session
    ) -> None:
        deal = await confirmed_deal(ledger_registry)

        assert deal.xrpl_vault_address and deal.xrpl_borrower_address
        assert deal.xrpl_vault_seed_sealed and deal.xrpl_borrower_seed_sealed
        assert deal.nft_id is None
        assert await LogSyncJobRepository(session).list_active() == []

    @pytest.mark.asyncio
    async def test_waits_for_every_entry(
        self, make_services, evm_registry, buyer, supplier, payload
    ) -> None:
        deals, _ = make_services(evm_registry)
        request = payload(
            suppliers=[{"email": "supplier@example.com"}, {"email": "late@example.com"}]
        )
        deal = await deals.create_deal(buyer, request)

        deal = await deals.confirm_deal(deal.id, supplier)
        assert deal.status == DealStatus.PROPOSAL
        assert deal.suppliers[0].approved is True

    @pytest.mark.asyncio
    async def test_stranger_is_rejected(
        self, make_services, evm_registry, buyer, investor, supplier, payload
    ) -> None:
        deals, _ = make_services(evm_registry)
        deal = await deals.create_deal(buyer, payload())
        with pytest.raises(UnauthorizedError):
            await deals.confirm_deal(deal.id, investor)

    @pytest.mark.asyncio
    async def test_only_proposals_can_be_confirmed(
        self, confirmed_deal, make_services, evm_registry, supplier
    ) -> None:
        deal = await confirmed_deal(evm_registry)
        deals, _ = make_services(evm_registry)
        with pytest.raises(InvalidDealStateError):
            await deals.confirm_deal(deal.id, supplier)

    @pytest.mark.asyncio
    async def test_settlement_failure_leaves_pending_then_retry(
        self, make_services, evm_registry, backends, buyer, supplier, payload
    ) -> None:
        deals, _ = make_services(evm_registry)
        deal = await deals.create_deal(buyer, payload())
        backend = backends[SettlementKind.EVM_CONTRACT]

        with patch.object(
            backend, "open_deal", new_callable=AsyncMock, side_effect=SettlementError("rpc down")
        ):
            deal = await deals.confirm_deal(deal.id, supplier)
        assert deal.status == DealStatus.CONFIRMED
        assert deal.settlement_state == SettlementState.PENDING
        assert deal.nft_id is None

        with pytest.raises(UnauthorizedError):
            await deals.retry_settlement(deal.id, supplier)

        deal = await deals.retry_settlement(deal.id, buyer)
        assert deal.settlement_state == SettlementState.ACTIVE
        assert deal.nft_id is not None

        with pytest.raises(InvalidDealStateError):
            await deals.retry_settlement(deal.id, buyer)

    @pytest.mark.asyncio
    async def test_automatic_acceptance_disabled(
        self, session, evm_registry, notifier, settings, buyer, supplier, payload
    ) -> None:
        settings = settings.model_copy(update={"automatic_deals_acceptance": False})
        deals = DealService(session, evm_registry, notifier, settings=settings)
        deal = await deals.create_deal(buyer, payload())

        deal = await deals.confirm_deal(deal.id, supplier)
        assert deal.status == DealStatus.CONFIRMED
        assert deal.settlement_state == SettlementState.NONE

    @pytest.mark.asyncio
    async def test_unknown_deal(
        self, make_services, evm_registry, supplier, sample_deal_id
    ) -> None:
        deals, _ = make_services(evm_registry)
        with pytest.raises(DealNotFoundError):
            await deals.confirm_deal(sample_deal_id, supplier)


class TestProposalEdits:
    @pytest.mark.asyncio
    async def test_cancel(self, make_services, evm_registry, buyer, supplier, payload) -> None:
        deals, _ = make_services(evm_registry)
        deal = await deals.create_deal(buyer, payload())
        deal = await deals.cancel_deal(deal.id, supplier)
        assert deal.status == DealStatus.CANCELLED

        with pytest.raises(InvalidDealStateError):
            await deals.cancel_deal(deal.id, buyer)

    @pytest.mark.asyncio
    async def test_update_resets_other_approvals(
        self, make_services, evm_registry, buyer, supplier, payload
    ) -> None:
        deals, _ = make_services(evm_registry)
        deal = await deals.create_deal(buyer, payload())
        await deals.confirm_deal(deal.id, buyer)

        deal = await deals.update_deal(
            deal.id,
            {"name": "Coffee shipment v2", "milestones": [{"funds_distribution": 100}]},
            supplier,
        )
        assert deal.name == "Coffee shipment v2"
        assert deal.milestone_percentages == [100]
        assert [p.approved for p in deal.buyers] == [False]
        assert [p.approved for p in deal.suppliers] == [True]

    @pytest.mark.asyncio
    async def test_empty_update(self, make_services, evm_registry, buyer, sample_deal_id) -> None:
        deals, _ = make_services(evm_registry)
        with pytest.raises(EmptyUpdateError):
            await deals.update_deal(sample_deal_id, {}, buyer)

    @pytest.mark.asyncio
    async def test_confirmed_deal_cannot_be_edited(
        self, confirmed_deal, make_services, evm_registry, buyer
    ) -> None:
        deal = await confirmed_deal(evm_registry)
        deals, _ = make_services(evm_registry)
        with pytest.raises(InvalidDealStateError):
            await deals.update_deal(deal.id, {"name": "Late change"}, buyer)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status",
        [DealStatus.CONFIRMED, DealStatus.FINISHED, DealStatus.REPAID, DealStatus.CANCELLED],
    )
    async def test_only_proposals_can_be_edited_or_cancelled(
        self, make_services, evm_registry, buyer, supplier, payload, status
    ) -> None:
        deals, _ = make_services(evm_registry)
        deal = await deals.create_deal(buyer, payload())
        deal.status = status.value
        await deals._deal_repo.save(deal)

        with pytest.raises(InvalidDealStateError):
            await deals.update_deal(deal.id, {"name": "Late change"}, supplier)
        with pytest.raises(InvalidDealStateError):
            await deals.cancel_deal(deal.id, supplier)

        deal = await deals.find_deal_by_id(deal.id)
        assert deal.status == status
        assert deal.name != "Late change"


class TestRepay:
    async def _finished(self, confirmed_deal, make_services, evm_registry):
        deal = await confirmed_deal(evm_registry)
        deals, _ = make_services(evm_registry)
        deal.status = DealStatus.FINISHED.value
        await deals._deal_repo.save(deal)
        return deals, deal

    @pytest.mark.asyncio
    async def test_repaid_completes_settlement(
        self, confirmed_deal, make_services, evm_registry, backends, buyer, session
    ) -> None:
        deals, deal = await self._finished(confirmed_deal, make_services, evm_registry)

        deal = await deals.set_deal_as_repaid(deal.id, buyer)

        assert deal.status == DealStatus.REPAID
        assert deal.settlement_state == SettlementState.COMPLETED
        assert backends[SettlementKind.EVM_CONTRACT].calls[-1][0] == "complete_deal"
        assert await LogSyncJobRepository(session).list_active() == []

    @pytest.mark.asyncio
    async def test_only_buyers(self, confirmed_deal, make_services, evm_registry, supplier) -> None:
        deals, deal = await self._finished(confirmed_deal, make_services, evm_registry)
        with pytest.raises(UnauthorizedError):
            await deals.set_deal_as_repaid(deal.id, supplier)

    @pytest.mark.asyncio
    async def test_unfinished_deal(
        self, confirmed_deal, make_services, evm_registry, buyer
    ) -> None:
        deal = await confirmed_deal(evm_registry)
        deals, _ = make_services(evm_registry)
        with pytest.raises(InvalidDealStateError):
            await deals.set_deal_as_repaid(deal.id, buyer)


class TestPublish:
    @pytest.mark.asyncio
    async def test_publish_pushes_shipment(
        self, confirmed_deal, make_services, evm_registry, buyer
    ) -> None:
        deal = await confirmed_deal(evm_registry)
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(201, json={"id": "s-1"})

        finance = FinanceAppClient(
            "https://finance.test", api_key="k", transport=httpx.MockTransport(handler)
        )
        deals, _ = make_services(evm_registry, finance_app=finance)
        deal = await deals.publish_deal(deal.id, buyer)

        assert deal.is_published is True
        assert [r.url.path for r in requests] == ["/shipments"]
        body = json.loads(requests[0].content)
        assert body["nftId"] == deal.nft_id
        assert requests[0].headers["Authorization"] == "Bearer k"

    @pytest.mark.asyncio
    async def test_without_finance_app(
        self, confirmed_deal, make_services, evm_registry, buyer
    ) -> None:
        deal = await confirmed_deal(evm_registry)
        deals, _ = make_services(evm_registry)
        with pytest.raises(PublishDealError):
            await deals.publish_deal(deal.id, buyer)

    @pytest.mark.asyncio
    async def test_finance_app_failure(
        self, confirmed_deal, make_services, evm_registry, buyer
    ) -> None:
        deal = await confirmed_deal(evm_registry)
        finance = FinanceAppClient(
            "https://finance.test", transport=httpx.MockTransport(lambda r: httpx.Response(502))
        )
        deals, _ = make_services(evm_registry, finance_app=finance)
        with pytest.raises(PublishDealError):
            await deals.publish_deal(deal.id, buyer)
        assert deal.is_published is False


class TestDocuments:
    @pytest.mark.asyncio
    async def test_supplier_adds_and_removes(
        self, make_services, evm_registry, buyer, supplier, payload
    ) -> None:
        deals, _ = make_services(evm_registry)
        deal = await deals.create_deal(buyer, payload())

        document = await deals.add_deal_document(
            deal.id, supplier, "https://docs.test/bl.pdf", "Bill of lading"
        )
        deal = await deals.find_deal_by_id(deal.id)
        assert deal.new_documents is True
        assert [d.url for d in deal.docs] == ["https://docs.test/bl.pdf"]
        assert document.seen_by(supplier.id)

        deal = await deals.set_documents_as_viewed(deal.id, buyer)
        assert deal.new_documents is False

        await deals.remove_deal_document(deal.id, document.id, supplier)
        assert (await deals.find_deal_by_id(deal.id)).docs == []

        with pytest.raises(DocumentNotFoundError):
            await deals.remove_deal_document(deal.id, document.id, supplier)

    @pytest.mark.asyncio
    async def test_buyer_cannot_upload(
        self, make_services, evm_registry, buyer, supplier, payload
    ) -> None:
        deals, _ = make_services(evm_registry)
        deal = await deals.create_deal(buyer, payload())
        with pytest.raises(UnauthorizedError):
            await deals.add_deal_document(deal.id, buyer, "https://docs.test/x.pdf")


class TestAdministration:
    @pytest.mark.asyncio
    async def test_assign_user_after_signup(
        self, make_services, evm_registry, buyer, session, payload
    ) -> None:
        deals, _ = make_services(evm_registry)
        deal = await deals.create_deal(buyer, payload(supplier_email="late@example.com"))

        late = User(email="late@example.com", account_type=AccountType.SUPPLIER.value)
        session.add(late)
        await session.flush()

        assert await deals.assign_user_to_deals(late) == 1
        deal = await deals.find_user_deal(deal.id, late)
        assert deal.suppliers[0].user_id == late.id

    @pytest.mark.asyncio
    async def test_assign_nft_once(
        self, make_services, evm_registry, buyer, supplier, payload
    ) -> None:
        deals, _ = make_services(evm_registry)
        deal = await deals.create_deal(buyer, payload())
        vault = "0x" + "ab" * 20

        deal = await deals.assign_nft_to_deal(deal.id, 77, "0xmint", vault)
        assert (deal.nft_id, deal.vault_address) == (77, vault)
        assert deal.settlement_state == SettlementState.ACTIVE

        with pytest.raises(SettlementAlreadyLinkedError):
            await deals.assign_nft_to_deal(deal.id, 78, "0xmint2", vault)

    @pytest.mark.asyncio
    async def test_deposit_contract_only_on_ledger_deals(
        self, make_services, evm_registry, ledger_registry, buyer, supplier, payload
    ) -> None:
        evm_deals, _ = make_services(evm_registry)
        deal = await evm_deals.create_deal(buyer, payload())
        with pytest.raises(InvalidDealStateError):
            await evm_deals.assign_deposit_contract(deal.id, "0x" + "cd" * 20)

        ledger_deals, _ = make_services(ledger_registry)
        deal = await ledger_deals.create_deal(buyer, payload())
        deal = await ledger_deals.assign_deposit_contract(deal.id, "0x" + "cd" * 20)
        assert deal.deposit_contract_address == "0x" + "cd" * 20

    @pytest.mark.asyncio
    async def test_delete(self, make_services, evm_registry, buyer, supplier, payload) -> None:
        deals, _ = make_services(evm_registry)
        deal = await deals.create_deal(buyer, payload())
        await deals.delete_deal(deal.id)
        with pytest.raises(DealNotFoundError):
            await deals.find_deal_by_id(deal.id)


class TestQueries:
    @pytest.mark.asyncio
    async def test_paginate_and_filter(
        self, make_services, evm_registry, buyer, supplier, payload
    ) -> None:
        deals, _ = make_services(evm_registry)
        for name in ("Coffee", "Cocoa", "Steel"):
            await deals.create_deal(buyer, payload(name=name))

        page, total = await deals.paginate()
        assert total == 3
        assert len(page) == deals.page_size == 2

        page, total = await deals.paginate(search="co")
        assert total == 2
        page, total = await deals.paginate(emails_search="nobody")
        assert total == 0
        page, total = await deals.paginate(status=DealStatus.CONFIRMED)
        assert (page, total) == ([], 0)

    @pytest.mark.asyncio
    async def test_find_by_user(
        self, make_services, evm_registry, buyer, supplier, investor, payload
    ) -> None:
        deals, _ = make_services(evm_registry)
        await deals.create_deal(buyer, payload())

        assert len(await deals.find_deals_by_user(supplier)) == 1
        assert await deals.find_deals_by_user(investor) == []
        assert await deals.find_deals_by_user(supplier, DealStatus.REPAID) == []

    @pytest.mark.asyncio
    async def test_status_lists_allowed_events(
        self, confirmed_deal, make_services, evm_registry
    ) -> None:
        deal = await confirmed_deal(evm_registry)
        deals, _ = make_services(evm_registry)
        status = await deals.get_status(deal.id)
        assert status["status"] == "CONFIRMED"
        assert status["settlement_state"] == "ACTIVE"
        assert status["allowed_events"] == ["final_milestone_approved"]

    @pytest.mark.asyncio
    async def test_find_user_deal_requires_membership(
        self, make_services, evm_registry, buyer, supplier, investor, payload
    ) -> None:
        deals, _ = make_services(evm_registry)
        deal = await deals.create_deal(buyer, payload())
        with pytest.raises(UnauthorizedError):
            await deals.find_user_deal(deal.id, investor)
