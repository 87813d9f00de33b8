"""Unit tests for the EVM settlement helpers.

Chain access is mocked; signatures are produced with real keys.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from eth_abi import encode as abi_encode
from eth_account import Account
from web3 import Web3

from deal_escrow.domain.enums import SettlementKind
from deal_escrow.domain.exceptions import MissingConfigurationError, SettlementError
from deal_escrow.domain.milestones import approval_message
from deal_escrow.domain.settlement_protocol import DealTerms, SettlementLinkage
from deal_escrow.settlement.evm import (
    TRANSFER_TOPIC,
    EvmSettlementBackend,
    decode_transfer_log,
    decode_vault_log,
    verify_signed_message,
)

MANAGER = "0x00000000000000000000000000000000000000aa"
ALICE = "0x1111111111111111111111111111111111111111"
BOB = "0x2222222222222222222222222222222222222222"
TX_HASH = bytes.fromhex("ab" * 32)


def _topic(address: str) -> bytes:
    return bytes(12) + bytes.fromhex(address[2:])


def _log(topics: list[bytes], data: bytes = b"", address: str = MANAGER) -> dict:
    return {
        "address": address,
        "topics": topics,
        "data": data,
        "transactionHash": TX_HASH,
        "logIndex": 3,
        "blockNumber": 120,
    }


class TestSignatures:
    def test_valid_signature(self, keys, sign) -> None:
        address = Account.from_key(keys["buyer"]).address
        message = approval_message(2, 17)
        assert verify_signed_message(address, message, sign(keys["buyer"], message))

    def test_address_comparison_ignores_case(self, keys, sign) -> None:
        address = Account.from_key(keys["buyer"]).address.lower()
        message = approval_message(1, 17)
        assert verify_signed_message(address, message, sign(keys["buyer"], message))

    def test_wrong_signer(self, keys, sign) -> None:
        address = Account.from_key(keys["buyer"]).address
        message = approval_message(2, 17)
        assert not verify_signed_message(address, message, sign(keys["supplier"], message))

    def test_wrong_message(self, keys, sign) -> None:
        address = Account.from_key(keys["buyer"]).address
        signature = sign(keys["buyer"], approval_message(2, 17))
        assert not verify_signed_message(address, approval_message(3, 17), signature)

    def test_garbage_signature(self) -> None:
        assert not verify_signed_message(ALICE, "hello", "0xdeadbeef")


class TestLogDecoding:
    def test_transfer(self) -> None:
        log = _log(
            [bytes(TRANSFER_TOPIC), _topic(ALICE), _topic(BOB)],
            data=(10**18).to_bytes(32, "big"),
        )
        transfer = decode_transfer_log(log)
        assert transfer is not None
        assert transfer.sender == Web3.to_checksum_address(ALICE)
        assert transfer.recipient == Web3.to_checksum_address(BOB)
        assert transfer.value == 10**18
        assert transfer.key == "0x" + "ab" * 32 + "-3"

    def test_nft_transfer_is_not_a_token_transfer(self) -> None:
        log = _log([bytes(TRANSFER_TOPIC), _topic(ALICE), _topic(BOB), (5).to_bytes(32, "big")])
        assert decode_transfer_log(log) is None

    def test_vault_deposit(self) -> None:
        topic = bytes(Web3.keccak(text="Deposit(address,address,uint256,uint256)"))
        log = _log(
            [topic, _topic(ALICE), _topic(BOB)],
            data=abi_encode(["uint256", "uint256"], [500, 490]),
        )
        event = decode_vault_log(log)
        assert event is not None
        assert event.name == "Deposit"
        assert event.args == {
            "sender": Web3.to_checksum_address(ALICE),
            "owner": Web3.to_checksum_address(BOB),
            "assets": "500",
            "shares": "490",
        }
        assert event.block_number == 120

    def test_unknown_event(self) -> None:
        topic = bytes(Web3.keccak(text="Approval(address,address,uint256)"))
        assert decode_vault_log(_log([topic, _topic(ALICE), _topic(BOB)])) is None
        assert decode_vault_log(_log([])) is None


class TestBackend:
    def _backend(self, manager: str = MANAGER) -> EvmSettlementBackend:
        return EvmSettlementBackend(AsyncMock(), manager, vault_lookup_delay_seconds=0)

    def test_nft_id_from_receipt(self) -> None:
        receipt = {
            "logs": [
                _log([bytes(TRANSFER_TOPIC), _topic(ALICE), _topic(BOB)], address=BOB),
                _log(
                    [bytes(TRANSFER_TOPIC), bytes(32), _topic(BOB), (9).to_bytes(32, "big")],
                    address=MANAGER,
                ),
            ]
        }
        assert self._backend().get_nft_id(receipt) == 9

    def test_receipt_without_mint_event(self) -> None:
        with pytest.raises(SettlementError, match="no NFT Transfer"):
            self._backend().get_nft_id({"logs": []})

    def test_missing_manager_address(self) -> None:
        with pytest.raises(MissingConfigurationError):
            self._backend(manager="")._manager()

    @pytest.mark.asyncio
    async def test_release_proceeds_to_next_milestone(self) -> None:
        backend = self._backend()
        linkage = SettlementLinkage(
            kind=SettlementKind.EVM_CONTRACT, mint_tx_hash="0xmint", nft_id=4
        )
        with patch.object(
            backend, "change_milestone_status", new_callable=AsyncMock
        ) as mock_proceed:
            mock_proceed.return_value = "0xproceed"
            release = await backend.release_milestone(linkage, 2, [10] * 7)

        mock_proceed.assert_awaited_once_with(4, 3)
        assert release.tx_hash == "0xproceed"
        assert release.milestone_index == 2

    @pytest.mark.asyncio
    async def test_open_deal_requires_buyer_wallet(self) -> None:
        terms = DealTerms(
            deal_id="d-1",
            milestone_percentages=[100],
            investment_amount=1000,
            buyer_wallet=None,
        )
        with pytest.raises(SettlementError, match="no wallet"):
            await self._backend().open_deal(terms)

    @pytest.mark.asyncio
    async def test_open_deal_links_nft_and_vault(self) -> None:
        backend = self._backend()
        backend._chain.get_last_block = AsyncMock(return_value=1234)
        terms = DealTerms(
            deal_id="d-1",
            milestone_percentages=[50, 50],
            investment_amount=1000,
            buyer_wallet=ALICE,
        )
        with (
            patch.object(backend, "mint_nft", new_callable=AsyncMock) as mock_mint,
            patch.object(backend, "get_nft_id", return_value=11),
            patch.object(backend, "vault", new_callable=AsyncMock) as mock_vault,
        ):
            mock_mint.return_value = ("0xmint", {"logs": []})
            mock_vault.return_value = BOB
            linkage = await backend.open_deal(terms)

        mock_mint.assert_awaited_once_with([50, 50], 1000, ALICE)
        assert linkage.nft_id == 11
        assert linkage.vault_address == BOB
        assert linkage.log_sync_from_block == 1234
