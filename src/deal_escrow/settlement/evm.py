"""EVM settlement backend (deals-manager contract + per-deal vault contracts).

Opening a deal mints an NFT through the deals-manager contract; the manager
deploys a vault contract for it which is discovered by polling ``vault(nftId)``
after a fixed delay. Milestone releases and completion are contract calls
keyed by the NFT id. ``EvmChain`` also serves the deposit bridge and the log
sync poller, which only read from the chain.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from eth_abi import decode as abi_decode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_keys.exceptions import ValidationError as EthKeysValidationError
from web3 import AsyncWeb3, Web3

from deal_escrow.domain.enums import SettlementKind
from deal_escrow.domain.exceptions import MissingConfigurationError, SettlementError
from deal_escrow.domain.settlement_protocol import MilestoneRelease, SettlementLinkage
from deal_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from deal_escrow.config import Settings
    from deal_escrow.domain.settlement_protocol import DealTerms
    from deal_escrow.settlement.resilience import ResiliencePolicy

logger = get_logger(__name__)

DEALS_MANAGER_ABI: list[dict] = [
    {
        "inputs": [
            {"internalType": "uint256[]", "name": "milestones", "type": "uint256[]"},
            {"internalType": "uint256", "name": "maxDeposit", "type": "uint256"},
            {"internalType": "address", "name": "borrower", "type": "address"},
        ],
        "name": "mint",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "dealId", "type": "uint256"}],
        "name": "vault",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "uint256", "name": "dealId", "type": "uint256"},
            {"internalType": "uint256", "name": "milestone", "type": "uint256"},
        ],
        "name": "proceed",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "dealId", "type": "uint256"}],
        "name": "setDealCompleted",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

TRANSFER_TOPIC = Web3.keccak(text="Transfer(address,address,uint256)")

# name -> (signature, indexed address args, non-indexed (name, type) args)
VAULT_EVENTS: dict[str, tuple[str, list[str], list[tuple[str, str]]]] = {
    "Deposit": (
        "Deposit(address,address,uint256,uint256)",
        ["sender", "owner"],
        [("assets", "uint256"), ("shares", "uint256")],
    ),
    "Withdraw": (
        "Withdraw(address,address,address,uint256,uint256)",
        ["sender", "receiver", "owner"],
        [("assets", "uint256"), ("shares", "uint256")],
    ),
}
_VAULT_EVENT_BY_TOPIC = {
    bytes(Web3.keccak(text=signature)): name
    for name, (signature, _, _) in VAULT_EVENTS.items()
}


@dataclass(frozen=True)
class TokenTransfer:
    """One decoded ERC-20 ``Transfer`` log."""

    tx_hash: str
    log_index: int
    block_number: int
    sender: str
    recipient: str
    value: int

    @property
    def key(self) -> str:
        return f"{self.tx_hash}-{self.log_index}"


@dataclass(frozen=True)
class VaultEvent:
    name: str
    args: dict[str, str]
    tx_hash: str
    log_index: int
    block_number: int


def _topic_address(topic: bytes) -> str:
    return Web3.to_checksum_address("0x" + bytes(topic)[-20:].hex())


def decode_transfer_log(log: Any) -> TokenTransfer | None:
    """Decode a raw ``Transfer`` log; returns None for anything else."""
    topics = log["topics"]
    if len(topics) != 3 or bytes(topics[0]) != bytes(TRANSFER_TOPIC):
        return None
    return TokenTransfer(
        tx_hash=Web3.to_hex(log["transactionHash"]),
        log_index=int(log["logIndex"]),
        block_number=int(log["blockNumber"]),
        sender=_topic_address(topics[1]),
        recipient=_topic_address(topics[2]),
        value=int.from_bytes(bytes(log["data"]), "big"),
    )


def decode_vault_log(log: Any) -> VaultEvent | None:
    """Decode a known vault event; unknown topics return None."""
    topics = log["topics"]
    if not topics:
        return None
    name = _VAULT_EVENT_BY_TOPIC.get(bytes(topics[0]))
    if name is None:
        return None
    _, indexed, data_args = VAULT_EVENTS[name]
    args: dict[str, str] = {
        arg: _topic_address(topic) for arg, topic in zip(indexed, topics[1:], strict=False)
    }
    values = abi_decode([arg_type for _, arg_type in data_args], bytes(log["data"]))
    args.update({arg: str(value) for (arg, _), value in zip(data_args, values, strict=True)})
    return VaultEvent(
        name=name,
        args=args,
        tx_hash=Web3.to_hex(log["transactionHash"]),
        log_index=int(log["logIndex"]),
        block_number=int(log["blockNumber"]),
    )


def verify_signed_message(address: str, message: str, signature: str) -> bool:
    """Check an EIP-191 personal-sign signature against ``address``."""
    try:
        recovered = Account.recover_message(encode_defunct(text=message), signature=signature)
    except (ValueError, TypeError, EthKeysValidationError):
        return False
    return recovered.lower() == address.lower()


class EvmChain:
    """Thin async wrapper over AsyncWeb3 with the resilience policy applied."""

    def __init__(
        self,
        w3: AsyncWeb3,
        policy: ResiliencePolicy,
        private_key: str = "",
        chain_id: int | None = None,
    ) -> None:
        self._w3 = w3
        self._policy = policy
        self._private_key = private_key
        self._chain_id = chain_id

    @classmethod
    def from_settings(cls, settings: Settings, policy: ResiliencePolicy) -> EvmChain:
        w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(settings.blockchain_rpc_url))
        return cls(
            w3,
            policy,
            private_key=settings.blockchain_private_key,
            chain_id=settings.blockchain_chain_id,
        )

    @property
    def w3(self) -> AsyncWeb3:
        return self._w3

    @property
    def policy(self) -> ResiliencePolicy:
        return self._policy

    def contract(self, address: str, abi: list[dict]) -> Any:
        return self._w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    # --- Reads ---

    async def get_last_block(self) -> int:
        return await self._policy.run("evm.block_number", self._block_number)

    async def _block_number(self) -> int:
        return await self._w3.eth.block_number

    async def get_block_timestamp(self, block_number: int) -> datetime:
        block = await self._policy.run(
            "evm.get_block", lambda: self._w3.eth.get_block(block_number)
        )
        return datetime.fromtimestamp(int(block["timestamp"]), UTC)

    async def get_logs(
        self,
        address: str,
        from_block: int,
        to_block: int,
        topics: list[str] | None = None,
    ) -> list[Any]:
        params: dict[str, Any] = {
            "address": Web3.to_checksum_address(address),
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        if topics:
            params["topics"] = topics
        return list(await self._policy.run("evm.get_logs", lambda: self._w3.eth.get_logs(params)))

    async def get_token_transfers(
        self,
        token_address: str,
        from_block: int,
        to_block: int,
    ) -> list[TokenTransfer]:
        logs = await self.get_logs(
            token_address, from_block, to_block, topics=[Web3.to_hex(TRANSFER_TOPIC)]
        )
        transfers = [decode_transfer_log(log) for log in logs]
        return [t for t in transfers if t is not None]

    async def get_transaction_sender(self, tx_hash: str) -> str:
        tx = await self._policy.run(
            "evm.get_transaction", lambda: self._w3.eth.get_transaction(tx_hash)
        )
        return str(tx["from"])

    async def call(self, operation: str, fn: Any) -> Any:
        return await self._policy.run(operation, fn.call)

    # --- Writes ---

    async def transact(self, operation: str, fn: Any) -> tuple[str, Any]:
        """Sign and send a contract call, then wait for a successful receipt."""
        if not self._private_key:
            raise MissingConfigurationError("BLOCKCHAIN_PRIVATE_KEY")
        account = Account.from_key(self._private_key)

        async def _send() -> Any:
            params: dict[str, Any] = {
                "from": account.address,
                "nonce": await self._w3.eth.get_transaction_count(account.address, "pending"),
            }
            if self._chain_id is not None:
                params["chainId"] = self._chain_id
            tx = await fn.build_transaction(params)
            signed = account.sign_transaction(tx)
            return await self._w3.eth.send_raw_transaction(signed.raw_transaction)

        raw_hash = await self._policy.run(f"evm.{operation}.send", _send, idempotent=False)
        tx_hash = Web3.to_hex(raw_hash)
        receipt = await self._policy.run(
            f"evm.{operation}.receipt",
            lambda: self._w3.eth.wait_for_transaction_receipt(
                raw_hash, timeout=self._policy.timeout_seconds
            ),
        )
        if receipt["status"] != 1:
            raise SettlementError(f"{operation} reverted", tx_hash=tx_hash)
        logger.info("evm.tx_confirmed", operation=operation, tx_hash=tx_hash)
        return tx_hash, receipt


class EvmSettlementBackend:
    """Settlement through the deals-manager contract."""

    kind = SettlementKind.EVM_CONTRACT

    def __init__(
        self,
        chain: EvmChain,
        deals_manager_address: str,
        vault_lookup_delay_seconds: float = 5.0,
    ) -> None:
        self._chain = chain
        self._manager_address = deals_manager_address
        self._vault_lookup_delay = vault_lookup_delay_seconds

    def _manager(self) -> Any:
        if not self._manager_address:
            raise MissingConfigurationError("DEALS_MANAGER_CONTRACT_ADDRESS")
        return self._chain.contract(self._manager_address, DEALS_MANAGER_ABI)

    # --- Protocol ---

    async def open_deal(self, terms: DealTerms) -> SettlementLinkage:
        if not terms.buyer_wallet:
            raise SettlementError("Buyer has no wallet address to receive the deal NFT")
        last_block = await self._chain.get_last_block()
        tx_hash, receipt = await self.mint_nft(
            terms.milestone_percentages, int(terms.investment_amount), terms.buyer_wallet
        )
        nft_id = self.get_nft_id(receipt)
        await asyncio.sleep(self._vault_lookup_delay)
        vault_address = await self.vault(nft_id)
        logger.info(
            "evm.deal_opened",
            deal_id=terms.deal_id,
            nft_id=nft_id,
            vault=vault_address,
            tx_hash=tx_hash,
        )
        return SettlementLinkage(
            kind=self.kind,
            mint_tx_hash=tx_hash,
            nft_id=nft_id,
            vault_address=vault_address,
            log_sync_from_block=last_block,
        )

    async def release_milestone(
        self,
        linkage: SettlementLinkage,
        milestone_index: int,
        percentages: list[int],
    ) -> MilestoneRelease:
        if linkage.nft_id is None:
            raise SettlementError("Deal has no NFT id")
        tx_hash = await self.change_milestone_status(linkage.nft_id, milestone_index + 1)
        return MilestoneRelease(tx_hash=tx_hash, milestone_index=milestone_index)

    async def complete_deal(self, linkage: SettlementLinkage) -> str | None:
        if linkage.nft_id is None:
            raise SettlementError("Deal has no NFT id")
        return await self.set_deal_as_completed(linkage.nft_id)

    # --- Contract surface ---

    async def mint_nft(
        self,
        percentages: list[int],
        investment_amount: int,
        borrower: str,
    ) -> tuple[str, Any]:
        fn = self._manager().functions.mint(
            percentages, investment_amount, Web3.to_checksum_address(borrower)
        )
        return await self._chain.transact("mint", fn)

    def get_nft_id(self, receipt: Any) -> int:
        """Token id of the NFT minted by the manager, from the receipt's Transfer log."""
        manager = self._manager_address.lower()
        for log in receipt["logs"]:
            topics = log["topics"]
            if (
                str(log["address"]).lower() == manager
                and len(topics) == 4
                and bytes(topics[0]) == bytes(TRANSFER_TOPIC)
            ):
                return int.from_bytes(bytes(topics[3]), "big")
        raise SettlementError("Mint receipt has no NFT Transfer event")

    async def vault(self, nft_id: int) -> str:
        address = await self._chain.call("evm.vault", self._manager().functions.vault(nft_id))
        return str(address)

    async def change_milestone_status(self, nft_id: int, milestone: int) -> str:
        tx_hash, _ = await self._chain.transact(
            "proceed", self._manager().functions.proceed(nft_id, milestone)
        )
        return tx_hash

    async def set_deal_as_completed(self, nft_id: int) -> str:
        tx_hash, _ = await self._chain.transact(
            "set_deal_completed", self._manager().functions.setDealCompleted(nft_id)
        )
        return tx_hash
