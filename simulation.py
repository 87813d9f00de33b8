#!/usr/bin/env python3
"""Deal Escrow: End-to-End Simulation.

Runs deals through their whole lifecycle against the simulated settlement
backends, so no chain, ledger or API keys are needed:

    Scenario 1: EVM Happy Path
        - Buyer proposes a 7-milestone deal, supplier confirms -> NFT minted
        - Buyer advances milestones 1..6 with wallet signatures (payouts 0..5)
        - Supplier submits milestone 6, buyer approves -> FINISHED -> REPAID

    Scenario 2: Ledger Deposits
        - Deal settles on the ledger; confirmation opens vault + borrower accounts
        - Investor deposits 1000 -> 1000 USD IOU in the vault, 1000 SHRx shares
        - Milestone 0 approved -> 10% of the live vault balance paid to the borrower
        - Investor redeems 250 shares -> 250 IOU returned from the vault

    Scenario 3: Guard Rails
        - Review denied, resubmitted and approved
        - Cursor advance with a skipped index or a forged signature is refused

Usage:
    # Option A: PostgreSQL from DATABASE_URL:
    uv run python simulation.py

    # Option B: SQLite in-memory (no Docker needed):
    uv run python simulation.py --sqlite

    # Run a specific scenario:
    uv run python simulation.py --sqlite --scenario 2
"""

from __future__ import annotations

import argparse
import asyncio
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from deal_escrow.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from deal_escrow.config import Settings  # noqa: E402
from deal_escrow.domain.enums import AccountType, SettlementKind, UserRole  # noqa: E402
from deal_escrow.domain.exceptions import DealEscrowError  # noqa: E402
from deal_escrow.domain.milestones import approval_message  # noqa: E402
from deal_escrow.infrastructure.database.orm_models import User  # noqa: E402
from deal_escrow.infrastructure.database.repositories import UserRepository  # noqa: E402
from deal_escrow.schemas.deal import CreateDealRequest  # noqa: E402
from deal_escrow.services import (  # noqa: E402
    DealService,
    LedgerService,
    MilestoneService,
    NotificationService,
)
from deal_escrow.settlement import SettlementRegistry, SimulatedSettlementBackend  # noqa: E402

# Module-level state
_sqlite_engine = None
_sqlite_session_factory = None

SETTINGS = Settings(automatic_deals_acceptance=True, settlement_simulate=True)
BACKENDS = {kind: SimulatedSettlementBackend(kind) for kind in SettlementKind}
NOTIFIER = NotificationService()
MILESTONE_SPLIT = [10, 10, 10, 10, 10, 10, 40]


def registry_for(kind: SettlementKind) -> SettlementRegistry:
    return SettlementRegistry(BACKENDS, default_kind=kind)


# ---------------------------------------------------------------------------
# Database lifecycle helpers
# ---------------------------------------------------------------------------
async def init_database(use_sqlite: bool = False) -> None:
    """Initialize database engine and create tables."""
    global _sqlite_engine, _sqlite_session_factory

    if use_sqlite:
        from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

        from deal_escrow.infrastructure.database.orm_models import Base

        _sqlite_engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
        _sqlite_session_factory = async_sessionmaker(
            bind=_sqlite_engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        async with _sqlite_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database.sqlite_initialized")
    else:
        from deal_escrow.infrastructure.database.engine import init_db

        await init_db()


async def get_session():
    """Get a fresh database session."""
    if _sqlite_session_factory is not None:
        return _sqlite_session_factory()

    from deal_escrow.infrastructure.database.engine import get_session_factory

    return get_session_factory()()


async def shutdown_database() -> None:
    """Close database connections."""
    global _sqlite_engine, _sqlite_session_factory

    if _sqlite_engine is not None:
        await _sqlite_engine.dispose()
        _sqlite_engine = None
        _sqlite_session_factory = None
    else:
        from deal_escrow.infrastructure.database.engine import close_db

        await close_db()


def deal_service(session: Any, kind: SettlementKind) -> DealService:
    return DealService(session, registry_for(kind), NOTIFIER, settings=SETTINGS)


def milestone_service(session: Any, kind: SettlementKind) -> MilestoneService:
    return MilestoneService(session, registry_for(kind), NOTIFIER, settings=SETTINGS)


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------
@dataclass
class Actor:
    """A registered user with an EVM wallet it can sign with."""

    label: str
    account_type: AccountType
    role: UserRole = UserRole.REGULAR
    email: str = ""
    account: Any = field(default_factory=Account.create)
    user_id: uuid.UUID | None = None

    @property
    def wallet(self) -> str:
        return self.account.address

    async def register(self) -> None:
        self.email = self.email or f"{self.label}-{uuid.uuid4().hex[:6]}@example.com"
        session = await get_session()
        async with session:
            user = await UserRepository(session).create(
                User(
                    email=self.email,
                    account_type=self.account_type.value,
                    role=self.role.value,
                    wallet_address=self.wallet,
                )
            )
            self.user_id = user.id
            await session.commit()
        logger.info(f"👤 {self.label.upper()}: registered", email=self.email, wallet=self.wallet)

    async def user(self, session: Any) -> User:
        user = await UserRepository(session).get_by_id(self.user_id)
        assert user is not None
        return user

    def sign(self, message: str) -> str:
        signed = Account.sign_message(encode_defunct(text=message), private_key=self.account.key)
        return Web3.to_hex(signed.signature)


async def new_cast() -> tuple[Actor, Actor]:
    buyer = Actor("buyer", AccountType.BUYER)
    supplier = Actor("supplier", AccountType.SUPPLIER)
    await buyer.register()
    await supplier.register()
    return buyer, supplier


async def propose_and_confirm(
    buyer: Actor,
    supplier: Actor,
    kind: SettlementKind,
    name: str,
) -> uuid.UUID:
    """Buyer proposes, supplier approves; confirmation opens settlement."""
    payload = CreateDealRequest(
        name=name,
        description="Green coffee, Santos to Hamburg",
        origin="Santos",
        destination="Hamburg",
        transport="Sea",
        investment_amount=Decimal("100000"),
        buyers=[{"email": buyer.email}],
        suppliers=[{"email": supplier.email}],
        milestones=[
            {"description": f"Milestone {i}", "funds_distribution": pct}
            for i, pct in enumerate(MILESTONE_SPLIT)
        ],
    )

    session = await get_session()
    async with session:
        deal = await deal_service(session, kind).create_deal(await buyer.user(session), payload)
        await session.commit()
        deal_id = deal.id
    print(f"  📄 Proposal created: {deal_id} ({kind})")

    session = await get_session()
    async with session:
        deal = await deal_service(session, kind).confirm_deal(deal_id, await supplier.user(session))
        await session.commit()
        print(f"  🤝 Confirmed: status={deal.status} settlement={deal.settlement_state}")
        if deal.nft_id is not None:
            print(f"     NFT #{deal.nft_id}, vault {deal.vault_address}")
        if deal.xrpl_vault_address:
            print(f"     Ledger vault {deal.xrpl_vault_address}")
            print(f"     Borrower     {deal.xrpl_borrower_address}")
    return deal_id


async def review_and_approve(
    buyer: Actor,
    supplier: Actor,
    deal_id: uuid.UUID,
    kind: SettlementKind,
    index: int,
) -> None:
    session = await get_session()
    async with session:
        svc = milestone_service(session, kind)
        deal = await deal_service(session, kind).find_deal_by_id(deal_id)
        milestone_id = deal.milestones[index].id
        supplier_user = await supplier.user(session)
        await svc.submit_milestone_review_request(deal_id, milestone_id, supplier_user)
        milestone = await svc.approve_milestone(deal_id, milestone_id, await buyer.user(session))
        await session.commit()
        print(f"  ✅ Milestone {index} approved: {milestone.approval_status} / {milestone.status}")


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


async def print_deal(deal_id: uuid.UUID, kind: SettlementKind) -> None:
    session = await get_session()
    async with session:
        status = await deal_service(session, kind).get_status(deal_id)
    print(f"  📊 status={status['status']} settlement={status['settlement_state']}")
    print(f"     current milestone={status['current_milestone']}")
    print(f"     allowed events={', '.join(status['allowed_events']) or '-'}")


# ===========================================================================
# Scenario 1: EVM happy path
# ===========================================================================
async def scenario_1_evm_happy_path() -> None:
    banner("SCENARIO 1: EVM Happy Path (signed milestone advances)")
    kind = SettlementKind.EVM_CONTRACT
    buyer, supplier = await new_cast()
    deal_id = await propose_and_confirm(buyer, supplier, kind, "Coffee shipment #1")

    section("Signed milestone advances")
    for next_index in range(1, 7):
        session = await get_session()
        async with session:
            svc = milestone_service(session, kind)
            deal = await deal_service(session, kind).find_deal_by_id(deal_id)
            signature = buyer.sign(approval_message(next_index, deal.nft_id))
            deal = await svc.update_current_milestone(
                deal_id, next_index, signature, await buyer.user(session)
            )
            await session.commit()
        print(f"  ➡️  Paid milestone {next_index - 1}, cursor now {deal.current_milestone}")

    section("Final milestone review")
    await review_and_approve(buyer, supplier, deal_id, kind, 6)

    section("Repayment")
    session = await get_session()
    async with session:
        buyer_user = await buyer.user(session)
        deal = await deal_service(session, kind).set_deal_as_repaid(deal_id, buyer_user)
        await session.commit()
    print(f"  💰 Deal repaid: status={deal.status} settlement={deal.settlement_state}")

    await print_deal(deal_id, kind)
    calls = [name for name, _ in BACKENDS[kind].calls]
    print(f"\n  🧾 Backend calls: {', '.join(calls)}")


# ===========================================================================
# Scenario 2: Ledger deposits and redemption
# ===========================================================================
async def scenario_2_ledger_deposits() -> None:
    banner("SCENARIO 2: Ledger Deposits (IOU vault, shares, payout, redemption)")
    kind = SettlementKind.LEDGER_IOU
    backend = BACKENDS[kind]
    buyer, supplier = await new_cast()
    investor = Actor("investor", AccountType.INVESTOR)
    await investor.register()
    deal_id = await propose_and_confirm(buyer, supplier, kind, "Cocoa shipment #2")

    section("Investor deposit")
    session = await get_session()
    async with session:
        receipt = await LedgerService(session, registry_for(kind)).process_deposit(
            investor.wallet, Decimal("1000"), deal_id, "0x" + uuid.uuid4().hex * 2
        )
        await session.commit()
    print(f"  🏦 Deposit credited: {receipt.amount} to vault")
    print(f"     Shares issued to {receipt.investor_address}")

    section("Milestone 0 payout")
    await review_and_approve(buyer, supplier, deal_id, kind, 0)

    section("Redemption")
    session = await get_session()
    async with session:
        ledger = LedgerService(session, registry_for(kind))
        redemption = await ledger.process_redemption(investor.wallet, Decimal("250"), deal_id)
        await session.commit()
        state = await ledger.deal_state(deal_id)
    print(f"  🔁 Redeemed {redemption.amount} shares")
    print(f"     IOU returned in {redemption.return_tx_hash[:18]}...")
    print(f"  🏦 Vault balance: {state['vault_balance']}")
    print(f"  🏦 Borrower balance: {backend.balance_of(state['borrower_address'])}")
    print(f"  🏦 Investor shares: {backend.balance_of(redemption.investor_address, 'SHRx')}")


# ===========================================================================
# Scenario 3: Guard rails
# ===========================================================================
async def scenario_3_guard_rails() -> None:
    banner("SCENARIO 3: Guard Rails (denied review, bad advances)")
    kind = SettlementKind.EVM_CONTRACT
    buyer, supplier = await new_cast()
    deal_id = await propose_and_confirm(buyer, supplier, kind, "Steel coils #3")

    section("Denied review")
    session = await get_session()
    async with session:
        svc = milestone_service(session, kind)
        deal = await deal_service(session, kind).find_deal_by_id(deal_id)
        milestone_id = deal.milestones[0].id
        supplier_user = await supplier.user(session)
        await svc.submit_milestone_review_request(deal_id, milestone_id, supplier_user)
        denied = await svc.deny_milestone(deal_id, milestone_id, await buyer.user(session))
        await session.commit()
    print(f"  ❌ Milestone 0: {denied.approval_status}")
    await review_and_approve(buyer, supplier, deal_id, kind, 0)

    section("Refused cursor advances")
    attempts = [
        ("skipping to milestone 3", 3, lambda nft_id: buyer.sign(approval_message(3, nft_id))),
        ("forged signature", 1, lambda nft_id: supplier.sign(approval_message(1, nft_id))),
    ]
    for label, next_index, signer in attempts:
        session = await get_session()
        async with session:
            svc = milestone_service(session, kind)
            deal = await deal_service(session, kind).find_deal_by_id(deal_id)
            try:
                await svc.update_current_milestone(
                    deal_id, next_index, signer(deal.nft_id), await buyer.user(session)
                )
            except DealEscrowError as exc:
                await session.rollback()
                print(f"  🛡️  {label}: {exc.code} ({exc.status_code}) {exc.message}")

    await print_deal(deal_id, kind)


# ===========================================================================
# Main
# ===========================================================================
SCENARIOS = {
    1: scenario_1_evm_happy_path,
    2: scenario_2_ledger_deposits,
    3: scenario_3_guard_rails,
}


async def run(scenario: int = 0, use_sqlite: bool = False) -> None:
    await init_database(use_sqlite=use_sqlite)
    try:
        print("\n" + "🚢" * 35)
        print("  DEAL ESCROW: SIMULATION")
        print(f"  Database: {'SQLite (in-memory)' if use_sqlite else 'PostgreSQL'}")
        print("  Settlement: simulated backends")
        print("🚢" * 35 + "\n")

        if scenario == 0:
            for run_scenario in SCENARIOS.values():
                await run_scenario()
        elif scenario in SCENARIOS:
            await SCENARIOS[scenario]()
        else:
            print(f"Unknown scenario {scenario}. Available: {', '.join(map(str, SCENARIOS))}")
            return

        print("\n" + "=" * 70)
        print("  ✅ SIMULATION COMPLETED")
        print("=" * 70 + "\n")
    finally:
        await shutdown_database()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Deal Escrow Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1, 2, or 3). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use SQLite in-memory instead of PostgreSQL (no Docker needed).",
    )
    args = parser.parse_args()
    asyncio.run(run(args.scenario, use_sqlite=args.sqlite))
