"""Shared test fixtures for the Deal Escrow test suite.

Provides:
    - An in-memory SQLite database (aiosqlite) with the full schema
    - Simulated settlement registries for both settlement kinds
    - Registered buyer, supplier and investor users with real EVM keys
    - A factory for proposed and confirmed deals
"""

from __future__ import annotations

import uuid
from decimal import Decimal

import pytest
import pytest_asyncio
from eth_account import Account
from eth_account.messages import encode_defunct
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from web3 import Web3

from deal_escrow.config import Settings
from deal_escrow.domain.enums import AccountType, SettlementKind, UserRole
from deal_escrow.infrastructure.database.orm_models import Base, User
from deal_escrow.schemas.deal import CreateDealRequest
from deal_escrow.services.deal_service import DealService
from deal_escrow.services.milestone_service import MilestoneService
from deal_escrow.services.notification_service import NotificationService
from deal_escrow.settlement import SettlementRegistry, SimulatedSettlementBackend

# Keys are fixed so failures are reproducible.
BUYER_KEY = "0x" + "11" * 32
SUPPLIER_KEY = "0x" + "22" * 32
INVESTOR_KEY = "0x" + "33" * 32
ADMIN_KEY = "0x" + "44" * 32

DEFAULT_SPLIT = [10, 10, 10, 10, 10, 10, 40]


def _sign(private_key: str, message: str) -> str:
    signed = Account.sign_message(encode_defunct(text=message), private_key=private_key)
    return Web3.to_hex(signed.signature)


# ---------------------------------------------------------------------------
# Configuration and collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        automatic_deals_acceptance=True,
        settlement_simulate=True,
        pollers_enabled=False,
        page_size=2,
    )


@pytest.fixture
def keys() -> dict[str, str]:
    return {
        "buyer": BUYER_KEY,
        "supplier": SUPPLIER_KEY,
        "investor": INVESTOR_KEY,
        "admin": ADMIN_KEY,
    }


@pytest.fixture
def sign():
    """EIP-191 personal_sign as a 0x-prefixed hex string: sign(private_key, message)."""
    return _sign


@pytest.fixture
def backends() -> dict[SettlementKind, SimulatedSettlementBackend]:
    return {kind: SimulatedSettlementBackend(kind) for kind in SettlementKind}


@pytest.fixture
def evm_registry(backends) -> SettlementRegistry:
    return SettlementRegistry(backends, default_kind=SettlementKind.EVM_CONTRACT)


@pytest.fixture
def ledger_registry(backends) -> SettlementRegistry:
    return SettlementRegistry(backends, default_kind=SettlementKind.LEDGER_IOU)


@pytest.fixture
def notifier() -> NotificationService:
    return NotificationService()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


async def _user(
    session: AsyncSession,
    email: str,
    account_type: AccountType,
    private_key: str,
    role: UserRole = UserRole.REGULAR,
) -> User:
    user = User(
        email=email,
        account_type=account_type.value,
        role=role.value,
        wallet_address=Account.from_key(private_key).address,
    )
    session.add(user)
    await session.flush()
    return user


@pytest_asyncio.fixture
async def buyer(session) -> User:
    return await _user(session, "buyer@example.com", AccountType.BUYER, BUYER_KEY)


@pytest_asyncio.fixture
async def supplier(session) -> User:
    return await _user(session, "supplier@example.com", AccountType.SUPPLIER, SUPPLIER_KEY)


@pytest_asyncio.fixture
async def investor(session) -> User:
    return await _user(session, "investor@example.com", AccountType.INVESTOR, INVESTOR_KEY)


@pytest_asyncio.fixture
async def admin(session) -> User:
    return await _user(
        session, "admin@example.com", AccountType.BUYER, ADMIN_KEY, role=UserRole.ADMIN
    )


# ---------------------------------------------------------------------------
# Deals
# ---------------------------------------------------------------------------


def deal_payload(
    buyer_email: str = "buyer@example.com",
    supplier_email: str = "supplier@example.com",
    split: list[int] | None = None,
    **overrides,
) -> CreateDealRequest:
    data = {
        "name": "Coffee shipment",
        "description": "Green coffee, Santos to Hamburg",
        "origin": "Santos",
        "destination": "Hamburg",
        "transport": "Sea",
        "investment_amount": Decimal("100000"),
        "buyers": [{"email": buyer_email}],
        "suppliers": [{"email": supplier_email}],
        "milestones": [
            {"description": f"Milestone {i}", "funds_distribution": pct}
            for i, pct in enumerate(split or DEFAULT_SPLIT)
        ],
    }
    data.update(overrides)
    return CreateDealRequest(**data)


@pytest.fixture
def payload():
    return deal_payload


@pytest.fixture
def make_services(session, notifier, settings):
    """Build deal and milestone services bound to one registry."""

    def _make(registry: SettlementRegistry, **kwargs) -> tuple[DealService, MilestoneService]:
        return (
            DealService(session, registry, notifier, settings=settings, **kwargs),
            MilestoneService(session, registry, notifier, settings=settings, **kwargs),
        )

    return _make


@pytest.fixture
def confirmed_deal(make_services, buyer, supplier):
    """Factory: create a deal as the buyer and confirm it as the supplier."""

    async def _make(registry: SettlementRegistry, **payload_overrides):
        deals, _ = make_services(registry)
        deal = await deals.create_deal(buyer, deal_payload(**payload_overrides))
        return await deals.confirm_deal(deal.id, supplier)

    return _make


@pytest.fixture
def sample_deal_id() -> uuid.UUID:
    """Return a deterministic UUID for testing."""
    return uuid.UUID("12345678-1234-5678-1234-567812345678")
