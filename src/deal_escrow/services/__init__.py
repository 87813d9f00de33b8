"""Application services: use case orchestration."""

from deal_escrow.services.deal_service import DealService
from deal_escrow.services.deposit_bridge import (
    DepositBridge,
    ProcessedEventWindow,
    RedisBackedEventWindow,
)
from deal_escrow.services.ledger_service import DepositReceipt, LedgerService, RedemptionReceipt
from deal_escrow.services.log_sync_service import LogSyncService
from deal_escrow.services.milestone_service import MilestoneService
from deal_escrow.services.notification_service import NotificationService

__all__ = [
    "DealService",
    "DepositBridge",
    "DepositReceipt",
    "LedgerService",
    "LogSyncService",
    "MilestoneService",
    "NotificationService",
    "ProcessedEventWindow",
    "RedemptionReceipt",
    "RedisBackedEventWindow",
]
