"""Economy services. Each flushes into the caller's transaction."""

from arena_economy.services.audit import AuditService
from arena_economy.services.cancellation import CancellationResult, CancellationService
from arena_economy.services.entry import EntryService
from arena_economy.services.events import EventRecorder, EventRelay
from arena_economy.services.ledger import LedgerService
from arena_economy.services.wallet import WalletService
from arena_economy.services.withdrawal import WithdrawalService

__all__ = [
    "AuditService",
    "CancellationResult",
    "CancellationService",
    "EntryService",
    "EventRecorder",
    "EventRelay",
    "LedgerService",
    "WalletService",
    "WithdrawalService",
]
