"""
Ledger system wiring
"""

from typing import Optional

from .accounts import AccountRegistry
from .audit import AuditTrail
from .concurrency import BalanceCache, LockManager
from .config import LedgerConfig, get_config
from .entries import EntryStore
from .events import EventDispatcher
from .logging_config import get_logger
from .storage import StorageInterface, create_storage
from .transactions import LedgerTransactionManager
from .validator import BalanceValidator


class LedgerSystem:
    """Ledger engine with all components initialized over one storage backend"""

    def __init__(self, config: Optional[LedgerConfig] = None, storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        self.logger = get_logger("ledger.system")

        # Initialize storage
        self.storage = storage or create_storage(self.config.database_url)

        # Shared infrastructure
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.lock_manager = LockManager(timeout=self.config.lock_timeout_seconds)
        self.event_dispatcher = EventDispatcher() if self.config.enable_events else None
        self.balance_cache = BalanceCache(self.storage)
        self.entry_store = EntryStore(self.storage)
        self.validator = BalanceValidator(require_both_sides=self.config.require_both_sides)

        # Ledger components
        self.accounts = AccountRegistry(
            self.storage, self.audit_trail, self.lock_manager,
            self.balance_cache, self.entry_store, self.event_dispatcher
        )
        self.transactions = LedgerTransactionManager(
            self.storage, self.accounts, self.entry_store, self.validator,
            self.balance_cache, self.lock_manager, self.audit_trail, self.event_dispatcher,
            max_post_attempts=self.config.post_max_attempts,
            retry_backoff_seconds=self.config.post_retry_backoff_seconds
        )

        self.logger.info(f"Ledger system initialized with {type(self.storage).__name__}")

    def close(self) -> None:
        self.storage.close()
