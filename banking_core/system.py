"""
System wiring

Builds every component from configuration. The accounts side and the
transactions side only meet through the command bus, exactly as they would
when deployed as separate services.
"""

from typing import Optional

from .account_service import AccountCommandHandler, AccountsClient
from .accounts import AccountStore
from .audit import AuditTrail
from .config import BankingConfig, get_config
from .logging_config import get_logger
from .messaging import CommandBus, EventBus, EventPublisher, InMemoryCommandBus, LogEventBus
from .orchestrator import TransferOrchestrator
from .patterns import InMemoryPatternValidator, PatternServiceClient, PatternValidator
from .rate_limit import AuthorizationRateLimiter
from .reconciliation import ReconciliationQueue
from .restrictions import RestrictionEvaluator
from .storage import StorageInterface, create_storage
from .transactions import TransactionLedger
from .users import BusUserDirectory, InMemoryUserDirectory, UserDirectory


class BankingSystem:
    """Banking core with all components initialized"""

    def __init__(
        self,
        config: Optional[BankingConfig] = None,
        storage: Optional[StorageInterface] = None,
        users: Optional[UserDirectory] = None,
        patterns: Optional[PatternValidator] = None,
        command_bus: Optional[CommandBus] = None,
        event_bus: Optional[EventBus] = None,
        rate_limiter: Optional[AuthorizationRateLimiter] = None
    ):
        self.config = config or get_config()
        timeout = self.config.collaborator_timeout_seconds

        self.storage = storage or create_storage(self.config.database_url)
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.event_bus = event_bus or LogEventBus()
        self.event_publisher = EventPublisher(self.event_bus)
        self.command_bus = command_bus or InMemoryCommandBus(
            default_timeout=timeout,
            max_workers=self.config.bus_max_workers
        )

        # Users service (external; answered in-process when no other service is wired)
        self.users = users or InMemoryUserDirectory()
        if isinstance(self.users, InMemoryUserDirectory):
            self.users.serve(self.command_bus)

        # Accounts service
        self.account_store = AccountStore(
            self.storage,
            self.audit_trail,
            BusUserDirectory(self.command_bus, timeout),
            event_publisher=self.event_publisher,
            max_accounts_per_owner=self.config.max_accounts_per_owner,
            number_max_attempts=self.config.account_number_max_attempts,
            default_account_type=self.config.default_account_type
        )
        AccountCommandHandler(self.account_store).register(self.command_bus)

        # Transactions service
        self.accounts_client = AccountsClient(self.command_bus, timeout)
        self.ledger = TransactionLedger(
            self.storage,
            self.audit_trail,
            event_publisher=self.event_publisher,
            number_prefix=self.config.transaction_number_prefix
        )
        self.patterns = patterns or self._create_pattern_validator()
        self.rate_limiter = rate_limiter or AuthorizationRateLimiter(
            max_attempts_per_account=self.config.auth_max_attempts_per_account,
            max_attempts_per_ip=self.config.auth_max_attempts_per_ip,
            window_seconds=self.config.auth_attempt_window_seconds,
            min_interval_seconds=self.config.auth_min_interval_seconds,
            max_entries=self.config.auth_rate_limit_max_entries
        )
        self.reconciliation = ReconciliationQueue(self.storage, self.audit_trail, self.accounts_client)
        self.orchestrator = TransferOrchestrator(
            self.accounts_client,
            self.ledger,
            RestrictionEvaluator(),
            self.patterns,
            self.rate_limiter,
            self.reconciliation,
            self.audit_trail,
            event_publisher=self.event_publisher,
            restrict_withdrawals=self.config.restrict_withdrawals,
            pending_ttl_minutes=self.config.pending_authorization_ttl_minutes
        )

        get_logger("banking.system").info(
            f"Banking core ready (storage={type(self.storage).__name__}, "
            f"patterns={type(self.patterns).__name__})"
        )

    def _create_pattern_validator(self) -> PatternValidator:
        """Use the patterns service when a URL is configured"""
        if not self.config.pattern_service_url:
            return InMemoryPatternValidator()
        return PatternServiceClient(
            base_url=self.config.pattern_service_url,
            timeout=self.config.pattern_service_timeout,
            api_key=self.config.pattern_service_api_key or None
        )

    def close(self) -> None:
        self.command_bus.close()
        self.patterns.close()
        self.storage.close()
