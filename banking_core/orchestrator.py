"""
Transfer Orchestrator Module

Coordinates the accounts service, the restriction evaluator and the
transaction ledger to move money. There is no shared database transaction
between accounts and transactions, so settlement is a fixed sequence of
fallible remote calls:

1. re-read the origin balance (the pending window may have been long)
2. debit origin with a conditional decrement (never below zero)
3. credit destination
4. record a statement movement on each touched account
5. mark the transaction COMPLETADA

A failure before the debit lands marks the transaction FALLIDA. A failure
after money moved never reverses balances automatically; the gap goes to
the reconciliation queue.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .account_service import AccountsClient
from .audit import AuditTrail, AuditEventType
from .commands import AccountSnapshot
from .errors import (
    AccountNotActive, AccountNotFound, AuthenticationFailed, BankingError, CollaboratorUnavailable,
    InsufficientFunds, InvalidAmount, NotAuthorized, NotPending, PartialSettlement, SameAccountTransfer,
    StateConflict, ValidationError
)
from .logging_config import get_logger, log_action
from .messaging import EventPublisher
from .money import ZERO, AmountLike, format_amount, to_positive_amount
from .patterns import PatternValidator
from .rate_limit import AuthorizationRateLimiter
from .reconciliation import ReconciliationKind, ReconciliationQueue
from .restrictions import NO_RESTRICTION, RestrictionEvaluator, RestrictionVerdict
from .transactions import Transaction, TransactionLedger, TransactionState, TransactionType

COLLABORATOR_TIMEOUT = "collaborator timeout"
INSUFFICIENT_AT_SETTLEMENT = "insufficient funds at settlement"


@dataclass
class BalanceInquiry:
    account: AccountSnapshot
    recent_transactions: List[Transaction]


class TransferOrchestrator:
    """
    Executes transfers, deposits and withdrawals across service boundaries
    """

    def __init__(
        self,
        accounts: AccountsClient,
        ledger: TransactionLedger,
        evaluator: RestrictionEvaluator,
        patterns: PatternValidator,
        rate_limiter: AuthorizationRateLimiter,
        reconciliation: ReconciliationQueue,
        audit_trail: AuditTrail,
        event_publisher: Optional[EventPublisher] = None,
        restrict_withdrawals: bool = False,
        pending_ttl_minutes: int = 30
    ):
        self.accounts = accounts
        self.ledger = ledger
        self.evaluator = evaluator
        self.patterns = patterns
        self.rate_limiter = rate_limiter
        self.reconciliation = reconciliation
        self.audit_trail = audit_trail
        self.event_publisher = event_publisher
        self.restrict_withdrawals = restrict_withdrawals
        self.pending_ttl = timedelta(minutes=pending_ttl_minutes)
        self.logger = get_logger("banking.orchestrator")

    # Resolution helpers

    def _resolve(self, account_number: str, role: str) -> AccountSnapshot:
        account = self.accounts.find_by_number(account_number)
        if account is None:
            raise AccountNotFound(f"{role.capitalize()} account {account_number} not found")
        return account

    @staticmethod
    def _require_active(account: AccountSnapshot, role: str) -> None:
        if not account.is_active:
            raise AccountNotActive(
                f"{role.capitalize()} account {account.account_number} is {account.status}"
            )

    def _evaluate(self, account: AccountSnapshot, amount: Decimal) -> RestrictionVerdict:
        restrictions = self.accounts.get_restrictions(account.id)
        if restrictions is None:
            raise AccountNotFound(f"Account {account.account_number} not found")
        return self.evaluator.evaluate(restrictions, amount)

    # Entry points

    def transfer(
        self,
        origin_number: str,
        destination_number: str,
        amount: AmountLike,
        executor_user_id: str,
        description: Optional[str] = None
    ) -> Transaction:
        """
        Transfer between two accounts

        Returns the transaction: COMPLETADA when no restriction applied,
        PENDIENTE when pattern authorization is required.

        Raises:
            SameAccountTransfer, AccountNotFound, AccountNotActive,
            InsufficientFunds (advisory, nothing recorded),
            CollaboratorUnavailable (before a record exists, retryable)
        """
        amount = to_positive_amount(amount)
        if origin_number == destination_number:
            raise SameAccountTransfer("Origin and destination accounts must differ")

        origin = self._resolve(origin_number, "origin")
        destination = self._resolve(destination_number, "destination")
        self._require_active(origin, "origin")
        self._require_active(destination, "destination")

        if origin.balance < amount:
            raise InsufficientFunds(
                f"Account {origin.account_number} has {format_amount(origin.balance)}, "
                f"transfer needs {format_amount(amount)}"
            )

        verdict = self._evaluate(origin, amount)
        transaction = self.ledger.create(
            TransactionType.TRANSFER,
            amount,
            executor_user_id,
            prior_balance=origin.balance,
            requires_authentication=verdict.requires_auth,
            origin_account_id=origin.id,
            origin_account_number=origin.account_number,
            destination_account_id=destination.id,
            destination_account_number=destination.account_number,
            restriction_id=verdict.matched_restriction.id if verdict.matched_restriction else None,
            required_pattern=verdict.required_pattern,
            description=description or "Transferencia entre cuentas"
        )

        if verdict.requires_auth:
            return transaction
        return self.settle(transaction.id)

    def deposit(
        self,
        account_number: str,
        amount: AmountLike,
        executor_user_id: str,
        description: Optional[str] = None,
        external_reference: Optional[str] = None
    ) -> Transaction:
        """Credit one account. Deposits are never restricted."""
        amount = to_positive_amount(amount)
        account = self._resolve(account_number, "destination")
        self._require_active(account, "destination")

        transaction = self.ledger.create(
            TransactionType.DEPOSIT,
            amount,
            executor_user_id,
            prior_balance=account.balance,
            destination_account_id=account.id,
            destination_account_number=account.account_number,
            description=description or "Depósito en cuenta",
            external_reference=external_reference
        )
        return self.settle(transaction.id)

    def withdraw(
        self,
        account_number: str,
        amount: AmountLike,
        executor_user_id: str,
        description: Optional[str] = None,
        external_reference: Optional[str] = None
    ) -> Transaction:
        """Debit one account, with the same balance checks as a transfer"""
        amount = to_positive_amount(amount)
        account = self._resolve(account_number, "origin")
        self._require_active(account, "origin")

        if account.balance < amount:
            raise InsufficientFunds(
                f"Account {account.account_number} has {format_amount(account.balance)}, "
                f"withdrawal needs {format_amount(amount)}"
            )

        verdict = self._evaluate(account, amount) if self.restrict_withdrawals else NO_RESTRICTION
        transaction = self.ledger.create(
            TransactionType.WITHDRAWAL,
            amount,
            executor_user_id,
            prior_balance=account.balance,
            requires_authentication=verdict.requires_auth,
            origin_account_id=account.id,
            origin_account_number=account.account_number,
            restriction_id=verdict.matched_restriction.id if verdict.matched_restriction else None,
            required_pattern=verdict.required_pattern,
            description=description or "Retiro de cuenta",
            external_reference=external_reference
        )

        if verdict.requires_auth:
            return transaction
        return self.settle(transaction.id)

    def validate(
        self,
        account_number: str,
        amount: AmountLike,
        transaction_type: TransactionType = TransactionType.TRANSFER,
        destination_number: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Report whether a transaction would be accepted, without creating it.
        Business problems are listed in ``errors``; only collaborator
        failures raise.
        """
        errors: List[Dict[str, str]] = []
        report: Dict[str, Any] = {
            "valid": False,
            "transaction_type": transaction_type.value,
            "account_number": account_number,
            "amount": None,
            "account_active": None,
            "sufficient_balance": None,
            "destination_valid": None,
            "requires_authentication": False,
            "restriction": None,
            "errors": errors
        }

        try:
            amount = to_positive_amount(amount)
            report["amount"] = amount
        except InvalidAmount as e:
            errors.append(e.to_dict())
            amount = None

        account = self.accounts.find_by_number(account_number)
        if account is None:
            errors.append(AccountNotFound(f"Account {account_number} not found").to_dict())
            return report

        report["account_active"] = account.is_active
        if not account.is_active:
            errors.append(AccountNotActive(f"Account {account_number} is {account.status}").to_dict())

        if amount is not None:
            if transaction_type != TransactionType.DEPOSIT:
                report["sufficient_balance"] = account.balance >= amount
                if account.balance < amount:
                    errors.append(InsufficientFunds(
                        f"Account {account_number} has {format_amount(account.balance)}"
                    ).to_dict())

            if transaction_type == TransactionType.TRANSFER or (
                transaction_type == TransactionType.WITHDRAWAL and self.restrict_withdrawals
            ):
                verdict = self._evaluate(account, amount)
                report["requires_authentication"] = verdict.requires_auth
                if verdict.matched_restriction:
                    report["restriction"] = verdict.matched_restriction.to_dict()

        if transaction_type == TransactionType.TRANSFER:
            if not destination_number:
                errors.append(ValidationError("Transfers need a destination account").to_dict())
                report["destination_valid"] = False
            elif destination_number == account_number:
                errors.append(SameAccountTransfer("Origin and destination accounts must differ").to_dict())
                report["destination_valid"] = False
            else:
                destination = self.accounts.find_by_number(destination_number)
                report["destination_valid"] = destination is not None and destination.is_active
                if destination is None:
                    errors.append(AccountNotFound(f"Destination account {destination_number} not found").to_dict())
                elif not destination.is_active:
                    errors.append(AccountNotActive(
                        f"Destination account {destination_number} is {destination.status}"
                    ).to_dict())

        report["valid"] = not errors
        return report

    # Authorization

    def authorize(
        self,
        transaction_id: str,
        verification_code: str,
        pattern_id: Optional[str] = None,
        factors: Optional[List[str]] = None,
        client_ip: Optional[str] = None
    ) -> Transaction:
        """
        Authorize a pending transaction and settle it

        When the matched restriction names a pattern, the presented factors
        are checked against it by the patterns service. A rejected pattern
        leaves the transaction PENDIENTE; a patterns service timeout marks it
        FALLIDA.

        Raises:
            TransactionNotFound, NotPending, RateLimitExceeded,
            AuthenticationFailed, CollaboratorUnavailable
        """
        if not verification_code or not verification_code.strip():
            raise ValidationError("A verification code is required")

        transaction = self.ledger.get(transaction_id)
        if transaction.state != TransactionState.PENDING:
            raise NotPending(
                f"Transaction {transaction.transaction_number} is {transaction.state.value}, not pending"
            )

        rate_key = transaction.origin_account_id or transaction.destination_account_id
        self.rate_limiter.check(rate_key, client_ip)

        required = transaction.required_pattern
        if pattern_id and required and pattern_id != required:
            self._reject(transaction, "presented pattern does not guard this amount")
        pattern_to_check = required or pattern_id

        if pattern_to_check:
            try:
                result = self.patterns.validate(pattern_to_check, factors or [])
            except CollaboratorUnavailable:
                self._fail(transaction, COLLABORATOR_TIMEOUT)
                raise
            if not result.valid:
                self._reject(transaction, f"pattern rejected ({result.match_count} factors matched)")

        self.ledger.transition(
            transaction_id,
            TransactionState.AUTORIZADA,
            expected=TransactionState.PENDING,
            verification_code=verification_code
        )
        return self.settle(transaction_id)

    def _reject(self, transaction: Transaction, reason: str) -> None:
        self.audit_trail.log_event(
            event_type=AuditEventType.AUTHORIZATION_REJECTED,
            entity_type="transaction",
            entity_id=transaction.id,
            metadata={"transaction_number": transaction.transaction_number, "reason": reason},
            user_id=transaction.executor_user_id
        )
        log_action(self.logger, "warning", f"Authorization rejected for {transaction.transaction_number}",
                   action="authorize", resource=transaction.transaction_number, extra={"reason": reason})
        raise AuthenticationFailed(f"Authorization failed for {transaction.transaction_number}")

    # Settlement

    def _fail(self, transaction: Transaction, reason: str) -> Transaction:
        return self.ledger.transition(transaction.id, TransactionState.FALLIDA, reason=reason)

    def settle(self, transaction_id: str) -> Transaction:
        """
        Apply the balance effects of an AUTORIZADA transaction

        Serialized per transaction; a second call on the same record fails
        with NotAuthorized and never moves money twice.
        """
        with self.ledger.lock_for(transaction_id):
            transaction = self.ledger.get(transaction_id)
            if transaction.state != TransactionState.AUTORIZADA:
                raise NotAuthorized(
                    f"Transaction {transaction.transaction_number} is {transaction.state.value}, "
                    f"only AUTORIZADA transactions settle"
                )

            applied = []  # (account_id, delta, leg) for each balance change that landed
            settlement_balance = None

            if transaction.origin_account_id:
                settlement_balance = self._debit(transaction)
                applied.append((transaction.origin_account_id, -transaction.amount, "debit"))

            if transaction.destination_account_id:
                credited = self._credit(transaction, debited=bool(applied))
                if settlement_balance is None:
                    settlement_balance = credited
                applied.append((transaction.destination_account_id, transaction.amount, "credit"))

            for account_id, delta, leg in applied:
                self._record_movement(transaction, account_id, delta, leg)

            completed = self.ledger.transition(
                transaction_id,
                TransactionState.COMPLETADA,
                expected=TransactionState.AUTORIZADA,
                settlement_balance=settlement_balance
            )

        log_action(self.logger, "info",
                   f"Settled {completed.transaction_number} for {format_amount(completed.amount)}",
                   user_id=completed.executor_user_id, action="settle",
                   resource=completed.transaction_number)
        return completed

    def _debit(self, transaction: Transaction) -> Decimal:
        """Re-validate and debit the origin; returns the balance read before the debit"""
        amount = transaction.amount
        try:
            origin = self.accounts.find_by_id(transaction.origin_account_id)
        except CollaboratorUnavailable:
            self._fail(transaction, COLLABORATOR_TIMEOUT)
            raise

        if origin is None:
            self._fail(transaction, "origin account not found at settlement")
            raise AccountNotFound(f"Origin account {transaction.origin_account_number} not found")
        if not origin.is_active:
            self._fail(transaction, "origin account not active at settlement")
            raise AccountNotActive(f"Origin account {origin.account_number} is {origin.status}")
        if origin.balance < amount:
            self._fail(transaction, INSUFFICIENT_AT_SETTLEMENT)
            raise InsufficientFunds(
                f"Account {origin.account_number} has {format_amount(origin.balance)} at settlement, "
                f"needs {format_amount(amount)}"
            )

        try:
            debited = self.accounts.adjust_balance(origin.id, -amount, minimum_balance=ZERO)
        except InsufficientFunds:
            # Lost a race with another debit between the read and the decrement
            self._fail(transaction, INSUFFICIENT_AT_SETTLEMENT)
            raise
        except CollaboratorUnavailable as e:
            self._fail(transaction, COLLABORATOR_TIMEOUT)
            self.reconciliation.enqueue(
                ReconciliationKind.DEBIT, transaction.id, transaction.transaction_number,
                origin.id, -amount, f"{transaction.transaction_number}:debit", e.message
            )
            raise

        if debited is None:
            self._fail(transaction, "origin account not found at settlement")
            raise AccountNotFound(f"Origin account {transaction.origin_account_number} not found")
        return origin.balance

    def _credit(self, transaction: Transaction, debited: bool) -> Optional[Decimal]:
        """Credit the destination; returns its balance before the credit"""
        amount = transaction.amount
        try:
            credited = self.accounts.adjust_balance(transaction.destination_account_id, amount)
        except BankingError as e:
            self._credit_failed(transaction, debited, e.message, e)
            raise
        if credited is None:
            error = AccountNotFound(f"Destination account {transaction.destination_account_number} not found")
            self._credit_failed(transaction, debited, error.message, error)
            raise error
        return credited.balance - amount

    def _credit_failed(self, transaction: Transaction, debited: bool, message: str, error: BankingError) -> None:
        reason = COLLABORATOR_TIMEOUT if isinstance(error, CollaboratorUnavailable) else "credit failed"
        self._fail(transaction, reason)
        if debited or isinstance(error, CollaboratorUnavailable):
            # Money left the origin (or may have reached the destination); an operator decides
            self.reconciliation.enqueue(
                ReconciliationKind.CREDIT, transaction.id, transaction.transaction_number,
                transaction.destination_account_id, transaction.amount,
                f"{transaction.transaction_number}:credit", message
            )
            log_action(self.logger, "error",
                       f"Credit leg failed for {transaction.transaction_number}, needs reconciliation",
                       action="partial_settlement", resource=transaction.transaction_number,
                       extra={"error": message, "debited": debited})

    def _record_movement(self, transaction: Transaction, account_id: str, delta: Decimal, leg: str) -> None:
        movement_ref = f"{transaction.transaction_number}:{leg}"
        try:
            self.accounts.record_movement(
                account_id, delta, movement_ref,
                transaction_id=transaction.id,
                description=transaction.description
            )
        except BankingError as e:
            # Balances are already correct; only the statement entry is missing
            partial = PartialSettlement(
                f"Partial settlement of {transaction.transaction_number}: {leg} movement not recorded ({e.message})"
            )
            log_action(self.logger, "error", partial.message,
                       action="partial_settlement", resource=transaction.transaction_number,
                       extra={"code": partial.code, "account_id": account_id, "leg": leg, "error": e.message})
            self.audit_trail.log_event(
                event_type=AuditEventType.PARTIAL_SETTLEMENT,
                entity_type="transaction",
                entity_id=transaction.id,
                metadata={"code": partial.code, "account_id": account_id, "leg": leg, "error": e.message}
            )
            self.reconciliation.enqueue(
                ReconciliationKind.MOVEMENT, transaction.id, transaction.transaction_number,
                account_id, delta, movement_ref, e.message
            )
            if self.event_publisher:
                self.event_publisher.partial_settlement(transaction, account_id, partial)

    # Housekeeping and queries

    def cancel(self, transaction_id: str) -> Transaction:
        """Withdraw a transaction that is still waiting for authorization"""
        return self.ledger.transition(
            transaction_id,
            TransactionState.CANCELADA,
            reason="cancelled by user",
            expected=TransactionState.PENDING
        )

    def expire_pending(self, now: Optional[datetime] = None) -> List[Transaction]:
        """Cancel PENDIENTE transactions older than the authorization window"""
        now = now or datetime.now(timezone.utc)
        expired = []
        for transaction in self.ledger.pending_older_than(now - self.pending_ttl):
            try:
                expired.append(self.ledger.transition(
                    transaction.id,
                    TransactionState.CANCELADA,
                    reason="authorization window expired",
                    expected=TransactionState.PENDING
                ))
            except StateConflict:
                # Authorized or cancelled while we were sweeping
                continue
        if expired:
            self.logger.info(f"Expired {len(expired)} pending transactions")
        return expired

    def balance_inquiry(self, account_number: str, recent: int = 5) -> BalanceInquiry:
        """Current balance plus the most recent settled or authorized transactions"""
        account = self._resolve(account_number, "inquired")
        history = self.ledger.account_history(
            account.id,
            states=[TransactionState.COMPLETADA, TransactionState.AUTORIZADA],
            limit=recent
        )
        return BalanceInquiry(account=account, recent_transactions=history)
